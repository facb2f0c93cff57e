# pushcast/core/dispatcher.py
"""
Dispatch resolution pipeline.

Runs after a handler has produced its value and decides whether a Pusher
event goes out. Stages, each of which may end the dispatch:

1. event descriptor present?      (no  → skip silently)
2. send guard approves?           (no  → skip)
3. channel policy declared?       (no  → warn, skip)
4. resolve channel name(s)
5. resolve excluded socket id
6. hand the tuple to the transport

The pipeline is additive to the request: ``dispatch()`` never raises and
never touches the response. Every fault is logged and reported through
the returned ``DispatchResult``.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional, Protocol, Sequence, Union

from pushcast.core.errors import PolicyError
from pushcast.core.policies import ChannelNames, EventDescriptor, PolicyKey
from pushcast.core.registry import PolicyRegistry, handler_name
from pushcast.core.resolvers import (
    DEFAULT_SOCKET_ID_HEADER,
    evaluate_guard,
    resolve_channels,
    resolve_socket_id,
)
from pushcast.infra.logging_config import get_logger, LogContext
from pushcast.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class Transport(Protocol):
    """Delivery client. May return None or an awaitable."""

    def trigger(
        self,
        channels: Union[str, Sequence[str]],
        event_name: str,
        data: Any,
        socket_id: Optional[str] = None,
    ) -> Optional[Awaitable[None]]:
        ...


class SkipReason(str, Enum):
    NO_EVENT = "no_event"
    GUARD_REJECTED = "guard_rejected"
    NO_CHANNEL = "no_channel"
    POLICY_ERROR = "policy_error"
    TRANSPORT_FAILED = "transport_failed"


@dataclass(frozen=True)
class DispatchTuple:
    """Fully resolved arguments of one transport call."""
    channels: ChannelNames
    event_name: str
    payload: Any
    socket_id: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    dispatched: bool
    reason: Optional[SkipReason] = None
    dispatch_tuple: Optional[DispatchTuple] = None
    error: Optional[BaseException] = None

    @classmethod
    def skipped(cls, reason: SkipReason, error: BaseException | None = None) -> "DispatchResult":
        return cls(dispatched=False, reason=reason, error=error)


class DispatchResolver:
    """Orchestrates policy lookups and the single transport call per dispatch."""

    def __init__(
        self,
        store: PolicyRegistry,
        transport: Transport,
        *,
        debug: bool = False,
        default_socket_id_header: str = DEFAULT_SOCKET_ID_HEADER,
    ) -> None:
        self.store = store
        self.transport = transport
        self.debug = debug
        self.default_socket_id_header = default_socket_id_header

    async def dispatch(
        self,
        request: Any,
        response: Any,
        handler: Any,
        value: Any,
    ) -> DispatchResult:
        """Run the pipeline for one produced value. Never raises."""
        event: Optional[EventDescriptor] = self.store.get(PolicyKey.EVENT, handler)
        if event is None:
            return DispatchResult.skipped(SkipReason.NO_EVENT)

        name = handler_name(handler)
        log_ctx = LogContext(
            logger,
            request_id=_request_id(request),
            handler=name,
            event=event.name,
        )

        try:
            dispatch_tuple = await self._resolve(request, response, handler, value, event, log_ctx)
        except PolicyError as exc:
            log_ctx.error(
                "Pusher policy failed, event not dispatched: %s", exc,
                exc_info=True,
            )
            DispatchMetrics.outcome(event.name, SkipReason.POLICY_ERROR.value)
            return DispatchResult.skipped(SkipReason.POLICY_ERROR, exc)
        except Exception as exc:
            log_ctx.error(
                "Unexpected error resolving pusher dispatch: %s", type(exc).__name__,
                exc_info=True,
            )
            DispatchMetrics.outcome(event.name, SkipReason.POLICY_ERROR.value)
            return DispatchResult.skipped(SkipReason.POLICY_ERROR, exc)

        if isinstance(dispatch_tuple, SkipReason):
            DispatchMetrics.outcome(event.name, dispatch_tuple.value)
            return DispatchResult.skipped(dispatch_tuple)

        channel_label = _channel_label(dispatch_tuple.channels)
        log_ctx = log_ctx.bind(channel=channel_label, socket_id=dispatch_tuple.socket_id)

        try:
            with DispatchMetrics.track_trigger_time(event.name):
                outcome = self.transport.trigger(
                    dispatch_tuple.channels,
                    dispatch_tuple.event_name,
                    dispatch_tuple.payload,
                    dispatch_tuple.socket_id,
                )
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception as exc:
            log_ctx.error(
                "Pusher dispatch failed: %s: %s", type(exc).__name__, exc,
                extra={"retryable": getattr(exc, "retryable", None)},
            )
            DispatchMetrics.outcome(event.name, SkipReason.TRANSPORT_FAILED.value)
            return DispatchResult(
                dispatched=False,
                reason=SkipReason.TRANSPORT_FAILED,
                dispatch_tuple=dispatch_tuple,
                error=exc,
            )

        if self.debug:
            log_ctx.info("%s has been dispatched to %s", event.name, channel_label)
        DispatchMetrics.outcome(event.name, "sent")
        return DispatchResult(dispatched=True, dispatch_tuple=dispatch_tuple)

    async def _resolve(
        self,
        request: Any,
        response: Any,
        handler: Any,
        value: Any,
        event: EventDescriptor,
        log_ctx: LogContext,
    ) -> DispatchTuple | SkipReason:
        guard = self.store.get(PolicyKey.GUARD, handler)
        if not await evaluate_guard(guard, request, response, event):
            log_ctx.debug("Pusher guard rejected dispatch: handler=%s event=%s", handler_name(handler), event.name)
            return SkipReason.GUARD_REJECTED

        policy = self.store.get(PolicyKey.CHANNEL, handler)
        if policy is None:
            log_ctx.warning(
                "Pusher channel not found for handler: %s at event: %s",
                handler_name(handler), event.name,
            )
            return SkipReason.NO_CHANNEL

        channels = resolve_channels(policy, request, event)
        socket_id = resolve_socket_id(
            self.store.get(PolicyKey.SOCKET_ID, handler),
            request,
            self.default_socket_id_header,
        )
        return DispatchTuple(
            channels=channels,
            event_name=event.name,
            payload=value,
            socket_id=socket_id,
        )


def _channel_label(channels: ChannelNames) -> str:
    if isinstance(channels, str):
        return channels
    return ",".join(channels)


def _request_id(request: Any) -> Optional[str]:
    state = getattr(request, "state", None)
    return getattr(state, "request_id", None) if state is not None else None
