# pushcast/core/registry.py
"""
Explicit handler → policy registry.

Handler authors declare policies either with decorators::

    @router.post("/orders")
    @pusher_event("order-created")
    @pusher_channel("orders")
    async def create_order(order: OrderIn) -> OrderOut: ...

or with an explicit call during startup::

    registry.register(create_order, event="order-created", channel="orders")

A channel / guard / socket-id declaration only has an effect on handlers
that also declare an event. That dependency is not enforced here; the
dispatcher warns at dispatch time, and ``validate()`` reports it for
operators who want to fail at startup.
"""
from __future__ import annotations

import dataclasses
from threading import Lock
from typing import Any, Callable, Optional, TypeVar

from pushcast.core.errors import PolicyError, RegistryValidationError
from pushcast.core.policies import (
    EventDescriptor,
    GuardPolicy,
    HandlerPolicies,
    PolicyKey,
    SocketIdPolicy,
    channel_policy,
)
from pushcast.infra.logging_config import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def handler_name(handler: Any) -> str:
    """Readable handler name for diagnostics."""
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None) or repr(handler)


def _identity(handler: Any) -> Any:
    # Bound methods are recreated on every attribute access
    return getattr(handler, "__func__", handler)


def _check_guard(guard: Any) -> GuardPolicy:
    if not callable(guard):
        raise PolicyError(f"Send guard must be callable, got {guard!r}")
    return guard


def _check_socket_id(policy: Any) -> SocketIdPolicy:
    if isinstance(policy, str):
        if not policy:
            raise PolicyError("Socket id header name must not be empty")
        return policy
    if callable(policy):
        return policy
    raise PolicyError(f"Socket id policy must be a header name or callable, got {policy!r}")


class PolicyRegistry:
    """Metadata store keyed by handler identity. Read-only during dispatch."""

    def __init__(self) -> None:
        self._records: dict[Any, HandlerPolicies] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: PolicyKey, handler: Any) -> Any:
        """Return the policy stored under ``key`` for ``handler``, or None."""
        record = self._records.get(_identity(handler))
        if record is None:
            return None
        return record.get(key)

    def policies_for(self, handler: Any) -> Optional[HandlerPolicies]:
        return self._records.get(_identity(handler))

    def handlers(self) -> list[Any]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, handler: Any) -> bool:
        return _identity(handler) in self._records

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def register(
        self,
        handler: Any,
        *,
        event: Any = None,
        channel: Any = None,
        guard: Any = None,
        socket_id: Any = None,
    ) -> HandlerPolicies:
        """
        Declare policies for ``handler``.

        Only the policies passed are replaced; earlier declarations for the
        same handler are kept. Malformed values raise ``PolicyError``.
        """
        changes: dict[str, Any] = {}
        if event is not None:
            changes["event"] = EventDescriptor.of(event)
        if channel is not None:
            changes["channel"] = channel_policy(channel)
        if guard is not None:
            changes["guard"] = _check_guard(guard)
        if socket_id is not None:
            changes["socket_id"] = _check_socket_id(socket_id)

        key = _identity(handler)
        with self._lock:
            current = self._records.get(key, HandlerPolicies())
            record = dataclasses.replace(current, **changes)
            self._records[key] = record

        logger.debug(
            "Registered pusher policies for %s: %s",
            handler_name(handler), ", ".join(sorted(changes)) or "none",
        )
        return record

    def event(self, event: Any) -> Callable[[F], F]:
        """Decorator: declare the event a handler emits."""
        descriptor = EventDescriptor.of(event)

        def decorator(handler: F) -> F:
            self.register(handler, event=descriptor)
            return handler
        return decorator

    def channel(self, channel: Any) -> Callable[[F], F]:
        """Decorator: declare the target channel(s): a name or list of names, or a builder."""
        policy = channel_policy(channel)

        def decorator(handler: F) -> F:
            self.register(handler, channel=policy)
            return handler
        return decorator

    def send_guard(self, guard: GuardPolicy) -> Callable[[F], F]:
        """Decorator: declare a ``(request, response, event) -> bool`` guard."""
        _check_guard(guard)

        def decorator(handler: F) -> F:
            self.register(handler, guard=guard)
            return handler
        return decorator

    def socket_id(self, policy: SocketIdPolicy) -> Callable[[F], F]:
        """Decorator: declare the header (or function) giving the sender's socket id."""
        _check_socket_id(policy)

        def decorator(handler: F) -> F:
            self.register(handler, socket_id=policy)
            return handler
        return decorator

    def unregister(self, handler: Any) -> None:
        with self._lock:
            self._records.pop(_identity(handler), None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    # ------------------------------------------------------------------
    # Startup validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """List incomplete declarations. Empty list means every handler is dispatchable."""
        problems: list[str] = []
        for handler, record in list(self._records.items()):
            name = handler_name(handler)
            if record.event is None:
                declared = [
                    k for k in ("channel", "guard", "socket_id")
                    if getattr(record, k) is not None
                ]
                problems.append(
                    f"{name}: declares {', '.join(declared)} without an event"
                )
            elif record.channel is None:
                problems.append(
                    f"{name}: event '{record.event.name}' has no channel"
                )
        return problems

    def raise_on_problems(self) -> None:
        problems = self.validate()
        if problems:
            raise RegistryValidationError(problems)


# Process-wide registry used by the module-level decorators
default_registry = PolicyRegistry()


def get_registry() -> PolicyRegistry:
    """Get the process-wide policy registry"""
    return default_registry


def pusher_event(event: Any) -> Callable[[F], F]:
    return default_registry.event(event)


def pusher_channel(channel: Any) -> Callable[[F], F]:
    """Attach a channel policy to a handler that also declares ``pusher_event``."""
    return default_registry.channel(channel)


def pusher_send_guard(guard: GuardPolicy) -> Callable[[F], F]:
    return default_registry.send_guard(guard)


def pusher_socket_id(policy: SocketIdPolicy) -> Callable[[F], F]:
    return default_registry.socket_id(policy)
