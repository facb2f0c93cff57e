# pushcast/core/resolvers.py
"""Per-dispatch policy evaluation: channels, guard, socket exclusion."""
from __future__ import annotations

import inspect
from typing import Any, Optional

from pushcast.core.errors import PolicyError
from pushcast.core.policies import (
    ChannelBuilder,
    ChannelNames,
    ChannelPolicy,
    EventDescriptor,
    GuardPolicy,
    SocketIdPolicy,
    StaticChannels,
)

DEFAULT_SOCKET_ID_HEADER = "x-pusher-sid"


def _check_channel_result(result: Any) -> ChannelNames:
    if isinstance(result, str):
        if not result:
            raise PolicyError("Channel builder returned an empty channel name")
        return result
    if isinstance(result, (list, tuple)):
        names = list(result)
        if names and all(isinstance(n, str) and n for n in names):
            return names
    raise PolicyError(f"Channel builder returned an invalid value: {result!r}")


def resolve_channels(
    policy: ChannelPolicy,
    request: Any,
    event: EventDescriptor,
) -> ChannelNames:
    """
    Turn a channel policy into concrete channel name(s).

    Static policies are returned as declared. Builders are invoked fresh
    on every call; nothing is cached between dispatches.

    Raises:
        PolicyError: builder raised or returned something unusable
    """
    if isinstance(policy, StaticChannels):
        return policy.names()
    if isinstance(policy, ChannelBuilder):
        try:
            result = policy.fn(request, event)
        except Exception as exc:
            raise PolicyError(f"Channel builder failed: {exc}") from exc
        return _check_channel_result(result)
    raise PolicyError(f"Unknown channel policy: {policy!r}")


async def evaluate_guard(
    guard: Optional[GuardPolicy],
    request: Any,
    response: Any,
    event: EventDescriptor,
) -> bool:
    """
    Decide whether dispatch proceeds. No guard means yes.

    A guard that returns an awaitable is awaited once.
    """
    if guard is None:
        return True
    try:
        decision = guard(request, response, event)
        if inspect.isawaitable(decision):
            decision = await decision
    except Exception as exc:
        raise PolicyError(f"Send guard failed: {exc}") from exc
    return bool(decision)


def resolve_socket_id(
    policy: Optional[SocketIdPolicy],
    request: Any,
    default_header: str = DEFAULT_SOCKET_ID_HEADER,
) -> Optional[str]:
    """
    Socket id of the requester's own connection, used for self-exclusion.

    A missing header yields None ("exclude nothing"). The id is never
    checked against live connections.
    """
    if policy is None:
        return _header(request, default_header)
    if isinstance(policy, str):
        return _header(request, policy)
    try:
        socket_id = policy(request)
    except Exception as exc:
        raise PolicyError(f"Socket id factory failed: {exc}") from exc
    return str(socket_id) if socket_id else None


def _header(request: Any, name: str) -> Optional[str]:
    headers = getattr(request, "headers", None)
    if headers is None:
        return None
    value = headers.get(name)
    if value is None and isinstance(headers, dict):
        # Plain dicts are case-sensitive; Starlette headers are not
        value = headers.get(name.lower())
    return value or None
