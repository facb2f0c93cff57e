# pushcast/core/policies.py
"""
Policy types attached to route handlers.

A handler opts into real-time dispatch by declaring an ``EventDescriptor``.
Every other policy is optional:

- ``ChannelPolicy``  – where the event goes (``StaticChannels`` or ``ChannelBuilder``)
- ``GuardPolicy``    – predicate deciding whether to dispatch at all
- ``SocketIdPolicy`` – header name or function yielding the sender's socket id

All records are frozen; they are shared by every concurrent dispatch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from pushcast.core.errors import PolicyError

ChannelNames = Union[str, list[str]]

# (request, event) -> channel name(s)
ChannelBuilderFn = Callable[[Any, "EventDescriptor"], ChannelNames]
# (request, response, event) -> bool
GuardPolicy = Callable[[Any, Any, "EventDescriptor"], bool]
# header name, or (request) -> socket id
SocketIdPolicy = Union[str, Callable[[Any], Optional[str]]]


class PolicyKey(str, Enum):
    """Well-known metadata keys read by the dispatcher."""
    EVENT = "pusher_event"
    CHANNEL = "pusher_channel"
    GUARD = "pusher_send_guard"
    SOCKET_ID = "pusher_sid_factory"


# ============================================================================
# EVENT DESCRIPTOR
# ============================================================================

@dataclass(frozen=True)
class EventDescriptor:
    """
    Identity of the event a handler emits.

    ``name`` is the Pusher event name. ``source`` keeps the class the
    descriptor was declared from, if any, so builders and guards can
    inspect it.
    """
    name: str
    source: Optional[type] = None

    @classmethod
    def of(cls, event: Union[str, type, "EventDescriptor"]) -> "EventDescriptor":
        """Build a descriptor from an event name, an event class or a descriptor."""
        if isinstance(event, EventDescriptor):
            return event
        if isinstance(event, str):
            if not event.strip():
                raise PolicyError("Event name must not be empty")
            return cls(name=event)
        if isinstance(event, type):
            return cls(name=getattr(event, "event_name", event.__name__), source=event)
        raise PolicyError(f"Unsupported event declaration: {event!r}")


# ============================================================================
# CHANNEL POLICY (tagged variants)
# ============================================================================

@dataclass(frozen=True)
class StaticChannels:
    """Fixed channel name, or fixed ordered list of names."""
    value: Union[str, tuple[str, ...]]
    kind: str = field(default="static", init=False)

    def names(self) -> ChannelNames:
        if isinstance(self.value, tuple):
            return list(self.value)
        return self.value


@dataclass(frozen=True)
class ChannelBuilder:
    """Channel name(s) computed from the request on every dispatch."""
    fn: ChannelBuilderFn
    kind: str = field(default="builder", init=False)


ChannelPolicy = Union[StaticChannels, ChannelBuilder]


def channel_policy(value: Union[ChannelPolicy, str, Sequence[str], ChannelBuilderFn]) -> ChannelPolicy:
    """
    Tag a declared channel value.

    Classification happens once, at declaration time: strings and
    sequences of strings are static, any other callable is a builder.
    """
    if isinstance(value, (StaticChannels, ChannelBuilder)):
        return value
    if isinstance(value, str):
        if not value:
            raise PolicyError("Channel name must not be empty")
        return StaticChannels(value)
    if isinstance(value, (list, tuple)):
        names = tuple(value)
        if not names:
            raise PolicyError("Channel list must not be empty")
        if not all(isinstance(n, str) and n for n in names):
            raise PolicyError(f"Channel list must contain non-empty strings: {value!r}")
        return StaticChannels(names)
    if callable(value):
        return ChannelBuilder(value)
    raise PolicyError(f"Unsupported channel policy: {value!r}")


# ============================================================================
# HANDLER RECORD
# ============================================================================

@dataclass(frozen=True)
class HandlerPolicies:
    """Everything declared for one handler."""
    event: Optional[EventDescriptor] = None
    channel: Optional[ChannelPolicy] = None
    guard: Optional[GuardPolicy] = None
    socket_id: Optional[SocketIdPolicy] = None

    def get(self, key: PolicyKey) -> Any:
        if key is PolicyKey.EVENT:
            return self.event
        if key is PolicyKey.CHANNEL:
            return self.channel
        if key is PolicyKey.GUARD:
            return self.guard
        if key is PolicyKey.SOCKET_ID:
            return self.socket_id
        raise KeyError(key)
