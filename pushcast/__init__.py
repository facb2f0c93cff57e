# pushcast/__init__.py
"""
pushcast: emit Pusher events after FastAPI route handlers return.

Declare policies on handlers, route them through a ``PusherRouter`` and
the dispatcher sends ``(channels, event, payload, excluded socket id)``
to Pusher after each response.
"""
from pushcast.core.dispatcher import (
    DispatchResolver,
    DispatchResult,
    DispatchTuple,
    SkipReason,
)
from pushcast.core.errors import PolicyError, PushcastError, RegistryValidationError
from pushcast.core.policies import ChannelBuilder, EventDescriptor, StaticChannels
from pushcast.core.registry import (
    PolicyRegistry,
    get_registry,
    pusher_channel,
    pusher_event,
    pusher_send_guard,
    pusher_socket_id,
)

__version__ = "0.1.0"

__all__ = [
    "ChannelBuilder",
    "DispatchResolver",
    "DispatchResult",
    "DispatchTuple",
    "EventDescriptor",
    "PolicyError",
    "PolicyRegistry",
    "PushcastError",
    "RegistryValidationError",
    "SkipReason",
    "StaticChannels",
    "get_registry",
    "pusher_channel",
    "pusher_event",
    "pusher_send_guard",
    "pusher_socket_id",
]
