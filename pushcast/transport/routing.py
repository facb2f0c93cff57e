# pushcast/transport/routing.py
"""
FastAPI integration for the dispatch pipeline.

``make_pusher_route(dispatcher)`` builds an ``APIRoute`` subclass that
runs ``dispatcher.dispatch(request, response, handler, value)`` after
every successful handler call. The dispatch is attached as a background
task, so it starts only after the response has been sent and cannot
change its status, body or timing.

Usage::

    dispatcher = DispatchResolver(get_registry(), get_pusher_client())
    router = PusherRouter(dispatcher, prefix="/orders")

    @router.post("/")
    @pusher_event("order-created")
    @pusher_channel("orders")
    async def create_order(order: OrderIn) -> OrderOut: ...

The handler identity used for policy lookup is the endpoint function as
written, before any wrapping.
"""
from __future__ import annotations

import functools
import inspect
from contextvars import ContextVar
from typing import Any, Callable, Optional

from fastapi import APIRouter, Request, Response
from fastapi.routing import APIRoute
from starlette.background import BackgroundTasks

from pushcast.core.dispatcher import DispatchResolver

# Per-request box the wrapped endpoint drops its return value into.
# A list is used so writes from threadpool (sync) endpoints are visible.
_produced: ContextVar[Optional[list]] = ContextVar("pushcast_produced", default=None)


def _remember(value: Any) -> None:
    box = _produced.get()
    if box is not None:
        box.append(value)


def _resolved_signature(endpoint: Callable[..., Any]) -> inspect.Signature:
    # The wrapper lives in this module, so string annotations must be
    # resolved against the endpoint's own globals
    try:
        return inspect.signature(endpoint, eval_str=True)
    except NameError:
        return inspect.signature(endpoint)


def capture_result(endpoint: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap ``endpoint`` so its return value is recorded for the current request."""
    if hasattr(endpoint, "__pushcast_handler__"):
        # Already wrapped, e.g. when a router is included into an app
        return endpoint
    signature = _resolved_signature(endpoint)

    if inspect.iscoroutinefunction(endpoint):
        @functools.wraps(endpoint)
        async def async_wrapper(*args, **kwargs):
            value = await endpoint(*args, **kwargs)
            _remember(value)
            return value
        async_wrapper.__signature__ = signature
        async_wrapper.__pushcast_handler__ = endpoint
        return async_wrapper

    @functools.wraps(endpoint)
    def sync_wrapper(*args, **kwargs):
        value = endpoint(*args, **kwargs)
        _remember(value)
        return value
    sync_wrapper.__signature__ = signature
    sync_wrapper.__pushcast_handler__ = endpoint
    return sync_wrapper


def attach_background(response: Response, func: Callable[..., Any], *args: Any) -> None:
    """Run ``func(*args)`` after ``response`` is sent, keeping existing background work first."""
    tasks = BackgroundTasks()
    if response.background is not None:
        tasks.add_task(response.background)
    tasks.add_task(func, *args)
    response.background = tasks


def make_pusher_route(dispatcher: DispatchResolver) -> type[APIRoute]:
    """Build an ``APIRoute`` class bound to ``dispatcher``."""

    class PusherRoute(APIRoute):
        def __init__(self, path: str, endpoint: Callable[..., Any], **kwargs: Any) -> None:
            self.handler = getattr(endpoint, "__pushcast_handler__", endpoint)
            super().__init__(path, capture_result(endpoint), **kwargs)

        def get_route_handler(self) -> Callable:
            original_route_handler = super().get_route_handler()
            handler = self.handler

            async def route_handler(request: Request) -> Response:
                box: list = []
                token = _produced.set(box)
                try:
                    response = await original_route_handler(request)
                finally:
                    _produced.reset(token)

                if box:
                    attach_background(
                        response, dispatcher.dispatch, request, response, handler, box[0],
                    )
                return response

            return route_handler

    PusherRoute.dispatcher = dispatcher
    return PusherRoute


class PusherRouter(APIRouter):
    """``APIRouter`` whose routes emit Pusher events after their handlers."""

    def __init__(self, dispatcher: DispatchResolver, **kwargs: Any) -> None:
        kwargs.setdefault("route_class", make_pusher_route(dispatcher))
        super().__init__(**kwargs)
        self.dispatcher = dispatcher
