# pushcast/transport/middleware.py
"""
HTTP middleware for apps serving pusher routes.

- ``RequestIDMiddleware`` sets ``request.state.request_id``; dispatch log
  lines pick it up, so a background dispatch can be traced to its request.
- ``RequestLoggingMiddleware`` logs one line per request naming the
  handler that served it and the event that handler declares.
- ``ErrorHandlingMiddleware`` turns unhandled handler errors into a JSON
  500 carrying the request id. A failed handler produces no event.
"""
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from pushcast.core.policies import PolicyKey
from pushcast.core.registry import handler_name
from pushcast.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def route_identity(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Handler name and declared event name for the route that matched ``request``.

    Only meaningful once routing has run. Either part is None when unknown.
    """
    endpoint = request.scope.get("endpoint")
    if endpoint is None:
        return None, None
    handler = getattr(endpoint, "__pushcast_handler__", endpoint)

    dispatcher = getattr(request.app.state, "dispatcher", None)
    event = dispatcher.store.get(PolicyKey.EVENT, handler) if dispatcher is not None else None
    return handler_name(handler), event.name if event is not None else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Accept the caller's request id or assign a fresh one"""

    def __init__(self, app: ASGIApp, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(self.header_name)
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
            request_id = incoming
        else:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[self.header_name] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with the handler and event it resolved to"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            self._context(request).error(
                "Request failed: %s %s error=%s duration=%.2fms",
                request.method, request.url.path, type(exc).__name__,
                (time.perf_counter() - started) * 1000,
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        self._context(request).info(
            "Request completed: %s %s status=%d duration=%.2fms",
            request.method, request.url.path, response.status_code, duration_ms,
            extra={"status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response

    @staticmethod
    def _context(request: Request) -> LogContext:
        handler, event = route_identity(request)
        return LogContext(
            logger,
            request_id=getattr(request.state, "request_id", None),
            handler=handler,
            event=event,
        )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch unhandled handler exceptions and answer with a generic 500"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            handler, event = route_identity(request)

            log_ctx = LogContext(logger, request_id=request_id, handler=handler, event=event)
            if event is not None:
                log_ctx.error(
                    "Handler %s raised %s; %s not dispatched",
                    handler, type(exc).__name__, event,
                    exc_info=True,
                )
            else:
                log_ctx.error("Unhandled exception: %s: %s", type(exc).__name__, exc, exc_info=True)

            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "request_id": request_id,
                },
            )
