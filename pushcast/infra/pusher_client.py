# pushcast/infra/pusher_client.py
"""
Pusher Channels REST client.

Implements the subset of the HTTP API the dispatcher needs:
- ``trigger``        – POST /apps/{app_id}/events
- ``trigger_batch``  – POST /apps/{app_id}/batch_events

Requests are signed with HMAC-SHA256 (auth_key, auth_timestamp,
auth_version, body_md5, auth_signature query params).

Chunking
~~~~~~~~
Pusher rejects messages above 10 KB. When chunking is enabled and the
encoded payload exceeds ``ChunkingOptions.limit`` bytes, the JSON string
is split into pieces and sent as ``chunked-<event>`` events carrying
``{"id", "index", "chunk", "final"}``. Each chunk message, envelope and
escaping included, stays within ``limit`` bytes. Clients reassemble by
``id`` and ``index`` until they see ``final``.

Error classification (PusherError.retryable):
- 4xx (bad request, auth, forbidden) → NOT retryable
- 429 rate limiting                  → retryable
- 5xx / network / timeout            → retryable
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

import aiohttp
from fastapi.encoders import jsonable_encoder

from pushcast.config import settings
from pushcast.infra.http_client import get_pusher_session
from pushcast.infra.logging_config import get_logger
from pushcast.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

MAX_CHANNELS_PER_TRIGGER = 100
MAX_EVENTS_PER_BATCH = 10
CHUNKED_EVENT_PREFIX = "chunked-"


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class PusherError(Exception):
    """Error delivering an event via the Pusher REST API.

    Attributes:
        status:    HTTP status code (0 for connection-level or local errors).
        retryable: Whether a later retry could succeed.
    """

    def __init__(self, status: int, message: str, *, retryable: bool = False):
        self.status = status
        self.retryable = retryable
        super().__init__(f"Pusher API error {status}: {message}")


@dataclass(frozen=True)
class ChunkingOptions:
    enabled: bool = True
    limit: int = 9216  # bytes


@dataclass(frozen=True)
class BatchEvent:
    channel: str
    name: str
    data: Any
    socket_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def encode_data(data: Any) -> str:
    """Pusher expects ``data`` as a string; non-strings are JSON-encoded."""
    if isinstance(data, str):
        return data
    return json.dumps(jsonable_encoder(data), separators=(",", ":"), ensure_ascii=False)


def _escaped_size(char: str) -> int:
    # UTF-8 size of ``char`` once escaped inside a JSON string
    return len(json.dumps(char, ensure_ascii=False).encode("utf-8")) - 2


def split_escaped(text: str, limit: int) -> list[str]:
    """Split ``text`` into pieces whose JSON-escaped form is at most ``limit`` UTF-8 bytes.

    Chunks travel as a string field of another JSON document, so quotes and
    backslashes of the encoded payload count twice. Characters are never split.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    sizes: dict[str, int] = {}
    pieces: list[str] = []
    current: list[str] = []
    used = 0
    for char in text:
        size = sizes.get(char)
        if size is None:
            size = sizes[char] = _escaped_size(char)
        if size > limit:
            raise ValueError(f"limit={limit} is smaller than a single escaped character")
        if used + size > limit:
            pieces.append("".join(current))
            current, used = [], 0
        current.append(char)
        used += size
    if current:
        pieces.append("".join(current))
    return pieces


def sign_request(
    key: str,
    secret: str,
    method: str,
    path: str,
    body: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Return the signed query params for a Pusher REST request."""
    params = {
        "auth_key": key,
        "auth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "auth_version": "1.0",
        "body_md5": hashlib.md5(body.encode("utf-8")).hexdigest(),
    }
    query = "&".join(f"{k}={params[k]}" for k in sorted(params))
    string_to_sign = f"{method.upper()}\n{path}\n{query}"
    params["auth_signature"] = hmac.new(
        secret.encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return params


def _as_channel_list(channels: Union[str, Sequence[str]]) -> list[str]:
    names = [channels] if isinstance(channels, str) else list(channels)
    if not names:
        raise PusherError(0, "at least one channel is required")
    if len(names) > MAX_CHANNELS_PER_TRIGGER:
        raise PusherError(
            0, f"{len(names)} channels exceeds the limit of {MAX_CHANNELS_PER_TRIGGER}"
        )
    return names


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PusherClient:
    """Async Pusher REST client with optional payload chunking."""

    def __init__(
        self,
        app_id: str,
        key: str,
        secret: str,
        *,
        base_url: str = "https://api-mt1.pusher.com",
        chunking: ChunkingOptions = ChunkingOptions(),
        timeout: float = 10.0,
        session_factory: Callable[[float], aiohttp.ClientSession] = get_pusher_session,
    ) -> None:
        self.app_id = app_id
        self.key = key
        self._secret = secret
        self.base_url = base_url.rstrip("/")
        self.chunking = chunking
        self.timeout = timeout
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, s=settings) -> "PusherClient":
        if not s.pusher_configured:
            raise PusherError(0, "Pusher credentials not configured")
        return cls(
            s.pusher_app_id,
            s.pusher_key,
            s.pusher_secret,
            base_url=s.pusher_base_url,
            chunking=ChunkingOptions(
                enabled=s.pusher_chunking_enabled,
                limit=s.pusher_chunking_limit,
            ),
            timeout=s.pusher_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger(
        self,
        channels: Union[str, Sequence[str]],
        event_name: str,
        data: Any,
        socket_id: Optional[str] = None,
    ) -> None:
        """
        Trigger ``event_name`` on one or more channels.

        Args:
            channels: Channel name or list of names (max 100)
            event_name: Pusher event name
            data: Payload; strings are sent verbatim, anything else as JSON
            socket_id: Connection to exclude from delivery (None = nobody)

        Raises:
            PusherError: On API or network errors (check .retryable)
        """
        names = _as_channel_list(channels)
        encoded = encode_data(data)

        if self.chunking.enabled and len(encoded.encode("utf-8")) > self.chunking.limit:
            await self._trigger_chunked(names, event_name, encoded, socket_id)
            return

        await self._post_event(names, event_name, encoded, socket_id)

    async def trigger_batch(self, events: Sequence[BatchEvent]) -> None:
        """Trigger up to 10 events in a single request. No chunking is applied."""
        if not events:
            return
        if len(events) > MAX_EVENTS_PER_BATCH:
            raise PusherError(
                0, f"{len(events)} events exceeds the batch limit of {MAX_EVENTS_PER_BATCH}"
            )
        batch = []
        for event in events:
            item = {
                "channel": event.channel,
                "name": event.name,
                "data": encode_data(event.data),
            }
            if event.socket_id:
                item["socket_id"] = event.socket_id
            batch.append(item)

        await self._post(f"/apps/{self.app_id}/batch_events", {"batch": batch})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _trigger_chunked(
        self,
        channels: list[str],
        event_name: str,
        encoded: str,
        socket_id: Optional[str],
    ) -> None:
        message_id = uuid.uuid4().hex
        chunk_event = f"{CHUNKED_EVENT_PREFIX}{event_name}"

        # Envelope with an empty chunk; the index can never exceed the payload length
        overhead = len(encode_data({
            "id": message_id,
            "index": len(encoded),
            "chunk": "",
            "final": False,
        }).encode("utf-8"))
        budget = self.chunking.limit - overhead
        if budget <= 0:
            raise PusherError(
                0, f"chunking limit {self.chunking.limit} leaves no room for chunk data"
            )
        pieces = split_escaped(encoded, budget)

        logger.debug(
            "Chunking %s: %d bytes into %d pieces (id=%s)",
            event_name, len(encoded.encode("utf-8")), len(pieces), message_id,
        )

        await asyncio.gather(*(
            self._post_event(
                channels,
                chunk_event,
                encode_data({
                    "id": message_id,
                    "index": index,
                    "chunk": piece,
                    "final": index == len(pieces) - 1,
                }),
                socket_id,
            )
            for index, piece in enumerate(pieces)
        ))
        DispatchMetrics.chunks_sent(event_name, len(pieces))

    async def _post_event(
        self,
        channels: list[str],
        event_name: str,
        encoded: str,
        socket_id: Optional[str],
    ) -> dict:
        body: dict[str, Any] = {
            "name": event_name,
            "channels": channels,
            "data": encoded,
        }
        if socket_id:
            body["socket_id"] = socket_id
        return await self._post(f"/apps/{self.app_id}/events", body)

    async def _post(self, path: str, payload: dict) -> dict:
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        params = sign_request(self.key, self._secret, "POST", path, body)
        session = self._session_factory(self.timeout)

        try:
            async with session.post(
                f"{self.base_url}{path}",
                params=params,
                data=body.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status == 200:
                    text = await resp.text()
                    return json.loads(text) if text else {}

                detail = (await resp.text())[:200]
                retryable = resp.status == 429 or resp.status >= 500
                logger.warning(
                    "Pusher API error: status=%d path=%s retryable=%s",
                    resp.status, path, retryable,
                )
                raise PusherError(resp.status, detail, retryable=retryable)

        except PusherError:
            raise
        except asyncio.TimeoutError as exc:
            raise PusherError(0, "request timed out", retryable=True) from exc
        except aiohttp.ClientError as exc:
            raise PusherError(0, f"{type(exc).__name__}: {exc}", retryable=True) from exc


# ---------------------------------------------------------------------------
# Process-wide client (lazy initialization)
# ---------------------------------------------------------------------------

_client: PusherClient | None = None


def get_pusher_client() -> PusherClient:
    """Get or create the Pusher client from settings."""
    global _client
    if _client is None:
        _client = PusherClient.from_settings()
    return _client


def reset_pusher_client() -> None:
    global _client
    _client = None
