# tests/test_dispatcher.py
"""Tests for pushcast/core/dispatcher.py: stage ordering, short-circuits and isolation."""
from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from pushcast.core.dispatcher import DispatchResolver, SkipReason
from pushcast.core.policies import PolicyKey
from pushcast.infra.metrics import get_metrics_collector
from pushcast.infra.pusher_client import PusherError

DISPATCH_LOGGER = "pushcast.core.dispatcher"


def create_order():
    return {"id": 1}


def _warnings(caplog):
    return [
        r for r in caplog.records
        if r.name == DISPATCH_LOGGER and r.levelno == logging.WARNING
    ]


# ============================================================================
# Event presence gate
# ============================================================================

class TestEventGate:
    @pytest.mark.asyncio
    async def test_no_event_skips_with_single_lookup(self, dispatcher, registry, transport, make_request):
        # Other policies present but no event: none of them may be read
        registry.register(create_order, channel="orders", socket_id="x-sid")
        registry.reads.clear()

        result = await dispatcher.dispatch(make_request(), None, create_order, {"id": 1})

        assert result.dispatched is False
        assert result.reason is SkipReason.NO_EVENT
        assert transport.calls == []
        assert registry.reads == [PolicyKey.EVENT]

    @pytest.mark.asyncio
    async def test_unknown_handler_skips(self, dispatcher, transport, make_request):
        result = await dispatcher.dispatch(make_request(), None, lambda: None, "value")
        assert result.reason is SkipReason.NO_EVENT
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_no_event_emits_no_logs(self, dispatcher, make_request, caplog):
        caplog.set_level(logging.DEBUG, logger=DISPATCH_LOGGER)
        await dispatcher.dispatch(make_request(), None, create_order, {})
        assert [r for r in caplog.records if r.name == DISPATCH_LOGGER] == []


# ============================================================================
# Guard gate
# ============================================================================

class TestGuardGate:
    @pytest.mark.asyncio
    async def test_guard_false_blocks_even_with_channel(self, dispatcher, registry, transport, make_request):
        registry.register(
            create_order,
            event="order-created",
            channel="orders",
            guard=lambda req, resp, evt: False,
        )

        result = await dispatcher.dispatch(make_request(), None, create_order, {"id": 1})

        assert result.reason is SkipReason.GUARD_REJECTED
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_guard_false_blocks_without_channel_and_no_warning(
        self, dispatcher, registry, transport, make_request, caplog,
    ):
        registry.register(create_order, event="order-created", guard=lambda req, resp, evt: False)

        result = await dispatcher.dispatch(make_request(), None, create_order, {})

        assert result.reason is SkipReason.GUARD_REJECTED
        assert transport.calls == []
        assert _warnings(caplog) == []

    @pytest.mark.asyncio
    async def test_guard_rejection_short_circuits_channel_lookup(self, dispatcher, registry, make_request):
        registry.register(create_order, event="e", channel="c", guard=lambda req, resp, evt: False)
        registry.reads.clear()

        await dispatcher.dispatch(make_request(), None, create_order, {})

        assert registry.reads == [PolicyKey.EVENT, PolicyKey.GUARD]

    @pytest.mark.asyncio
    async def test_guard_sees_request_response_and_event(self, dispatcher, registry, transport, make_request):
        seen = {}

        def guard(req, resp, evt):
            seen.update(req=req, resp=resp, evt=evt)
            return True

        registry.register(create_order, event="order-created", channel="orders", guard=guard)
        request, response = make_request(), MagicMock(status_code=201)

        result = await dispatcher.dispatch(request, response, create_order, {"id": 1})

        assert result.dispatched is True
        assert seen["req"] is request
        assert seen["resp"] is response
        assert seen["evt"].name == "order-created"

    @pytest.mark.asyncio
    async def test_guard_exception_skips_with_error_log(
        self, dispatcher, registry, transport, make_request, caplog,
    ):
        def guard(req, resp, evt):
            raise RuntimeError("guard down")

        registry.register(create_order, event="e", channel="c", guard=guard)

        result = await dispatcher.dispatch(make_request(), None, create_order, {})

        assert result.reason is SkipReason.POLICY_ERROR
        assert transport.calls == []
        assert any(r.levelno == logging.ERROR for r in caplog.records if r.name == DISPATCH_LOGGER)


# ============================================================================
# Channel gate
# ============================================================================

class TestChannelGate:
    @pytest.mark.asyncio
    async def test_missing_channel_warns_once(self, dispatcher, registry, transport, make_request, caplog):
        registry.register(create_order, event="order-created")

        result = await dispatcher.dispatch(make_request(), None, create_order, {"id": 1})

        assert result.reason is SkipReason.NO_CHANNEL
        assert transport.calls == []
        warnings = _warnings(caplog)
        assert len(warnings) == 1
        message = warnings[0].getMessage()
        assert "create_order" in message
        assert "order-created" in message

    @pytest.mark.asyncio
    async def test_missing_channel_skips_socket_lookup(self, dispatcher, registry, make_request):
        registry.register(create_order, event="order-created", socket_id="x-sid")
        registry.reads.clear()

        await dispatcher.dispatch(make_request(), None, create_order, {})

        assert PolicyKey.SOCKET_ID not in registry.reads

    @pytest.mark.asyncio
    async def test_builder_exception_skips(self, dispatcher, registry, transport, make_request):
        def build(req, evt):
            raise KeyError("user_id")

        registry.register(create_order, event="e", channel=build)

        result = await dispatcher.dispatch(make_request(), None, create_order, {})

        assert result.reason is SkipReason.POLICY_ERROR
        assert result.error is not None
        assert transport.calls == []


# ============================================================================
# Successful dispatch
# ============================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_static_channel(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="order-created", channel="orders")
        payload = {"id": 1}

        result = await dispatcher.dispatch(make_request(), None, create_order, payload)

        assert result.dispatched is True
        assert result.reason is None
        assert transport.calls == [{
            "channels": "orders",
            "event_name": "order-created",
            "data": {"id": 1},
            "socket_id": None,
        }]
        assert transport.calls[0]["data"] is payload

    @pytest.mark.asyncio
    async def test_channel_list(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="e", channel=["orders", "audit"])
        await dispatcher.dispatch(make_request(), None, create_order, {})
        assert transport.calls[0]["channels"] == ["orders", "audit"]

    @pytest.mark.asyncio
    async def test_channel_builder(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="e", channel=lambda req, evt: "user-" + req.user_id)

        result = await dispatcher.dispatch(make_request(user_id="42"), None, create_order, {})

        assert transport.calls[0]["channels"] == "user-42"
        assert result.dispatch_tuple.channels == "user-42"

    @pytest.mark.asyncio
    async def test_socket_id_from_declared_header(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="e", channel="c", socket_id="x-sid")
        await dispatcher.dispatch(make_request(headers={"x-sid": "abc"}), None, create_order, {})
        assert transport.calls[0]["socket_id"] == "abc"

    @pytest.mark.asyncio
    async def test_socket_id_from_default_header(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="e", channel="c")
        await dispatcher.dispatch(make_request(headers={"x-pusher-sid": "xyz"}), None, create_order, {})
        assert transport.calls[0]["socket_id"] == "xyz"

    @pytest.mark.asyncio
    async def test_configured_default_header(self, registry, transport, make_request):
        dispatcher = DispatchResolver(registry, transport, default_socket_id_header="x-socket")
        registry.register(create_order, event="e", channel="c")
        await dispatcher.dispatch(make_request(headers={"x-socket": "s"}), None, create_order, {})
        assert transport.calls[0]["socket_id"] == "s"

    @pytest.mark.asyncio
    async def test_stage_order(self, dispatcher, registry, make_request):
        registry.register(create_order, event="e", channel="c", guard=lambda req, resp, evt: True)
        registry.reads.clear()

        await dispatcher.dispatch(make_request(), None, create_order, {})

        assert registry.reads == [
            PolicyKey.EVENT, PolicyKey.GUARD, PolicyKey.CHANNEL, PolicyKey.SOCKET_ID,
        ]

    @pytest.mark.asyncio
    async def test_sync_transport(self, registry, make_request):
        calls = []

        class SyncTransport:
            def trigger(self, channels, event_name, data, socket_id=None):
                calls.append((channels, event_name, data, socket_id))

        dispatcher = DispatchResolver(registry, SyncTransport())
        registry.register(create_order, event="e", channel="c")

        result = await dispatcher.dispatch(make_request(), None, create_order, 5)

        assert result.dispatched is True
        assert calls == [("c", "e", 5, None)]

    @pytest.mark.asyncio
    async def test_one_transport_call_per_dispatch(self, dispatcher, registry, transport, make_request):
        registry.register(create_order, event="e", channel=["a", "b", "c"])
        await dispatcher.dispatch(make_request(), None, create_order, {})
        await dispatcher.dispatch(make_request(), None, create_order, {})
        assert len(transport.calls) == 2


# ============================================================================
# Failure isolation
# ============================================================================

class TestTransportFailure:
    @pytest.mark.asyncio
    async def test_failure_is_absorbed(self, registry, failing_transport, make_request, caplog):
        transport = failing_transport(PusherError(503, "unavailable", retryable=True))
        dispatcher = DispatchResolver(registry, transport)
        registry.register(create_order, event="order-created", channel="orders")
        payload = {"id": 1, "items": [1, 2]}

        result = await dispatcher.dispatch(make_request(), None, create_order, payload)

        assert result.dispatched is False
        assert result.reason is SkipReason.TRANSPORT_FAILED
        assert isinstance(result.error, PusherError)
        assert payload == {"id": 1, "items": [1, 2]}
        assert len(transport.calls) == 1
        errors = [r for r in caplog.records if r.name == DISPATCH_LOGGER and r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert errors[0].retryable is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_absorbed(self, registry, failing_transport, make_request):
        dispatcher = DispatchResolver(registry, failing_transport(ConnectionResetError()))
        registry.register(create_order, event="e", channel="c")

        result = await dispatcher.dispatch(make_request(), None, create_order, {})

        assert result.reason is SkipReason.TRANSPORT_FAILED


# ============================================================================
# Diagnostics
# ============================================================================

class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_debug_flag_logs_dispatch(self, registry, transport, make_request, caplog):
        caplog.set_level(logging.INFO, logger=DISPATCH_LOGGER)
        dispatcher = DispatchResolver(registry, transport, debug=True)
        registry.register(create_order, event="order-created", channel="orders")

        await dispatcher.dispatch(make_request(), None, create_order, {})

        messages = [r.getMessage() for r in caplog.records if r.name == DISPATCH_LOGGER]
        assert "order-created has been dispatched to orders" in messages

    @pytest.mark.asyncio
    async def test_no_dispatch_log_without_debug(self, dispatcher, registry, make_request, caplog):
        caplog.set_level(logging.INFO, logger=DISPATCH_LOGGER)
        registry.register(create_order, event="order-created", channel="orders")

        await dispatcher.dispatch(make_request(), None, create_order, {})

        assert not any("has been dispatched" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_guard_rejection_logged_at_debug(self, dispatcher, registry, make_request, caplog):
        caplog.set_level(logging.DEBUG, logger=DISPATCH_LOGGER)
        registry.register(create_order, event="e", channel="c", guard=lambda req, resp, evt: False)

        await dispatcher.dispatch(make_request(), None, create_order, {})

        rejected = [r for r in caplog.records if "guard rejected" in r.getMessage()]
        assert len(rejected) == 1
        assert rejected[0].levelno == logging.DEBUG

    @pytest.mark.asyncio
    async def test_outcome_metrics(self, dispatcher, registry, make_request):
        registry.register(create_order, event="order-created", channel="orders")
        await dispatcher.dispatch(make_request(), None, create_order, {})
        await dispatcher.dispatch(make_request(), None, create_order, {})

        collector = get_metrics_collector()
        assert collector.get_counter("pusher_dispatch_total", event="order-created", outcome="sent") == 2
