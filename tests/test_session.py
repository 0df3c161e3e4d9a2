"""
Tests for the session state machine.

The session runs against an in-memory socket (tests/fakes.py) with timings
scaled down to milliseconds, so reconnection and heartbeat behaviour can be
observed end to end.
"""

import asyncio

import pytest
import websockets
from websockets.datastructures import Headers
from websockets.http11 import Response

from llmule.errors import (
    AuthenticationFailed,
    AuthenticationMissing,
    InvalidTransition,
    ReconnectBudgetExhausted,
)
from llmule.session import ConnectionState, SessionManager
from tests.fakes import (
    HANG,
    FakeConnector,
    FakeCredentials,
    FakeRegistry,
    FakeWebSocket,
    fast_settings,
    running,
    wait_until,
)

S = ConnectionState


def make_session(registry=None, credentials=None, connector=None, **settings):
    session = SessionManager(
        registry or FakeRegistry(),
        credentials or FakeCredentials(),
        fast_settings(**settings),
        connector or FakeConnector(),
        log_callback=lambda message, level: None,
    )
    session.states = []
    session.on_state_change = lambda old, new: session.states.append(new)
    return session


def request(request_id="r1", model="m1", **extra):
    msg = {
        "type": "completion_request",
        "requestId": request_id,
        "model": model,
        "messages": [{"role": "user", "content": "Say hello"}],
    }
    msg.update(extra)
    return msg


def responses(ws: FakeWebSocket) -> dict:
    return {m["requestId"]: m["response"] for m in ws.sent_of_type("completion_response")}


# =============================================================================
# End-to-end scenarios
# =============================================================================

class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_register_and_answer_completion(self):
        """m1 discovered -> register -> completion_request r1 -> response with usage."""
        connector = FakeConnector()
        session = make_session(connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest

            assert ws.sent[0] == {"type": "register", "apiKey": "test-key", "models": ["m1"]}
            url, headers = connector.calls[0]
            assert url == "ws://test/llm-network"
            assert headers == {"Authorization": "Bearer test-key"}

            ws.push(request("r1", "m1"))
            await wait_until(lambda: "r1" in responses(ws))

            response = responses(ws)["r1"]
            assert response["choices"][0]["message"] == {"role": "assistant", "content": "hello"}
            assert response["usage"]["total_tokens"] == 5

    @pytest.mark.asyncio
    async def test_unregistered_model_is_rejected_without_backend_call(self):
        registry = FakeRegistry(models=["m1"])
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push(request("r2", "m2"))
            await wait_until(lambda: "r2" in responses(ws))

            assert responses(ws)["r2"]["error"]["code"] == "model_unavailable"
            assert registry.calls == []

    @pytest.mark.asyncio
    async def test_register_carries_user_and_provider(self):
        connector = FakeConnector()
        session = make_session(connector=connector, user_id="u-1", provider="home-rig")

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            register = connector.latest.sent[0]
            assert register["userId"] == "u-1"
            assert register["provider"] == "home-rig"

    @pytest.mark.asyncio
    async def test_replayed_request_id_is_completed_twice(self):
        """Current behaviour: no deduplication of request ids."""
        registry = FakeRegistry()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push(request("r1"))
            await wait_until(lambda: len(ws.sent_of_type("completion_response")) == 1)
            ws.push(request("r1"))
            await wait_until(lambda: len(ws.sent_of_type("completion_response")) == 2)

            assert len(registry.calls) == 2
            assert all(m["requestId"] == "r1" for m in ws.sent_of_type("completion_response"))

    @pytest.mark.asyncio
    async def test_concurrency_limit_rejects_second_distinct_model(self):
        registry = FakeRegistry(models=["m1", "m2"])
        registry.gate = asyncio.Event()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector, max_concurrency=1)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push(request("r1", "m1"))
            await wait_until(lambda: session.active_request_ids == {"r1"})
            ws.push(request("r2", "m2"))
            await wait_until(lambda: "r2" in responses(ws))

            assert responses(ws)["r2"]["error"]["code"] == "concurrency_exceeded"
            assert "r1" not in responses(ws)

            registry.gate.set()
            await wait_until(lambda: "r1" in responses(ws))
            assert "choices" in responses(ws)["r1"]


# =============================================================================
# Inbound protocol handling
# =============================================================================

class TestInboundMessages:

    @pytest.mark.asyncio
    async def test_ping_is_answered_with_pong(self):
        connector = FakeConnector()
        session = make_session(connector=connector, heartbeat_interval=5.0, stale_after=10.0)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push({"type": "ping"})
            await wait_until(lambda: ws.sent_of_type("pong"))

    @pytest.mark.asyncio
    async def test_pong_is_answered_while_backend_is_busy(self):
        registry = FakeRegistry()
        registry.gate = asyncio.Event()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push(request("slow"))
            await wait_until(lambda: session.active_request_ids == {"slow"})
            ws.push({"type": "ping"})
            await wait_until(lambda: ws.sent_of_type("pong"))
            assert "slow" not in responses(ws)
            registry.gate.set()

    @pytest.mark.asyncio
    async def test_registered_ack_is_observable(self):
        connector = FakeConnector()
        session = make_session(connector=connector)
        acks = []
        session.on_registered = lambda: acks.append(True)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            assert session.registered is False
            connector.latest.push({"type": "registered"})
            await wait_until(lambda: session.registered)
            assert acks == [True]

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_drop_connection(self):
        connector = FakeConnector()
        session = make_session(connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push("this is not json")
            ws.push({"no": "type"})
            ws.push({"type": "error", "error": "something odd"})
            ws.push({"type": "completion_request", "model": "m1"})
            ws.push({"type": "completion_request", "requestId": "bad", "model": "m1"})
            await wait_until(lambda: "bad" in responses(ws))

            assert responses(ws)["bad"]["error"]["code"] == "invalid_request"
            assert session.state is S.READY
            assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_generation_defaults_are_applied(self):
        registry = FakeRegistry()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            ws.push(request("r1"))
            ws.push(request("r2", temperature=0.1, max_tokens=64))
            await wait_until(lambda: len(registry.calls) == 2)

        options = {call[2] for call in registry.calls}
        assert {(o.temperature, o.max_tokens) for o in options} == {(0.7, 4096), (0.1, 64)}


# =============================================================================
# Reconnection
# =============================================================================

class TestReconnection:

    @pytest.mark.asyncio
    async def test_budget_exhausted_after_consecutive_failures(self):
        connector = FakeConnector([OSError("refused")] * 10)
        session = make_session(connector=connector, max_reconnect_attempts=3)

        with pytest.raises(ReconnectBudgetExhausted):
            await asyncio.wait_for(session.run(), timeout=2.0)

        assert len(connector.calls) == 3
        assert session.state is S.TERMINATED
        assert session.states.count(S.CONNECTING) == 3

        await asyncio.sleep(0.05)
        assert len(connector.calls) == 3

    @pytest.mark.asyncio
    async def test_connect_timeout_counts_as_failure(self):
        connector = FakeConnector([HANG, HANG])
        session = make_session(connector=connector, connect_timeout=0.05, max_reconnect_attempts=2)

        with pytest.raises(ReconnectBudgetExhausted, match="not open after"):
            await asyncio.wait_for(session.run(), timeout=2.0)
        assert len(connector.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_registration_counts_against_budget(self):
        """A socket that opens but cannot carry the register frame never reaches READY."""
        dead = []
        for _ in range(10):
            ws = FakeWebSocket()
            ws.fail_sends = True
            dead.append(ws)
        connector = FakeConnector(dead)
        session = make_session(connector=connector, max_reconnect_attempts=3)

        with pytest.raises(ReconnectBudgetExhausted, match="Registration could not be sent"):
            await asyncio.wait_for(session.run(), timeout=2.0)

        assert len(connector.calls) == 3
        assert session.states.count(S.READY) == 0
        assert session.states.count(S.DISCONNECTED) == 3
        assert session.reconnect_attempt == 3
        assert all(ws.closed for ws in connector.sockets)

    @pytest.mark.asyncio
    async def test_failed_registration_then_recovery(self):
        dead = FakeWebSocket()
        dead.fail_sends = True
        connector = FakeConnector([dead])
        session = make_session(connector=connector, max_reconnect_attempts=3)

        async with running(session):
            await wait_until(lambda: len(connector.sockets) == 2 and session.state is S.READY)
            assert session.states[:6] == [
                S.AUTHENTICATING, S.DISCOVERING, S.CONNECTING,
                S.REGISTERING, S.DISCONNECTED, S.RECONNECTING,
            ]
            assert session.reconnect_attempt == 0

    @pytest.mark.asyncio
    async def test_successful_ready_resets_attempt_counter(self):
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector([OSError("a"), OSError("b"), ws1, OSError("c"), OSError("d"), ws2])
        session = make_session(connector=connector, max_reconnect_attempts=3)

        async with running(session):
            await wait_until(lambda: connector.sockets == [ws1] and session.state is S.READY)
            assert session.reconnect_attempt == 0
            ws1.remote_close(1006, "going away")

            await wait_until(lambda: connector.sockets == [ws1, ws2] and session.state is S.READY)
            assert len(connector.calls) == 6
            assert session.reconnect_attempt == 0

    @pytest.mark.asyncio
    async def test_no_request_state_survives_reconnect(self):
        registry = FakeRegistry()
        registry.gate = asyncio.Event()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)
        seen_on_ready = []
        session.on_state_change = lambda old, new: (
            seen_on_ready.append(session.active_request_ids) if new is S.READY else None
        )

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws1 = connector.latest
            ws1.push(request("r1"))
            await wait_until(lambda: session.active_request_ids == {"r1"})

            ws1.remote_close(1011, "server restart")
            await wait_until(lambda: len(connector.sockets) == 2 and session.state is S.READY)
            ws2 = connector.latest

            assert session.active_request_ids == frozenset()
            assert seen_on_ready == [frozenset(), frozenset()]
            assert ws1.closed

            registry.gate.set()
            await asyncio.sleep(0.05)
            assert responses(ws1) == {}
            assert responses(ws2) == {}

    @pytest.mark.asyncio
    async def test_models_are_rediscovered_on_reconnect(self):
        registry = FakeRegistry(models=["m1", "m2"], discoveries=[["m1"]])
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            assert connector.latest.sent[0]["models"] == ["m1"]
            connector.latest.remote_close(1006)

            await wait_until(lambda: len(connector.sockets) == 2 and session.state is S.READY)
            assert connector.latest.sent[0]["models"] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_blocked_send_forces_reconnect(self):
        connector = FakeConnector()
        session = make_session(connector=connector, send_timeout=0.05)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws1 = connector.latest
            ws1.block_sends = True
            ws1.push({"type": "ping"})

            await wait_until(lambda: len(connector.sockets) == 2 and session.state is S.READY)
            assert S.DISCONNECTED in session.states


# =============================================================================
# Liveness
# =============================================================================

class TestLiveness:

    @pytest.mark.asyncio
    async def test_silent_connection_is_declared_stale(self):
        connector = FakeConnector()
        session = make_session(connector=connector, heartbeat_interval=0.05, stale_after=0.15)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws1 = connector.latest

            await wait_until(lambda: len(connector.calls) == 2, timeout=1.0)
            assert S.DISCONNECTED in session.states
            assert ws1.closed
            # Pings were sent before giving up
            assert ws1.sent_of_type("ping")

    @pytest.mark.asyncio
    async def test_server_pings_keep_connection_alive(self):
        connector = FakeConnector()
        session = make_session(connector=connector, heartbeat_interval=0.05, stale_after=0.15)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            ws = connector.latest
            for _ in range(12):
                ws.push({"type": "ping"})
                await asyncio.sleep(0.03)

            assert session.state is S.READY
            assert len(connector.calls) == 1
            assert session.last_liveness_ack is not None


# =============================================================================
# Terminal conditions
# =============================================================================

class TestTermination:

    @pytest.mark.asyncio
    async def test_missing_credential_is_fatal(self):
        connector = FakeConnector()
        session = make_session(
            credentials=FakeCredentials(error=AuthenticationMissing("declined")),
            connector=connector,
        )

        with pytest.raises(AuthenticationMissing):
            await asyncio.wait_for(session.run(), timeout=2.0)
        assert connector.calls == []
        assert session.states == [S.AUTHENTICATING, S.TERMINATED]

    @pytest.mark.asyncio
    async def test_auth_close_code_is_terminal(self):
        connector = FakeConnector()
        session = make_session(connector=connector)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: session.state is S.READY)
        connector.latest.remote_close(4001, "Invalid API key")

        with pytest.raises(AuthenticationFailed):
            await asyncio.wait_for(task, timeout=2.0)
        assert session.state is S.TERMINATED
        assert len(connector.calls) == 1
        assert S.DISCONNECTED not in session.states

    @pytest.mark.asyncio
    async def test_auth_error_frame_is_terminal(self):
        connector = FakeConnector()
        session = make_session(connector=connector)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: session.state is S.READY)
        connector.latest.push({"type": "auth_error", "error": "key revoked"})

        with pytest.raises(AuthenticationFailed, match="key revoked"):
            await asyncio.wait_for(task, timeout=2.0)
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_handshake_401_is_terminal(self):
        rejected = websockets.exceptions.InvalidStatus(Response(401, "Unauthorized", Headers()))
        connector = FakeConnector([rejected])
        session = make_session(connector=connector)

        with pytest.raises(AuthenticationFailed):
            await asyncio.wait_for(session.run(), timeout=2.0)
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_handshake_500_is_retried(self):
        rejected = websockets.exceptions.InvalidStatus(Response(503, "Unavailable", Headers()))
        connector = FakeConnector([rejected])
        session = make_session(connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            assert len(connector.calls) == 2


# =============================================================================
# Shutdown and discovery
# =============================================================================

class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_flushes_in_flight_response(self):
        registry = FakeRegistry()
        registry.gate = asyncio.Event()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: session.state is S.READY)
        ws = connector.latest
        ws.push(request("r1"))
        await wait_until(lambda: session.active_request_ids == {"r1"})

        session.request_shutdown()
        await asyncio.sleep(0.02)
        registry.gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        types = [m["type"] for m in ws.sent]
        assert types.index("completion_response") < types.index("disconnect")
        assert ws.closed
        assert session.state is S.TERMINATED
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_pings_answered_while_flushing(self):
        registry = FakeRegistry()
        registry.gate = asyncio.Event()
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: session.state is S.READY)
        ws = connector.latest
        ws.push(request("r1"))
        await wait_until(lambda: session.active_request_ids == {"r1"})

        session.request_shutdown()
        await asyncio.sleep(0.02)
        ws.push({"type": "ping"})
        ws.push(request("late"))
        await wait_until(lambda: ws.sent_of_type("pong"))

        registry.gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        types = [m["type"] for m in ws.sent]
        assert types.index("pong") < types.index("completion_response") < types.index("disconnect")
        assert "late" not in responses(ws)
        assert [call[0] for call in registry.calls] == ["m1"]

    @pytest.mark.asyncio
    async def test_shutdown_while_waiting_for_models(self):
        registry = FakeRegistry(models=[])
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: registry.discover_calls >= 3)
        assert session.state is S.DISCOVERING
        session.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert session.state is S.TERMINATED
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_shutdown_while_connecting(self):
        connector = FakeConnector([HANG])
        session = make_session(connector=connector, connect_timeout=5.0)
        task = asyncio.create_task(session.run())

        await wait_until(lambda: session.state is S.CONNECTING and connector.calls)
        session.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        assert session.state is S.TERMINATED

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self):
        session = make_session()
        session.request_shutdown()
        await asyncio.wait_for(session.run(), timeout=1.0)
        assert session.state is S.TERMINATED

    @pytest.mark.asyncio
    async def test_empty_discovery_retries_then_connects(self):
        registry = FakeRegistry(models=["m1"], discoveries=[[], []])
        connector = FakeConnector()
        session = make_session(registry=registry, connector=connector)

        async with running(session):
            await wait_until(lambda: session.state is S.READY)
            assert registry.discover_calls == 3
            assert session.states[:4] == [S.AUTHENTICATING, S.DISCOVERING, S.DISCOVERING, S.DISCOVERING]


class TestStateMachine:

    def test_illegal_transition_raises(self):
        session = make_session()
        with pytest.raises(InvalidTransition):
            session._transition(S.READY)

    @pytest.mark.asyncio
    async def test_terminated_is_absorbing(self):
        session = make_session()
        session.request_shutdown()
        await session.run()
        for state in S:
            with pytest.raises(InvalidTransition):
                session._transition(state)

    @pytest.mark.asyncio
    async def test_run_twice_is_rejected(self):
        session = make_session()
        session.request_shutdown()
        await session.run()
        with pytest.raises(InvalidTransition):
            await session.run()
