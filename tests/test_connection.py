"""Tests for SessionConnectionManager against an in-memory WebSocket."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
import websockets
from websockets.datastructures import Headers
from websockets.http11 import Response

from coach_client.core.backoff import BackoffPolicy
from coach_client.core.errors import OperationCancelled, SessionError
from coach_client.core.shutdown import CancellationToken
from coach_client.session.connection import SessionConnectionManager
from coach_client.session.rate_limit import SlidingWindowRateLimiter
from coach_client.session.schemas import PING_FRAME
from coach_client.session.types import ConnectionStatus, GenerationConfig, SessionConfig, SessionEvent
from tests.fakes import FakeWebSocket, settle

CONNECT = "coach_client.session.connection.websockets.connect"

NO_WAIT = BackoffPolicy(base_delay_ms=0, max_delay_ms=0, max_attempts=6)

SESSION = SessionConfig(model="gemini-2.0-flash-exp", system_instruction="Coach me.")


def _recorder(manager):
    statuses, errors, messages, interrupts = [], [], [], []
    manager.events.subscribe(SessionEvent.STATUS_CHANGE, statuses.append)
    manager.events.subscribe(SessionEvent.ERROR, errors.append)
    manager.events.subscribe(SessionEvent.MESSAGE, messages.append)
    manager.events.subscribe(SessionEvent.INTERRUPTED, interrupts.append)
    return statuses, errors, messages, interrupts


def _content(text, interrupted=False):
    return json.dumps({
        "BidiGenerateContentServerContent": {
            "model_turn": {"parts": [{"text": text}]},
            "interrupted": interrupted,
        }
    })


@pytest.fixture
def manager():
    return SessionConnectionManager("test key", backoff=NO_WAIT, clock=lambda: 42.0)


@pytest.fixture
def connected(manager, fake_ws):
    """Manager whose connect() succeeds against fake_ws."""
    with patch(CONNECT, new=AsyncMock(return_value=fake_ws)) as connect:
        yield manager, connect


def test_build_url(manager):
    manager._session_config = SESSION
    assert manager.build_url() == (
        "wss://generativelanguage.googleapis.com/v1beta/"
        "models/gemini-2.0-flash-exp:streamGenerateContent?key=test%20key"
    )


def test_build_url_without_config(manager):
    with pytest.raises(SessionError):
        manager.build_url()


@pytest.mark.asyncio
async def test_connect_sends_setup_first(connected, fake_ws):
    manager, connect = connected
    statuses, errors, _, _ = _recorder(manager)

    await manager.connect(SESSION)

    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert errors == []
    assert manager.is_connected

    url = connect.call_args.args[0]
    assert url.startswith("wss://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash-exp")
    assert connect.call_args.kwargs["ping_interval"] is None

    setup = json.loads(fake_ws.sent[0])["BidiGenerateContentSetup"]
    assert setup["model"] == "models/gemini-2.0-flash-exp"
    assert setup["system_instruction"] == "Coach me."
    assert setup["generation_config"]["temperature"] == 0.7

    await manager.cleanup()


@pytest.mark.asyncio
async def test_default_generation_config_is_merged(fake_ws):
    manager = SessionConnectionManager(
        "k", default_generation_config=GenerationConfig(top_k=10), backoff=NO_WAIT
    )
    with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
        await manager.connect(
            SessionConfig(model="m", generation_config=GenerationConfig(temperature=0.1))
        )

    generation = json.loads(fake_ws.sent[0])["BidiGenerateContentSetup"]["generation_config"]
    assert generation["temperature"] == 0.1
    assert generation["top_k"] == 10
    await manager.cleanup()


@pytest.mark.asyncio
async def test_connect_when_connected_is_a_no_op(connected):
    manager, connect = connected
    await manager.connect(SESSION)
    await manager.connect(SESSION)
    assert connect.await_count == 1
    await manager.cleanup()


@pytest.mark.asyncio
async def test_send_message_when_connected(connected, fake_ws):
    manager, _ = connected
    await manager.connect(SESSION)

    await manager.send_message({"type": "text", "text": "hello"})

    assert json.loads(fake_ws.sent[-1]) == {"type": "text", "text": "hello"}
    assert manager.queue_length == 0
    await manager.cleanup()


@pytest.mark.asyncio
async def test_messages_queued_while_disconnected_flush_on_connect(connected, fake_ws):
    manager, _ = connected

    await manager.send_message("first")
    await manager.send_message("second")
    assert manager.queue_length == 2
    assert fake_ws.sent == []

    await manager.connect(SESSION)

    assert fake_ws.sent[1:] == ["first", "second"]
    assert manager.queue_length == 0
    await manager.cleanup()


@pytest.mark.asyncio
async def test_rate_limit_refuses_the_hundred_and_first_message(fake_ws):
    now = [0.0]
    limiter = SlidingWindowRateLimiter(limit=100, window_seconds=60, clock=lambda: now[0])
    manager = SessionConnectionManager("k", rate_limiter=limiter, backoff=NO_WAIT)

    with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
        await manager.connect(SESSION)

    for i in range(100):
        await manager.send_message(f"m{i}")

    with pytest.raises(SessionError) as exc_info:
        await manager.send_message("one too many")
    assert exc_info.value.recoverable is False
    assert exc_info.value.code == 429
    assert "one too many" not in fake_ws.sent

    now[0] = 60.0
    await manager.send_message("later")
    assert fake_ws.sent[-1] == "later"
    await manager.cleanup()


@pytest.mark.asyncio
async def test_failed_send_keeps_message_at_head_of_queue(connected, fake_ws):
    manager, _ = connected
    _, errors, _, _ = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.fail_next_sends = 1
    await manager.send_message("a")
    assert manager.queue_length == 1
    assert errors[-1].recoverable

    await manager.send_message("b")
    assert fake_ws.sent[1:] == ["a", "b"]
    assert manager.queue_length == 0
    await manager.cleanup()


@pytest.mark.asyncio
async def test_incoming_text_is_emitted(connected, fake_ws):
    manager, _ = connected
    _, errors, messages, interrupts = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.feed(_content("Hi there"))
    await settle()

    assert len(messages) == 1
    assert messages[0].text == "Hi there"
    assert messages[0].interrupted is False
    assert messages[0].timestamp == 42.0
    assert interrupts == []
    assert errors == []
    await manager.cleanup()


@pytest.mark.asyncio
async def test_interrupted_content_emits_both_events(connected, fake_ws):
    manager, _ = connected
    _, _, messages, interrupts = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.feed(_content("Hold on", interrupted=True).encode("utf-8"))
    await settle()

    assert messages[0].interrupted is True
    assert interrupts == [None]
    await manager.cleanup()


@pytest.mark.asyncio
@pytest.mark.parametrize("code, recoverable", [(503, True), (500, True), (400, False), (404, False)])
async def test_remote_error_recoverability(connected, fake_ws, code, recoverable):
    manager, _ = connected
    _, errors, _, _ = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.feed(json.dumps({"BidiGenerateContentResponse": {"message": "boom", "code": code}}))
    await settle()

    assert errors[0].code == code
    assert errors[0].recoverable is recoverable
    # remote errors do not tear the session down
    assert manager.status is ConnectionStatus.CONNECTED
    await manager.cleanup()


@pytest.mark.asyncio
async def test_unparsable_frame_is_reported_and_skipped(connected, fake_ws):
    manager, _ = connected
    _, errors, messages, _ = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.feed("{not json")
    fake_ws.feed(_content("still here"))
    await settle()

    assert errors[0].message == "Failed to parse WebSocket message"
    assert errors[0].recoverable is False
    assert [m.text for m in messages] == ["still here"]
    assert manager.status is ConnectionStatus.CONNECTED
    await manager.cleanup()


@pytest.mark.asyncio
async def test_unexpected_close_reconnects():
    first, second = FakeWebSocket(), FakeWebSocket()
    manager = SessionConnectionManager("k", backoff=NO_WAIT)
    statuses, errors, _, _ = _recorder(manager)

    with patch(CONNECT, new=AsyncMock(side_effect=[first, second])) as connect:
        await manager.connect(SESSION)
        first.drop(1006, "network down")
        await settle(30)

        assert connect.await_count == 2
        assert manager.status is ConnectionStatus.CONNECTED
        assert statuses[-2:] == [ConnectionStatus.RECONNECTING, ConnectionStatus.CONNECTED]
        assert errors[0].recoverable
        # the setup handshake is repeated on the new socket
        assert "BidiGenerateContentSetup" in json.loads(second.sent[0])
        assert manager.retry_count == 0
        await manager.cleanup()


@pytest.mark.asyncio
async def test_normal_close_from_remote_disconnects(connected, fake_ws):
    manager, connect = connected
    statuses, _, _, _ = _recorder(manager)
    await manager.connect(SESSION)

    fake_ws.drop(1000, "bye")
    await settle()

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert statuses[-1] is ConnectionStatus.DISCONNECTED
    assert connect.await_count == 1


@pytest.mark.asyncio
async def test_cleanup_closes_normally_and_is_idempotent(connected, fake_ws):
    manager, connect = connected
    await manager.connect(SESSION)
    await manager.send_message("x")

    await manager.cleanup()
    await manager.cleanup()
    await settle()

    assert fake_ws.close_calls == [(1000, "Cleanup requested")]
    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.queue_length == 0
    # closing on our side must not trigger a reconnect
    assert connect.await_count == 1


@pytest.mark.asyncio
async def test_reconnects_exhausted_after_six_attempts():
    manager = SessionConnectionManager("k", backoff=NO_WAIT)
    statuses, errors, _, _ = _recorder(manager)

    with patch(CONNECT, new=AsyncMock(side_effect=OSError("refused"))) as connect:
        with pytest.raises(SessionError) as exc_info:
            await manager.connect(SESSION)

    assert connect.await_count == 6
    assert len(errors) == 6
    assert exc_info.value.recoverable
    assert manager.status is ConnectionStatus.ERROR
    assert statuses.count(ConnectionStatus.RECONNECTING) == 1


@pytest.mark.asyncio
async def test_reconnect_delays_double_from_one_second():
    manager = SessionConnectionManager("k")
    sleep = AsyncMock()

    with patch.object(CancellationToken, "sleep", new=sleep), \
            patch(CONNECT, new=AsyncMock(side_effect=OSError("refused"))):
        with pytest.raises(SessionError):
            await manager.connect(SESSION)

    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0, 8.0, 16.0]


@pytest.mark.asyncio
async def test_retry_counter_resets_after_success(fake_ws):
    manager = SessionConnectionManager("k", backoff=NO_WAIT)
    side_effect = [OSError("refused"), OSError("refused"), fake_ws]

    with patch(CONNECT, new=AsyncMock(side_effect=side_effect)):
        await manager.connect(SESSION)

    assert manager.retry_count == 0
    assert manager.status is ConnectionStatus.CONNECTED
    await manager.cleanup()


@pytest.mark.asyncio
async def test_connect_timeout():
    manager = SessionConnectionManager(
        "k", connect_timeout_s=0.01, backoff=BackoffPolicy(0, 0, max_attempts=1)
    )

    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    with patch(CONNECT, new=AsyncMock(side_effect=hang)):
        with pytest.raises(SessionError) as exc_info:
            await manager.connect(SESSION)

    assert exc_info.value.message == "Connection timeout"
    assert exc_info.value.recoverable
    assert manager.status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_rejected_handshake_is_fatal():
    manager = SessionConnectionManager("bad key", backoff=NO_WAIT)
    rejected = websockets.exceptions.InvalidStatus(Response(401, "Unauthorized", Headers(), b""))

    with patch(CONNECT, new=AsyncMock(side_effect=rejected)) as connect:
        with pytest.raises(SessionError) as exc_info:
            await manager.connect(SESSION)

    assert exc_info.value.code == 401
    assert exc_info.value.recoverable is False
    assert connect.await_count == 1
    assert manager.status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_cleanup_during_reconnect_backoff():
    slow = BackoffPolicy(base_delay_ms=10_000, max_delay_ms=10_000, max_attempts=6)
    manager = SessionConnectionManager("k", backoff=slow)

    with patch(CONNECT, new=AsyncMock(side_effect=OSError("refused"))) as connect:
        task = asyncio.create_task(manager.connect(SESSION))
        await settle(30)
        assert manager.status is ConnectionStatus.RECONNECTING

        await manager.cleanup()
        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(task, timeout=2)

    assert connect.await_count == 1
    assert manager.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_heartbeat_sends_ping(fake_ws):
    manager = SessionConnectionManager("k", heartbeat_interval_s=0.01, backoff=NO_WAIT)

    with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
        await manager.connect(SESSION)
    await asyncio.sleep(0.05)

    assert PING_FRAME in fake_ws.sent
    await manager.cleanup()


@pytest.mark.asyncio
async def test_heartbeat_failure_emits_recoverable_error(fake_ws):
    manager = SessionConnectionManager("k", heartbeat_interval_s=0.01, backoff=NO_WAIT)
    _, errors, _, _ = _recorder(manager)

    with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
        await manager.connect(SESSION)
    fake_ws.fail_next_sends = 1
    await asyncio.sleep(0.05)

    assert errors
    assert errors[0].message.startswith("Failed to send heartbeat")
    assert errors[0].recoverable
    await manager.cleanup()


class GatedWebSocket(FakeWebSocket):
    """WebSocket whose sends wait until the gate opens."""

    def __init__(self, gate):
        super().__init__()
        self.gate = gate

    async def send(self, data):
        await self.gate.wait()
        await super().send(data)


@pytest.mark.asyncio
async def test_cleanup_during_setup_handshake():
    gate = asyncio.Event()
    ws = GatedWebSocket(gate)
    manager = SessionConnectionManager("k", backoff=NO_WAIT)
    statuses, errors, _, _ = _recorder(manager)

    with patch(CONNECT, new=AsyncMock(return_value=ws)):
        task = asyncio.create_task(manager.connect(SESSION))
        await settle(30)
        assert manager.status is ConnectionStatus.CONNECTING

        await manager.cleanup()
        gate.set()
        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(task, timeout=2)

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert not manager.is_connected
    assert ConnectionStatus.CONNECTED not in statuses
    assert errors == []
    # the socket opened for the cancelled run is closed, not adopted
    assert ws.close_calls


@pytest.mark.asyncio
async def test_cleanup_before_scheduled_reconnect_starts(connected, fake_ws):
    manager, connect = connected
    statuses, errors, _, _ = _recorder(manager)
    await manager.connect(SESSION)

    manager._handle_close(1006, "connection lost")
    await manager.cleanup()
    await settle()

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert errors == []
    assert ConnectionStatus.RECONNECTING not in statuses
    assert manager.retry_count == 0
    assert connect.await_count == 1


@pytest.mark.asyncio
async def test_session_restarts_after_cleanup_interrupts_reconnect():
    first, second = FakeWebSocket(), FakeWebSocket()
    slow = BackoffPolicy(base_delay_ms=10_000, max_delay_ms=10_000, max_attempts=6)
    manager = SessionConnectionManager("k", backoff=slow)

    with patch(CONNECT, new=AsyncMock(side_effect=[first, second])) as connect:
        await manager.connect(SESSION)
        first.drop(1006, "network down")
        await asyncio.sleep(0)
        await manager.cleanup()
        await settle()
        assert manager.status is ConnectionStatus.DISCONNECTED

        await manager.connect(SESSION)

        assert manager.status is ConnectionStatus.CONNECTED
        assert connect.await_count == 2
        assert "BidiGenerateContentSetup" in json.loads(second.sent[0])
        await manager.cleanup()
