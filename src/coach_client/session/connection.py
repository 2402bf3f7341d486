"""Duplex streaming session with reconnection, heartbeat, rate limiting and queuing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Mapping, Optional, Union
from urllib.parse import quote

import websockets
from pydantic import BaseModel, ValidationError

from ..core.backoff import BackoffPolicy, RetryDecision, RetryState
from ..core.errors import OperationCancelled, SessionError
from ..core.events import EventDispatcher
from ..core.shutdown import CancellationToken
from .rate_limit import SlidingWindowRateLimiter
from .schemas import PING_FRAME, ServerFrame, SetupMessage, encode_frame, model_resource
from .types import (
    SESSION_EVENT_PAYLOADS,
    ConnectionStatus,
    GenerationConfig,
    QueuedMessage,
    SessionConfig,
    SessionEvent,
    SessionMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "generativelanguage.googleapis.com"
DEFAULT_API_VERSION = "v1beta"

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

DEFAULT_SESSION_BACKOFF = BackoffPolicy(
    base_delay_ms=1000,
    max_delay_ms=30000,
    max_attempts=6,  # first attempt + 5 reconnects
)

Payload = Union[BaseModel, Mapping[str, Any], str]


class SessionConnectionManager:
    """
    Owns the single WebSocket connection to the streaming service.

    Status automaton: DISCONNECTED -> CONNECTING -> CONNECTED, falling back
    to RECONNECTING on failures and ERROR once reconnects are exhausted.
    Outbound frames go through a FIFO queue that is flushed only while
    CONNECTED and under the sliding-window rate cap.
    """

    def __init__(
        self,
        api_key: str,
        *,
        host: str = DEFAULT_HOST,
        api_version: str = DEFAULT_API_VERSION,
        default_generation_config: Optional[GenerationConfig] = None,
        connect_timeout_s: float = 10.0,
        heartbeat_interval_s: float = 30.0,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        backoff: BackoffPolicy = DEFAULT_SESSION_BACKOFF,
        clock: Callable[[], float] = time.time,
    ):
        self._api_key = api_key
        self._host = host
        self._api_version = api_version
        self._default_generation_config = default_generation_config or GenerationConfig()
        self._connect_timeout_s = connect_timeout_s
        self._heartbeat_interval_s = heartbeat_interval_s
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._clock = clock

        self._ws: Optional[Any] = None
        self._status = ConnectionStatus.DISCONNECTED
        self._session_config: Optional[SessionConfig] = None
        self._queue: Deque[QueuedMessage] = deque()
        self._retry = RetryState(backoff)
        self._token = CancellationToken()
        self._flushing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self.events: EventDispatcher[SessionEvent] = EventDispatcher(SESSION_EVENT_PAYLOADS, name="session")

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def retry_count(self) -> int:
        return self._retry.retry_count

    @property
    def session_config(self) -> Optional[SessionConfig]:
        return self._session_config

    def get_status(self) -> ConnectionStatus:
        return self._status

    def build_url(self) -> str:
        if self._session_config is None:
            raise SessionError("No session configuration provided", recoverable=False)
        return (
            f"wss://{self._host}/{self._api_version}/"
            f"{model_resource(self._session_config.model)}:streamGenerateContent"
            f"?key={quote(self._api_key, safe='')}"
        )

    async def connect(self, session_config: SessionConfig) -> None:
        """
        Open the session and send the setup handshake.

        Returns once CONNECTED. Transient failures are retried with backoff;
        the call raises SessionError when the failure is fatal or reconnects
        are exhausted, and OperationCancelled if cleanup() interrupts it.
        """
        if self._status in (
            ConnectionStatus.CONNECTED,
            ConnectionStatus.CONNECTING,
            ConnectionStatus.RECONNECTING,
        ):
            return

        self._session_config = session_config.with_defaults(self._default_generation_config)
        self._retry.reset()
        self._token = CancellationToken()
        self._set_status(ConnectionStatus.CONNECTING)
        await self._run(self._token)

    async def send_message(self, payload: Payload) -> None:
        """
        Queue a frame and try to flush the queue.

        Raises:
            SessionError: non-recoverable, when the rate window is full.
        """
        if not self._rate_limiter.can_send():
            raise SessionError("Rate limit exceeded", recoverable=False, code=429)

        self._queue.append(QueuedMessage(payload=encode_frame(payload), enqueued_at=self._clock()))
        await self._flush()

    async def cleanup(self) -> None:
        """Close the connection with normal closure and reset all state."""
        self._token.cancel()
        self._stop_heartbeat()
        receive_task, self._receive_task = self._receive_task, None
        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None and not reconnect_task.done() and reconnect_task is not asyncio.current_task():
            reconnect_task.cancel()
        self._queue.clear()
        self._rate_limiter.reset()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="Cleanup requested")
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        if receive_task is not None and not receive_task.done() and receive_task is not asyncio.current_task():
            receive_task.cancel()

        self._retry.reset()
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("Session cleaned up")

    # --- connection lifecycle ---------------------------------------------

    async def _run(self, token: CancellationToken, error: Optional[SessionError] = None) -> None:
        """Single retry loop for both the initial connect and reconnects."""
        while True:
            if error is None:
                try:
                    await self._establish(token)
                    return
                except OperationCancelled:
                    raise
                except Exception as exc:
                    error = _as_session_error(exc)

            # cleanup() may have run while the attempt was in flight
            token.raise_if_cancelled()
            self.events.emit(SessionEvent.ERROR, error)
            step = self._retry.on_failure(error.recoverable)
            if step.decision is RetryDecision.RETRY:
                logger.warning(
                    f"Connection failed ({error.message}), "
                    f"reconnect {self._retry.retry_count} in {step.delay_ms:.0f} ms"
                )
                self._set_status(ConnectionStatus.RECONNECTING)
                await token.sleep(step.delay_ms / 1000.0)
                error = None
                continue

            if step.decision is RetryDecision.GIVE_UP:
                logger.error(f"Giving up after {self._retry.retry_count} reconnects: {error.message}")
            else:
                logger.error(f"Fatal connection error: {error.message}")
            self._set_status(ConnectionStatus.ERROR)
            raise error

    async def _establish(self, token: CancellationToken) -> None:
        url = self.build_url()
        try:
            ws = await token.guard(
                websockets.connect(url, ping_interval=None, open_timeout=None),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise SessionError("Connection timeout", recoverable=True) from exc

        if token.is_set():
            await _close_quietly(ws)
            raise OperationCancelled("Operation cancelled by cleanup")

        try:
            await ws.send(encode_frame(SetupMessage.from_session(self._session_config)))
        except Exception as exc:
            await _close_quietly(ws)
            raise SessionError(f"Failed to send session setup: {exc}", recoverable=True) from exc

        if token.is_set():
            # cleanup() ran during the handshake
            await _close_quietly(ws)
            raise OperationCancelled("Operation cancelled by cleanup")

        self._ws = ws
        self._retry.reset()
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(f"Connected to {self._host}")

        self._receive_task = asyncio.ensure_future(self._receive_loop(ws))
        self._start_heartbeat(token)
        await self._flush()

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except websockets.ConnectionClosed:
            logger.info("WebSocket connection closed")
        except Exception as e:
            logger.error(f"WebSocket receive error: {e}")

        if ws is not self._ws:
            # Closed by cleanup() or superseded by a newer connection
            return
        self._handle_close(_close_code(ws), getattr(ws, "close_reason", None) or "")

    def _handle_close(self, code: int, reason: str) -> None:
        was_connected = self._status is ConnectionStatus.CONNECTED
        self._ws = None
        self._stop_heartbeat()

        if was_connected and code != NORMAL_CLOSURE:
            error = SessionError(f"WebSocket closed unexpectedly ({code}): {reason}", recoverable=True)
            self._reconnect_task = asyncio.ensure_future(self._reconnect(error, self._token))
            return

        logger.info(f"Session closed by remote ({code})")
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _reconnect(self, error: SessionError, token: CancellationToken) -> None:
        if token.is_set():
            # cleanup() ran before this task got to start
            return
        try:
            await self._run(token, error)
        except OperationCancelled:
            logger.info("Reconnection cancelled")
        except SessionError as exc:
            logger.error(f"Reconnection failed: {exc.message}")

    # --- inbound ------------------------------------------------------------

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            frame = ServerFrame.model_validate_json(raw)
        except (UnicodeDecodeError, ValidationError) as e:
            logger.debug(f"Unparsable frame: {e}")
            self.events.emit(
                SessionEvent.ERROR,
                SessionError("Failed to parse WebSocket message", recoverable=False),
            )
            return

        if frame.server_content is not None:
            content = frame.server_content
            if content.model_turn is not None:
                self.events.emit(
                    SessionEvent.MESSAGE,
                    SessionMessage(text=content.text(), interrupted=content.interrupted, timestamp=self._clock()),
                )
            if content.interrupted:
                self.events.emit(SessionEvent.INTERRUPTED, None)
        elif frame.response is not None and frame.response.code is not None:
            error = SessionError.from_remote(frame.response.message, frame.response.code)
            logger.warning(f"Remote error {error.code}: {error.message}")
            self.events.emit(SessionEvent.ERROR, error)
        else:
            logger.debug("Ignoring frame without content")

    # --- outbound -----------------------------------------------------------

    async def _flush(self) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            while (
                self._status is ConnectionStatus.CONNECTED
                and self._ws is not None
                and self._queue
                and self._rate_limiter.can_send()
            ):
                message = self._queue.popleft()
                try:
                    await self._ws.send(message.payload)
                except Exception as e:
                    self._queue.appendleft(message)
                    logger.warning(f"Failed to send message: {e}")
                    self.events.emit(
                        SessionEvent.ERROR,
                        SessionError(f"Failed to send message: {e}", recoverable=True),
                    )
                    return
                self._rate_limiter.record()
        finally:
            self._flushing = False

    def _start_heartbeat(self, token: CancellationToken) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop(token))

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, token: CancellationToken) -> None:
        try:
            while True:
                await token.sleep(self._heartbeat_interval_s)
                ws = self._ws
                if self._status is not ConnectionStatus.CONNECTED or ws is None:
                    return
                try:
                    await ws.send(PING_FRAME)
                except Exception as e:
                    logger.warning(f"Heartbeat failed: {e}")
                    self.events.emit(
                        SessionEvent.ERROR,
                        SessionError(f"Failed to send heartbeat: {e}", recoverable=True),
                    )
        except OperationCancelled:
            return

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self.events.emit(SessionEvent.STATUS_CHANGE, status)


def _as_session_error(exc: BaseException) -> SessionError:
    if isinstance(exc, SessionError):
        return exc
    if isinstance(exc, websockets.exceptions.InvalidStatus):
        # Handshake rejected over HTTP; 4xx (bad key, unknown model) will not heal
        status = exc.response.status_code
        return SessionError.from_remote(f"Connection rejected: HTTP {status}", status)
    return SessionError(f"Connection failed: {exc}", recoverable=True)


def _close_code(ws: Any) -> int:
    code = getattr(ws, "close_code", None)
    return code if isinstance(code, int) else ABNORMAL_CLOSURE


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception as e:
        logger.debug(f"Error closing WebSocket: {e}")
