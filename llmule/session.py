"""WebSocket session with the LLMule network.

This is the core of the client. It:
1. Obtains an API key and discovers the models served by local backends
2. Maintains a persistent, authenticated WebSocket connection
3. Registers the discovered models
4. Answers liveness pings and watches for a half-open connection
5. Dispatches completion requests to local backends and returns the results
6. Reconnects after failures, up to a bounded number of consecutive attempts

The connection lifecycle is an explicit state machine. A reader task turns
the socket into a queue of typed events, and a single loop consumes them,
so there is exactly one place where state changes happen.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets
from rich.console import Console

from .config import SessionSettings
from .dispatcher import RequestDispatcher
from .errors import (
    AuthenticationFailed,
    AuthenticationMissing,
    ConnectionFailure,
    ConnectTimeout,
    FatalSessionError,
    InvalidRequest,
    InvalidTransition,
    ProtocolError,
    ReconnectBudgetExhausted,
    TransportError,
)
from .heartbeat import HeartbeatMonitor
from .messages import (
    CompletionOptions,
    Credential,
    ErrorDetail,
    MessageType,
    ModelDescriptor,
    WorkRequest,
    WorkResponse,
    decode,
    encode,
    register_message,
    simple_message,
)

logger = logging.getLogger(__name__)
console = Console()

# Close code the server uses to reject our API key
AUTH_FAILURE_CLOSE_CODE = 4001


class ConnectionState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    READY = "ready"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


_S = ConnectionState
_TRANSITIONS: dict[ConnectionState, frozenset] = {
    _S.IDLE: frozenset({_S.AUTHENTICATING, _S.TERMINATED}),
    _S.AUTHENTICATING: frozenset({_S.DISCOVERING, _S.TERMINATED}),
    _S.DISCOVERING: frozenset({_S.DISCOVERING, _S.CONNECTING, _S.TERMINATED}),
    _S.CONNECTING: frozenset({_S.REGISTERING, _S.RECONNECTING, _S.TERMINATED}),
    _S.REGISTERING: frozenset({_S.READY, _S.DISCONNECTED, _S.TERMINATED}),
    _S.READY: frozenset({_S.DISCONNECTED, _S.TERMINATED}),
    _S.DISCONNECTED: frozenset({_S.RECONNECTING, _S.TERMINATED}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.TERMINATED}),
    _S.TERMINATED: frozenset(),
}


class EventKind(Enum):
    MESSAGE = "message"
    CLOSED = "closed"
    ERRORED = "errored"
    STALE = "stale"
    SHUTDOWN = "shutdown"


@dataclass
class SessionEvent:
    """Something that happened on the current connection."""
    kind: EventKind
    data: Any = None
    code: Optional[int] = None
    reason: str = ""


class ModelSource(Protocol):
    async def discover_models(self) -> list[ModelDescriptor]:
        ...


class CredentialSource(Protocol):
    async def get_credential(self) -> Credential:
        ...


Connector = Callable[[str, dict], Awaitable[Any]]


async def websocket_connector(url: str, headers: dict) -> Any:
    """Open a WebSocket; the session applies its own connect timeout."""
    return await websockets.connect(
        url,
        additional_headers=headers,
        open_timeout=None,
        ping_interval=30,
        ping_timeout=10,
    )


class SessionManager:
    """
    Owns the connection to the LLMule network.

    Collaborators are injected: ``registry`` discovers models and runs
    completions, ``credentials`` supplies the API key, and ``connector``
    opens the socket (a fake can be passed in tests).
    """

    def __init__(
        self,
        registry,
        credentials: CredentialSource,
        settings: Optional[SessionSettings] = None,
        connector: Optional[Connector] = None,
        log_callback: Callable[[str, str], None] | None = None,
    ):
        self.registry = registry
        self.credentials = credentials
        self.settings = settings or SessionSettings()
        self.connector = connector or websocket_connector
        self.log_callback = log_callback

        self.state = ConnectionState.IDLE
        self.credential: Optional[Credential] = None
        self.registered_models: list[ModelDescriptor] = []
        self.registered = False
        self.reconnect_attempt = 0
        self.should_reconnect = True
        self.fatal_error: Optional[FatalSessionError] = None

        self._stop = asyncio.Event()
        self._ws: Any = None
        self._events: Optional[asyncio.Queue] = None
        self._send_lock: Optional[asyncio.Lock] = None
        self._dispatcher: Optional[RequestDispatcher] = None
        self._monitor: Optional[HeartbeatMonitor] = None
        self._reader: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

        # Observability hooks
        self.on_state_change: Callable[[ConnectionState, ConnectionState], None] | None = None
        self.on_registered: Callable[[], None] | None = None
        # Signature: (response: WorkResponse, elapsed_ms: float) -> None
        self.on_request_complete: Callable[[WorkResponse, float], None] | None = None

    # =========================================================================
    # Public surface
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def active_request_ids(self) -> frozenset:
        if self._dispatcher is None:
            return frozenset()
        return self._dispatcher.active_request_ids

    @property
    def last_liveness_ack(self) -> Optional[float]:
        return self._monitor.last_ack if self._monitor else None

    async def run(self) -> None:
        """Drive the session until it terminates.

        Returns normally after ``request_shutdown()``.

        Raises:
            FatalSessionError: on missing/rejected credentials or when the
                reconnection budget is exhausted.
        """
        if self.state is not ConnectionState.IDLE:
            raise InvalidTransition(f"Session already started ({self.state.value})")
        try:
            await self._run()
        finally:
            if self.state is not ConnectionState.TERMINATED:
                self._transition(ConnectionState.TERMINATED)
            self._log("Session terminated", "warn")
        if self.fatal_error is not None:
            raise self.fatal_error

    def request_shutdown(self) -> None:
        """Stop from any state without reconnecting. Safe to call repeatedly."""
        if self._stop.is_set():
            return
        self._log("Gracefully shutting down...", "warn")
        self.should_reconnect = False
        self._stop.set()
        if self._events is not None:
            self._events.put_nowait(SessionEvent(EventKind.SHUTDOWN))

    # =========================================================================
    # State machine
    # =========================================================================

    def _transition(self, new: ConnectionState) -> None:
        old = self.state
        if new not in _TRANSITIONS[old]:
            raise InvalidTransition(f"Illegal transition {old.value} -> {new.value}")
        self.state = new
        logger.debug("Session state: %s -> %s", old.value, new.value)
        if self.on_state_change:
            self.on_state_change(old, new)

    def _fail(self, error: FatalSessionError) -> None:
        self.fatal_error = error
        self.should_reconnect = False
        self._log(str(error), "error")

    async def _run(self) -> None:
        self._transition(ConnectionState.AUTHENTICATING)
        try:
            credential = await self._until_stopped(self.credentials.get_credential())
        except AuthenticationMissing as e:
            self._fail(e)
            return
        if credential is None:
            return
        self.credential = credential

        self._transition(ConnectionState.DISCOVERING)
        models = await self._discover_until_found()
        if not models:
            return
        self.registered_models = models

        while self.should_reconnect:
            self._transition(ConnectionState.CONNECTING)
            try:
                ws = await self._open_connection()
            except AuthenticationFailed as e:
                self._fail(e)
                return
            except ConnectionFailure as e:
                if not self._count_failure(e):
                    return
                self._transition(ConnectionState.RECONNECTING)
                if not await self._prepare_reconnect():
                    return
                continue

            if ws is None:
                return

            ready = await self._run_connection(ws)
            if not self.should_reconnect:
                return

            self._transition(ConnectionState.DISCONNECTED)
            if ready:
                self._log(f"Reconnecting in {self.settings.reconnect_delay}s...", "warn")
            elif not self._count_failure(TransportError("Registration could not be sent")):
                return
            self._transition(ConnectionState.RECONNECTING)
            if not await self._prepare_reconnect():
                return

    def _count_failure(self, error: Exception) -> bool:
        """Record a failed connect. Returns False once the budget is spent."""
        self.reconnect_attempt += 1
        limit = self.settings.max_reconnect_attempts
        self._log(f"Connection failed ({self.reconnect_attempt}/{limit}): {error}", "error")
        if self.reconnect_attempt >= limit:
            self._fail(ReconnectBudgetExhausted(self.reconnect_attempt, str(error)))
            return False
        self._log(f"Reconnecting in {self.settings.reconnect_delay}s...", "warn")
        return True

    async def _prepare_reconnect(self) -> bool:
        """Wait out the reconnect delay and refresh models. False if stopped."""
        if await self._wait_stopped(self.settings.reconnect_delay):
            return False
        models = await self._until_stopped(self._discover())
        if self._stop.is_set():
            return False
        if models:
            self.registered_models = models
        else:
            self._log("No models detected; keeping the previous model list", "warn")
        return True

    # =========================================================================
    # Discovery and connection
    # =========================================================================

    async def _discover(self) -> list[ModelDescriptor]:
        try:
            return await self.registry.discover_models()
        except Exception as e:
            logger.exception("Model discovery failed")
            self._log(f"Model discovery failed: {e}", "error")
            return []

    async def _discover_until_found(self) -> list[ModelDescriptor]:
        while True:
            models = await self._until_stopped(self._discover())
            if self._stop.is_set():
                return []
            if models:
                self._log(f"Detected models: {', '.join(m.name for m in models)}", "success")
                return models

            delay = self.settings.discovery_retry_delay
            self._log(f"No local LLM models detected. Retrying in {delay}s...", "warn")
            if await self._wait_stopped(delay):
                return []
            self._transition(ConnectionState.DISCOVERING)

    async def _open_connection(self) -> Any:
        """Open the socket. Returns None if shutdown was requested meanwhile."""
        url = self.settings.server_url
        timeout = self.settings.connect_timeout
        headers = {"Authorization": f"Bearer {self.credential.token}"}
        self._log(f"Connecting to {url}...", "warn")

        try:
            return await self._until_stopped(
                asyncio.wait_for(self.connector(url, headers), timeout=timeout)
            )
        except asyncio.TimeoutError:
            raise ConnectTimeout(f"Connection not open after {timeout}s")
        except websockets.exceptions.InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationFailed(f"HTTP {status}: Invalid or expired API key")
            raise TransportError(f"Server rejected connection: HTTP {status}")
        except websockets.exceptions.InvalidURI as e:
            raise TransportError(f"Invalid server URL: {e}")
        except websockets.exceptions.InvalidHandshake as e:
            raise TransportError(f"Handshake failed: {e}")
        except ConnectionRefusedError:
            raise TransportError("Connection refused - server unreachable")
        except OSError as e:
            raise TransportError(f"Network error: {e}")
        except (ConnectionFailure, FatalSessionError):
            raise
        except Exception as e:
            raise TransportError(f"{type(e).__name__}: {e}")

    async def _run_connection(self, ws: Any) -> bool:
        """Register on a fresh connection and serve it until it ends.

        Returns False if the connection never reached READY because the
        register frame could not be written.
        """
        if self._stop.is_set():
            await self._close_socket(ws)
            return False

        events: asyncio.Queue = asyncio.Queue()
        self._ws = ws
        self._events = events
        self._send_lock = asyncio.Lock()
        self.registered = False
        self._log("Connected to LLMule network", "success")

        self._transition(ConnectionState.REGISTERING)
        self._dispatcher = RequestDispatcher(
            self.registry,
            self.registered_models,
            max_concurrency=self.settings.max_concurrency,
            defaults=CompletionOptions(
                temperature=self.settings.default_temperature,
                max_tokens=self.settings.default_max_tokens,
            ),
        )
        self._reader = asyncio.create_task(self._pump(ws, events))

        try:
            sent = await self._send(register_message(
                self.credential.token,
                self.registered_models,
                user_id=self.settings.user_id,
                provider=self.settings.provider,
            ))
            if not sent:
                self._log("Could not send registration", "error")
                return False
            self._log(f"Registration sent for {len(self.registered_models)} models", "info")

            self._monitor = HeartbeatMonitor(
                on_stale=lambda: events.put_nowait(SessionEvent(EventKind.STALE)),
                send_ping=self._send_ping,
                interval=self.settings.heartbeat_interval,
                stale_after=self.settings.stale_after,
            )
            self._monitor.start()
            self.reconnect_attempt = 0
            self._transition(ConnectionState.READY)

            await self._event_loop(events)
            return True
        finally:
            await self._teardown_connection(graceful=self._stop.is_set() and self.fatal_error is None)

    async def _pump(self, ws: Any, events: asyncio.Queue) -> None:
        """Reader task: turn socket activity into session events."""
        try:
            async for raw in ws:
                events.put_nowait(SessionEvent(EventKind.MESSAGE, raw))
        except websockets.ConnectionClosed:
            pass
        except Exception as e:
            events.put_nowait(SessionEvent(EventKind.ERRORED, e))
            return
        events.put_nowait(SessionEvent(
            EventKind.CLOSED,
            code=getattr(ws, "close_code", None),
            reason=getattr(ws, "close_reason", None) or "",
        ))

    async def _event_loop(self, events: asyncio.Queue) -> SessionEvent:
        while True:
            event = await events.get()

            if event.kind is EventKind.MESSAGE:
                await self._on_frame(event.data)
                if self.fatal_error is not None:
                    return event
                continue

            if event.kind is EventKind.CLOSED:
                if event.code == AUTH_FAILURE_CLOSE_CODE:
                    self._fail(AuthenticationFailed(
                        f"Authentication failed ({event.reason or 'invalid API key'}). "
                        "Please check your API key"
                    ))
                else:
                    self._log(f"Disconnected from network: {event.reason} ({event.code})", "warn")
            elif event.kind is EventKind.ERRORED:
                self._log(f"Connection error: {event.data}", "error")
            elif event.kind is EventKind.STALE:
                self._log("Connection stale (no heartbeat)", "warn")
            return event

    async def _teardown_connection(self, graceful: bool) -> None:
        """Tear down the current connection completely."""
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            await monitor.stop()

        if graceful:
            # Let in-flight responses flush; backend calls are not cancelled
            pending = set(self._tasks)
            if pending:
                self._log(f"Waiting for {len(pending)} in-flight requests...", "info")
                drain = asyncio.create_task(self._answer_pings(self._events))
                try:
                    await asyncio.wait(pending, timeout=self.settings.shutdown_grace)
                finally:
                    drain.cancel()
                    await asyncio.gather(drain, return_exceptions=True)
            await self._send(
                simple_message(MessageType.DISCONNECT, message="Client shutting down gracefully"),
                timeout=1.0,
            )
        else:
            # Responses for a dropped connection are discarded
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        ws, self._ws = self._ws, None
        self._events = None
        self.registered = False

        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        if ws is not None:
            await self._close_socket(ws)
        self._dispatcher = None

    async def _answer_pings(self, events: Optional[asyncio.Queue]) -> None:
        """Keep the connection alive while in-flight requests flush.

        New work is not accepted once shutdown has started.
        """
        if events is None:
            return
        while True:
            event = await events.get()
            if event.kind is not EventKind.MESSAGE:
                continue
            try:
                data = decode(event.data)
            except ProtocolError:
                continue
            if data["type"] == MessageType.PING.value:
                await self._send(simple_message(MessageType.PONG))
            else:
                logger.debug("Ignoring %s during shutdown", data["type"])

    async def _close_socket(self, ws: Any) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
            self._log("WebSocket connection closed", "info")
        except Exception as e:
            logger.debug("Error closing WebSocket: %s", e)

    # =========================================================================
    # Inbound messages
    # =========================================================================

    async def _on_frame(self, raw: Any) -> None:
        if self._monitor is not None:
            self._monitor.record_ack()

        try:
            data = decode(raw)
        except ProtocolError as e:
            self._log(f"Ignoring frame: {e}", "warn")
            return

        msg_type = data["type"]
        logger.debug("Received %s", msg_type)

        if msg_type == MessageType.PING.value:
            await self._send(simple_message(MessageType.PONG))

        elif msg_type == MessageType.PONG.value:
            logger.debug("Heartbeat acknowledged")

        elif msg_type == MessageType.REGISTERED.value:
            self.registered = True
            self._log("Registered with network", "success")
            if self.on_registered:
                self.on_registered()

        elif msg_type == MessageType.COMPLETION_REQUEST.value:
            await self._accept_request(data)

        elif msg_type == MessageType.ERROR.value:
            detail = data.get("error") or data.get("message") or "unknown"
            self._log(f"Server error: {detail}", "error")

        elif msg_type == MessageType.AUTH_ERROR.value:
            detail = data.get("error") or data.get("message") or "API key rejected"
            self._fail(AuthenticationFailed(f"Authentication error: {detail}"))

        else:
            logger.debug("Unknown message type: %s", msg_type)

    async def _accept_request(self, data: dict) -> None:
        try:
            request = WorkRequest.from_wire(data)
        except InvalidRequest as e:
            request_id = data["requestId"]
            self._log(f"Invalid request {request_id}: {e}", "error")
            await self._send(WorkResponse(request_id, ErrorDetail(e.code, str(e))).to_wire())
            return
        except ProtocolError as e:
            self._log(f"Dropping malformed completion_request: {e}", "error")
            return

        self._log(f"Completion request {request.request_id} for {request.model}", "info")
        task = asyncio.create_task(self._serve(request, self._dispatcher, self._ws))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, request: WorkRequest, dispatcher: RequestDispatcher, ws: Any) -> None:
        """Run one request and send its response on the connection it came from."""
        start = time.monotonic()
        response = await dispatcher.handle(request)
        elapsed_ms = (time.monotonic() - start) * 1000

        if self._ws is not ws:
            logger.info("Discarding response for %s: connection closed", request.request_id)
            return

        if await self._send(response.to_wire()):
            level = "success" if response.ok else "warn"
            self._log(f"Response sent for {request.request_id} ({elapsed_ms:.0f}ms)", level)
        if self.on_request_complete:
            self.on_request_complete(response, elapsed_ms)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def _send_ping(self) -> None:
        await self._send(simple_message(MessageType.PING))

    async def _send(self, data: dict, timeout: Optional[float] = None) -> bool:
        """Send a frame on the current connection.

        Writes are serialized so frames are never interleaved. A send that
        fails or does not finish within ``timeout`` marks the connection as
        broken. Returns True if the frame was written.
        """
        # Capture references to avoid racing a teardown
        ws = self._ws
        events = self._events
        lock = self._send_lock
        if ws is None or lock is None:
            logger.warning("Cannot send - not connected")
            return False

        timeout = timeout or self.settings.send_timeout
        try:
            async with lock:
                await asyncio.wait_for(ws.send(encode(data)), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("WebSocket send timed out after %ss - connection may be blocked", timeout)
            error: Exception = TransportError(f"Send timed out after {timeout}s")
        except websockets.ConnectionClosed as e:
            logger.warning("Send on closed connection: %s", e)
            error = TransportError("Connection closed")
        except Exception as e:
            logger.error("Send error: %s", e)
            error = TransportError(str(e))

        if events is not None and self._events is events:
            events.put_nowait(SessionEvent(EventKind.ERRORED, error))
        return False

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _until_stopped(self, aw: Awaitable) -> Any:
        """Await ``aw`` unless shutdown is requested first (then None)."""
        task = asyncio.ensure_future(aw)
        stopper = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Abandoned operation failed during shutdown: %s", e)
        return None

    async def _wait_stopped(self, delay: float) -> bool:
        """Sleep for ``delay``; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}]{message}[/{color}]")
