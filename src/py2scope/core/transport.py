"""
Transport for the microscope acquisition server.

This module owns the single TCP connection to the server and turns the
line-oriented, half-duplex text protocol into a synchronous
``send(message) -> reply`` call that is safe to use from many threads.

The protocol carries no correlation identifiers: the reply to a request is
simply the next line read after the request was written. Every round trip
therefore holds one exclusive channel lock from the first byte written to
the last byte read. Application calls, the background health probe and
acquisition status polls all go through that lock.

Failure handling:
- I/O errors and read timeouts close the socket (a late reply would
  otherwise be paired with the next request).
- With auto-reconnect enabled, the transport reconnects up to
  ``max_reconnect_attempts`` times, ``reconnect_delay`` seconds apart, then
  retries the failed request once.
- Errors reported by the server are plain replies here; they are never
  retried.
- The shutdown command is written once and never retried.
"""

import select
import socket
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from py2scope.core.command_codes import HEALTH_PROBE, NO_REPLY_COMMANDS, SystemCommands
from py2scope.core.errors import (
    ConfigurationError,
    ConnectionError,
    ErrorCodes,
    ScopeError,
    TimeoutError,
    ValidationError,
)
from py2scope.core.message_encoder import MessageEncoder
from py2scope.core.response_parser import check_for_error
from py2scope.models.connection import (
    ConnectionConfig,
    ConnectionState,
    ConnectionStatus,
    HealthProbeRecord,
)

LINE_TERMINATOR = b"\n"
ENCODING = "utf-8"

# Upper bound for a single reply line
MAX_LINE_BYTES = 1 << 20


class _ChannelClosed(OSError):
    """The server closed the connection."""


StateObserver = Callable[[ConnectionStatus], None]


class Transport:
    """
    Thread-safe request/reply channel over one TCP connection.

    Example:
        >>> config = ConnectionConfig("127.0.0.1", 5000)
        >>> transport = Transport(config)
        >>> transport.connect()
        >>> transport.send("getxy")
        '100.5 200.7'
        >>> transport.close()
    """

    def __init__(self, config: ConnectionConfig):
        """
        Initialize the transport. No connection is opened until connect()
        or the first send().

        Args:
            config: Connection settings

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        valid, errors = config.validate()
        if not valid:
            raise ConfigurationError(
                f"Invalid connection configuration: {'; '.join(errors)}",
                error_code=ErrorCodes.CONFIG_INVALID
            )

        self.config = config
        self.logger = logging.getLogger(__name__)
        self._encoder = MessageEncoder()

        # Held for every round trip and every socket open/close
        self._lock = threading.Lock()
        self._socket: Optional[socket.socket] = None
        self._buffer = bytearray()

        self._state = ConnectionState.DISCONNECTED
        self._connected_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_activity = time.monotonic()
        self._observers: List[StateObserver] = []

        self._health = HealthProbeRecord()
        self._health_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ========== Connection lifecycle ==========

    def connect(self) -> None:
        """
        Open the connection. No-op if already connected.

        When ``config_path`` is set, the configuration file is announced to
        the server before the connection is considered usable.

        Raises:
            ConnectionError: If the server cannot be reached or rejects the
                configuration announcement
        """
        with self._lock:
            if self._socket is not None:
                self.logger.debug("connect() called while connected; nothing to do")
                return

            # A previous close() leaves the event set
            self._stop_event.clear()
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._open_socket_unsafe()
            except (OSError, ScopeError) as e:
                self._set_state(ConnectionState.FAILED, error=str(e))
                raise ConnectionError(
                    f"Failed to connect to {self.config.host}:{self.config.port}: {e}",
                    error_code=ErrorCodes.CONNECTION_REFUSED,
                    cause=e,
                    suggestions=[
                        "Check that the microscope server is running",
                        "Verify the host and port settings",
                    ]
                )
            self._set_state(ConnectionState.CONNECTED)

        self._start_health_check()

    def disconnect(self) -> None:
        """
        Close the connection. Always safe to call; no-op if not connected.

        The server is told the client is leaving before the socket closes.
        """
        with self._lock:
            if self._socket is None:
                if self._state is not ConnectionState.DISCONNECTED:
                    self._set_state(ConnectionState.DISCONNECTED)
                return
            self._say_goodbye_unsafe()
            self._close_socket_unsafe()
            self._set_state(ConnectionState.DISCONNECTED)

    def close(self) -> None:
        """Stop the health check and disconnect."""
        self._stop_event.set()
        thread = self._health_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.read_timeout + 1.0)
        self._health_thread = None
        self.disconnect()

    def __enter__(self) -> "Transport":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ========== Round trips ==========

    def send(self, message: str, read_timeout: Optional[float] = None) -> str:
        """
        Send one request line and return the reply line.

        Args:
            message: Request without line terminator
            read_timeout: Seconds to wait for the reply; defaults to the
                configured read timeout. Slow commands pass a longer value.

        Returns:
            The reply line without terminator. Errors reported by the server
            are returned as-is; parsing them is up to the caller.

        Raises:
            ValidationError: If the message contains a line break or is a
                command the server never answers
            ConnectionError: Not connected with auto-reconnect disabled, or
                reconnection exhausted
            TimeoutError: No reply in time and auto-reconnect disabled, or
                the retried request timed out again
        """
        self._check_message(message)
        timeout = self.config.read_timeout if read_timeout is None else read_timeout
        with self._lock:
            return self._send_with_recovery_unsafe(message, timeout, expect_reply=True)

    def send_command(self, verb: str, fields=(), read_timeout: Optional[float] = None) -> str:
        """Encode ``verb`` with its flag/value pairs and send it."""
        return self.send(self._encoder.encode_command(verb, fields), read_timeout)

    def shutdown_server(self) -> None:
        """
        Ask the server process to shut down.

        The command is written once and never retried. On success the
        connection moves to DISCONNECTED.

        Raises:
            ConnectionError: If the command could not be written
        """
        with self._lock:
            if self._socket is None:
                self._ensure_connected_unsafe()
            try:
                self._round_trip_unsafe(SystemCommands.SHUTDOWN, self.config.read_timeout,
                                        expect_reply=False)
            except OSError as e:
                self._close_socket_unsafe()
                self._set_state(ConnectionState.FAILED, error=str(e))
                raise ConnectionError(
                    f"Failed to send shutdown command: {e}",
                    error_code=ErrorCodes.CONNECTION_LOST,
                    cause=e
                )
            self.logger.info("Shutdown command sent to server")
            self._close_socket_unsafe()
            self._set_state(ConnectionState.DISCONNECTED)

    def _send_with_recovery_unsafe(self, message: str, timeout: float, expect_reply: bool) -> str:
        if self._socket is None:
            self._ensure_connected_unsafe()

        try:
            return self._round_trip_unsafe(message, timeout, expect_reply)
        except OSError as e:
            failure = self._io_failure_unsafe(message, timeout, e)
            if not self.config.auto_reconnect:
                self._set_state(ConnectionState.FAILED, error=str(e))
                raise failure

        # Reconnect, then retry the request once
        self._reconnect_unsafe(reason=f"'{_verb(message)}' failed")
        try:
            return self._round_trip_unsafe(message, timeout, expect_reply)
        except OSError as e:
            failure = self._io_failure_unsafe(message, timeout, e)
            self._set_state(ConnectionState.FAILED, error=str(e))
            raise failure

    def _round_trip_unsafe(self, message: str, timeout: float, expect_reply: bool) -> str:
        """
        Write one request and read one reply. Caller holds ``_lock``.

        Raises:
            OSError: On any socket failure, including timeouts
        """
        sock = self._socket
        if sock is None:
            raise _ChannelClosed("Socket is not open")

        self._flush_receive_buffer(sock)

        data = message.encode(ENCODING) + LINE_TERMINATOR
        sock.settimeout(timeout)
        sock.sendall(data)
        self._last_activity = time.monotonic()
        self.logger.debug(f"Sent: {message}")

        if not expect_reply:
            return ""

        reply = self._read_line_unsafe(sock, timeout)
        self._last_activity = time.monotonic()
        self.logger.debug(f"Received: {reply}")
        return reply

    def _read_line_unsafe(self, sock: socket.socket, timeout: float) -> str:
        deadline = time.monotonic() + timeout
        while True:
            index = self._buffer.find(LINE_TERMINATOR)
            if index >= 0:
                line = bytes(self._buffer[:index])
                del self._buffer[:index + 1]
                return line.decode(ENCODING, errors="replace").rstrip("\r")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout(f"No reply within {timeout:.1f}s")
            sock.settimeout(remaining)
            chunk = sock.recv(4096)
            if not chunk:
                raise _ChannelClosed("Server closed the connection")
            self._buffer.extend(chunk)
            if len(self._buffer) > MAX_LINE_BYTES:
                raise _ChannelClosed(f"Reply exceeded {MAX_LINE_BYTES} bytes without terminator")

    def _flush_receive_buffer(self, sock: socket.socket) -> int:
        """
        Discard bytes that arrived while no request was outstanding.

        Such bytes cannot belong to the next request and would shift every
        later reply by one.

        Raises:
            _ChannelClosed: If the server has closed the connection
        """
        flushed = len(self._buffer)
        self._buffer.clear()

        while True:
            readable, _, _ = select.select([sock], [], [], 0)
            if not readable:
                break
            data = sock.recv(4096)
            if not data:
                raise _ChannelClosed("Server closed the connection")
            flushed += len(data)

        if flushed > 0:
            self.logger.warning(f"Discarded {flushed} stale bytes from receive buffer")
        return flushed

    def _io_failure_unsafe(self, message: str, timeout: float, error: OSError) -> ScopeError:
        """Close the socket and build the error describing an I/O failure."""
        verb = _verb(message)
        self._close_socket_unsafe()
        self._last_error = str(error)
        if isinstance(error, socket.timeout):
            self.logger.warning(f"Timed out after {timeout:.1f}s waiting for reply to '{verb}'")
            return TimeoutError(
                f"No reply to '{verb}' within {timeout:.1f}s",
                timeout_seconds=timeout,
                error_code=ErrorCodes.RESPONSE_TIMEOUT,
                cause=error
            )
        self.logger.warning(f"I/O error during '{verb}': {error}")
        return ConnectionError(
            f"Connection lost during '{verb}': {error}",
            error_code=ErrorCodes.CONNECTION_LOST,
            cause=error
        )

    # ========== Reconnection ==========

    def _ensure_connected_unsafe(self) -> None:
        if not self.config.auto_reconnect:
            raise ConnectionError(
                "Not connected to microscope server",
                attempts=0,
                error_code=ErrorCodes.NOT_CONNECTED,
                suggestions=["Call connect() first or enable auto_reconnect"]
            )
        self._stop_event.clear()
        self._reconnect_unsafe(reason="not connected")
        self._start_health_check()

    def _reconnect_unsafe(self, reason: str) -> None:
        """
        Reopen the connection. Caller holds ``_lock``.

        Raises:
            ConnectionError: If every attempt failed
        """
        self._close_socket_unsafe()
        self._set_state(ConnectionState.RECONNECTING)

        attempts = self.config.max_reconnect_attempts
        last_error: Optional[Exception] = None
        self.logger.info(f"Reconnecting to {self.config.host}:{self.config.port} ({reason})")

        for attempt in range(1, attempts + 1):
            try:
                self._open_socket_unsafe()
            except (OSError, ScopeError) as e:
                last_error = e
                self.logger.warning(f"Reconnect attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    self._stop_event.wait(self.config.reconnect_delay)
                continue
            self.logger.info(f"Reconnected on attempt {attempt}/{attempts}")
            self._set_state(ConnectionState.CONNECTED)
            return

        self.logger.error(f"Reconnection failed after {attempts} attempts")
        self._set_state(ConnectionState.FAILED, error=str(last_error) if last_error else None)
        raise ConnectionError(
            f"Could not reconnect to {self.config.host}:{self.config.port} "
            f"after {attempts} attempts",
            attempts=attempts,
            error_code=ErrorCodes.RECONNECT_EXHAUSTED,
            cause=last_error,
            suggestions=["Check that the microscope server is running"]
        )

    def _open_socket_unsafe(self) -> None:
        """Open the socket and run the connect-time handshake."""
        host, port = self.config.address
        self.logger.info(f"Connecting to {host}:{port}")
        sock = socket.create_connection((host, port), timeout=self.config.connect_timeout)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            self._socket = sock
            self._buffer.clear()

            if self.config.config_path:
                message = self._encoder.encode_command(
                    SystemCommands.CONFIG, [("yaml", self.config.config_path)]
                )
                reply = self._round_trip_unsafe(message, self.config.read_timeout, expect_reply=True)
                check_for_error(reply, SystemCommands.CONFIG)
                self.logger.info(f"Server accepted configuration {self.config.config_path}")
        except (OSError, ScopeError):
            self._close_socket_unsafe()
            raise

        self._connected_at = datetime.now()
        self._last_activity = time.monotonic()
        self.logger.info(f"Connected to {host}:{port}")

    def _say_goodbye_unsafe(self) -> None:
        try:
            self._round_trip_unsafe(SystemCommands.QUIT, self.config.connect_timeout,
                                    expect_reply=False)
        except OSError as e:
            self.logger.debug(f"Could not send quit command: {e}")

    def _close_socket_unsafe(self) -> None:
        sock = self._socket
        self._socket = None
        self._buffer.clear()
        self._connected_at = None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        try:
            sock.close()
            self.logger.debug("Closed socket")
        except OSError as e:
            self.logger.error(f"Error closing socket: {e}")

    # ========== Health check ==========

    def _start_health_check(self) -> None:
        if self.config.health_check_interval <= 0:
            return
        if self._health_thread is not None and self._health_thread.is_alive():
            return
        self._stop_event.clear()
        self._health_thread = threading.Thread(
            target=self._health_check_loop,
            name="py2scope-health-check",
            daemon=True
        )
        self._health_thread.start()
        self.logger.debug(
            f"Health check started (interval {self.config.health_check_interval:.1f}s)"
        )

    def _health_check_loop(self) -> None:
        interval = self.config.health_check_interval
        while not self._stop_event.wait(interval):
            self.check_health()
        self.logger.debug("Health check stopped")

    def check_health(self, force: bool = False) -> bool:
        """
        Probe the server with a position query if the channel is idle.

        The probe shares the channel lock with application requests and is
        skipped while another round trip is in flight. A failed probe
        triggers reconnection when auto-reconnect is enabled.

        Args:
            force: Probe even if there was traffic within the last interval

        Returns:
            True if the connection is believed healthy
        """
        if not self._lock.acquire(blocking=False):
            return True  # channel busy, so it is alive
        try:
            if self._socket is None:
                return False
            idle = time.monotonic() - self._last_activity
            if not force and idle < self.config.health_check_interval:
                return True

            try:
                reply = self._round_trip_unsafe(HEALTH_PROBE, self.config.read_timeout,
                                                expect_reply=True)
            except OSError as e:
                self._io_failure_unsafe(HEALTH_PROBE, self.config.read_timeout, e)
                self._record_probe(success=False, status=f"probe failed: {e}")
                if not self.config.auto_reconnect:
                    self._set_state(ConnectionState.FAILED, error=str(e))
                    return False
                try:
                    self._reconnect_unsafe(reason="health probe failed")
                except ConnectionError as reconnect_error:
                    self.logger.error(f"Health check could not restore connection: {reconnect_error}")
                    return False
                return True

            # Any reply, even an error line, proves the server is alive
            self._record_probe(success=True, status=reply)
            return True
        finally:
            self._lock.release()

    def _record_probe(self, success: bool, status: str) -> None:
        now = datetime.now()
        if success:
            self._health = replace(self._health, last_success=now, status=status,
                                   probes_sent=self._health.probes_sent + 1)
        else:
            self._health = replace(self._health, last_failure=now, status=status,
                                   probes_sent=self._health.probes_sent + 1)
            self.logger.warning(f"Health probe failed: {status}")

    # ========== State ==========

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def health(self) -> HealthProbeRecord:
        return self._health

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            host=self.config.host,
            port=self.config.port,
            connected_at=self._connected_at,
            last_error=self._last_error,
        )

    def is_connected(self) -> bool:
        return self._socket is not None

    def add_state_observer(self, callback: StateObserver) -> None:
        """
        Register a callback for connection state changes.

        Callbacks run on whichever thread changed the state, while the
        channel lock is held; they must not call back into the transport.
        """
        if callback not in self._observers:
            self._observers.append(callback)

    def remove_state_observer(self, callback: StateObserver) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    def _set_state(self, state: ConnectionState, error: Optional[str] = None) -> None:
        if error is not None:
            self._last_error = error
        if state is self._state:
            return
        self.logger.info(f"Connection state: {self._state.value} -> {state.value}")
        self._state = state
        status = self.status
        for observer in list(self._observers):
            try:
                observer(status)
            except Exception as e:
                self.logger.error(f"State observer raised: {e}")

    @staticmethod
    def _check_message(message: str) -> None:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError(f"Message must be a non-empty string: {message!r}",
                                  field_name='message')
        if '\n' in message or '\r' in message:
            raise ValidationError("Message must be a single line", field_name='message')
        if _verb(message) in NO_REPLY_COMMANDS:
            raise ValidationError(
                f"'{_verb(message)}' gets no reply; use disconnect() or shutdown_server()",
                field_name='message'
            )


def _verb(message: str) -> str:
    return message.split(' ', 1)[0]
