"""
Microscope client service.

High-level operations on the microscope acquisition server: stage queries
and moves, camera field of view, starting and steering acquisitions, and
server shutdown. Every operation is one round trip through the shared
Transport, so calls from different threads never interleave on the wire.
"""

import logging
import socket
import time
from typing import Callable, Optional, Tuple, Union

from py2scope.core.command_codes import (
    AcquisitionCommands,
    CameraCommands,
    SystemCommands,
    StageCommands,
)
from py2scope.core.errors import ValidationError
from py2scope.core.message_encoder import MessageEncoder
from py2scope.core import response_parser
from py2scope.core.transport import Transport
from py2scope.models.acquisition import (
    AcquisitionProgress,
    AcquisitionSession,
    StatusReport,
)
from py2scope.models.command import AcquisitionCommand, BackgroundAcquisitionCommand
from py2scope.models.connection import ConnectionConfig, ServerProbeResult
from py2scope.models.microscope import FieldOfView, Position


class MicroscopeClient:
    """
    Client for one microscope acquisition server.

    Example:
        >>> config = ConnectionConfig("127.0.0.1", 5000)
        >>> with MicroscopeClient(config) as client:
        ...     x, y = client.get_stage_xy()
        ...     client.move_stage_z(50.0)
    """

    def __init__(self, config: ConnectionConfig, transport: Optional[Transport] = None):
        """
        Initialize the client.

        Args:
            config: Connection settings
            transport: Transport to use; one is created from ``config`` if omitted
        """
        self.config = config
        self.transport = transport or Transport(config)
        self.encoder = MessageEncoder()
        self.logger = logging.getLogger(self.__class__.__name__)

    # ========== Connection ==========

    def connect(self) -> None:
        self.transport.connect()

    def disconnect(self) -> None:
        self.transport.disconnect()

    def close(self) -> None:
        self.transport.close()

    def is_connected(self) -> bool:
        return self.transport.is_connected()

    def __enter__(self) -> "MicroscopeClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def shutdown_server(self) -> None:
        """Stop the server process. Not retried; the connection is closed afterwards."""
        self.logger.info("Requesting server shutdown")
        self.transport.shutdown_server()

    # ========== Stage ==========

    def get_stage_xy(self) -> Tuple[float, float]:
        """
        Query the XY stage position.

        Returns:
            (x, y) in micrometers

        Raises:
            HardwareError: If the server reports an error
            ProtocolError: If the reply is not two numbers
        """
        reply = self.transport.send(StageCommands.GET_XY)
        x, y = response_parser.parse_floats(reply, 2, StageCommands.GET_XY)
        return x, y

    def get_stage_z(self) -> float:
        reply = self.transport.send(StageCommands.GET_Z)
        return response_parser.parse_floats(reply, 1, StageCommands.GET_Z)[0]

    def get_stage_r(self) -> float:
        reply = self.transport.send(StageCommands.GET_R)
        return response_parser.parse_floats(reply, 1, StageCommands.GET_R)[0]

    def get_position(self) -> Position:
        """Query all four axes (three round trips)."""
        x, y = self.get_stage_xy()
        return Position(x=x, y=y, z=self.get_stage_z(), r=self.get_stage_r())

    def move_stage_xy(self, x: float, y: float, timeout: Optional[float] = None) -> None:
        """
        Move the XY stage and wait for the server to acknowledge.

        Args:
            x: Target X in micrometers
            y: Target Y in micrometers
            timeout: Reply timeout; long moves may need more than the default
        """
        message = self.encoder.encode_command(
            StageCommands.MOVE_XY, [("x", float(x)), ("y", float(y))]
        )
        self.logger.info(f"Moving stage to XY ({x}, {y})")
        response_parser.parse_ack(self.transport.send(message, timeout), StageCommands.MOVE_XY)

    def move_stage_z(self, z: float, timeout: Optional[float] = None) -> None:
        message = self.encoder.encode_command(StageCommands.MOVE_Z, [("z", float(z))])
        self.logger.info(f"Moving stage to Z {z}")
        response_parser.parse_ack(self.transport.send(message, timeout), StageCommands.MOVE_Z)

    def move_stage_r(self, angle: float, timeout: Optional[float] = None) -> None:
        message = self.encoder.encode_command(StageCommands.MOVE_R, [("angle", float(angle))])
        self.logger.info(f"Rotating stage to {angle} degrees")
        response_parser.parse_ack(self.transport.send(message, timeout), StageCommands.MOVE_R)

    # ========== Camera ==========

    def get_camera_fov(self) -> FieldOfView:
        reply = self.transport.send(CameraCommands.GET_FOV)
        width, height = response_parser.parse_floats(reply, 2, CameraCommands.GET_FOV)
        return FieldOfView(width, height)

    # ========== Acquisition ==========

    def start_acquisition(
        self,
        command: Union[AcquisitionCommand, BackgroundAcquisitionCommand]
    ) -> AcquisitionSession:
        """
        Send a start command and return as soon as the server accepts it.

        The command must be followed by status polling; see
        AcquisitionMonitor or run_acquisition().

        Raises:
            ValidationError: If the descriptor type is not supported
            HardwareError: If the server refuses to start
        """
        message = self.encoder.encode(command)
        self.logger.info(f"Starting acquisition: {message}")
        reply = self.transport.send(message, self.config.acquisition_ack_timeout)
        detail = response_parser.parse_started(reply, command.verb)
        session = AcquisitionSession(verb=command.verb, detail=detail)
        self.logger.info(f"Acquisition {session.session_id} accepted by server")
        return session

    def start_background_acquisition(self, command: BackgroundAcquisitionCommand) -> AcquisitionSession:
        if not isinstance(command, BackgroundAcquisitionCommand):
            raise ValidationError(
                f"Expected BackgroundAcquisitionCommand, got {type(command).__name__}",
                field_name='command'
            )
        return self.start_acquisition(command)

    def get_acquisition_status(self) -> StatusReport:
        reply = self.transport.send(AcquisitionCommands.STATUS)
        return response_parser.parse_status(reply)

    def get_acquisition_progress(self) -> AcquisitionProgress:
        reply = self.transport.send(AcquisitionCommands.PROGRESS)
        return response_parser.parse_progress(reply)

    def is_manual_focus_requested(self) -> Optional[int]:
        """
        Ask whether the server is waiting for a manual focus decision.

        Returns:
            Remaining autofocus retries if it is, None otherwise
        """
        reply = self.transport.send(AcquisitionCommands.MANUAL_FOCUS_REQUESTED)
        return response_parser.parse_manual_focus(reply)

    def acknowledge_manual_focus(self) -> None:
        """Focus was adjusted by hand; the server retries autofocus."""
        reply = self.transport.send(AcquisitionCommands.MANUAL_FOCUS_ACK)
        response_parser.parse_ack(reply, AcquisitionCommands.MANUAL_FOCUS_ACK)

    def skip_autofocus_retry(self) -> None:
        """Keep the current focus and let the acquisition continue."""
        reply = self.transport.send(AcquisitionCommands.SKIP_AUTOFOCUS)
        response_parser.parse_ack(reply, AcquisitionCommands.SKIP_AUTOFOCUS)

    def cancel_acquisition(self) -> None:
        self.logger.info("Requesting acquisition cancellation")
        reply = self.transport.send(AcquisitionCommands.CANCEL)
        response_parser.parse_ack(reply, AcquisitionCommands.CANCEL)

    def run_acquisition(
        self,
        command: Union[AcquisitionCommand, BackgroundAcquisitionCommand],
        progress_callback: Optional[Callable] = None,
        manual_focus_handler: Optional[Callable] = None,
        poll_interval: float = 0.5,
        manual_focus_timeout: float = 300.0,
        stall_timeout: Optional[float] = None,
    ):
        """
        Start an acquisition and monitor it on a background thread.

        Returns:
            AcquisitionHandle for waiting on or cancelling the acquisition
        """
        from py2scope.services.acquisition_monitor import AcquisitionMonitor

        session = self.start_acquisition(command)
        monitor = AcquisitionMonitor(
            self,
            poll_interval=poll_interval,
            manual_focus_timeout=manual_focus_timeout,
            stall_timeout=stall_timeout,
        )
        return monitor.start(
            session,
            progress_callback=progress_callback,
            manual_focus_handler=manual_focus_handler,
        )


def probe_server(host: str, port: int, timeout: float = 2.0) -> ServerProbeResult:
    """
    Check whether a server is reachable and answering, without a Transport.

    Opens a throwaway connection, sends one position query and closes.
    Never raises; the outcome is described by the result.

    Example:
        >>> result = probe_server("127.0.0.1", 5000)
        >>> if not result.can_connect:
        ...     print(result.message)
    """
    logger = logging.getLogger(__name__)
    start = time.monotonic()
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        logger.info(f"Probe of {host}:{port} could not connect: {e}")
        return ServerProbeResult(False, False, host, port, f"Cannot connect: {e}")

    try:
        sock.settimeout(timeout)
        sock.sendall(f"{StageCommands.GET_XY}\n".encode("utf-8"))
        data = b""
        while b"\n" not in data:
            chunk = sock.recv(1024)
            if not chunk:
                break
            data += chunk
    except OSError as e:
        return ServerProbeResult(True, False, host, port, f"Connected but no reply: {e}")
    finally:
        try:
            sock.sendall(f"{SystemCommands.QUIT}\n".encode("utf-8"))
        except OSError:
            pass  # server may already be gone
        sock.close()

    if b"\n" not in data:
        return ServerProbeResult(True, False, host, port, "Connected but server closed the connection")

    elapsed_ms = (time.monotonic() - start) * 1000.0
    reply = data.split(b"\n", 1)[0].decode("utf-8", errors="replace").strip()
    return ServerProbeResult(True, True, host, port,
                             f"Server responding ({elapsed_ms:.0f} ms): {reply}")
