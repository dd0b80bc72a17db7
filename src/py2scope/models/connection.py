"""
Connection models for py2scope.

This module provides data structures for the single TCP connection to the
microscope acquisition server.

Classes:
    ConnectionConfig: Immutable configuration for a connection
    ConnectionState: Enumeration of connection states
    ConnectionStatus: Snapshot of the current connection
    HealthProbeRecord: Outcome of the latest health probe
    ServerProbeResult: Outcome of a one-shot reachability check
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Immutable configuration for the server connection.

    The config is passed to the Transport at construction time; there is no
    process-wide settings store.

    Attributes:
        host: Server host name or IP address
        port: Server port (1-65535)
        connect_timeout: Seconds allowed for the TCP connect (default: 3.0)
        read_timeout: Default seconds allowed for each reply (default: 5.0)
        auto_reconnect: Reconnect and retry once after an I/O failure
        max_reconnect_attempts: Reconnect attempts before giving up (default: 3)
        reconnect_delay: Seconds between reconnect attempts (default: 5.0)
        health_check_interval: Seconds between idle probes; 0 disables them
        config_path: Microscope configuration file announced after connecting
        acquisition_ack_timeout: Seconds allowed for a start command reply

    Example:
        >>> config = ConnectionConfig("127.0.0.1", 5000, reconnect_delay=0.5)
        >>> valid, errors = config.validate()
        >>> if not valid:
        ...     print(f"Validation errors: {errors}")
    """

    host: str
    port: int
    connect_timeout: float = 3.0
    read_timeout: float = 5.0
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 3
    reconnect_delay: float = 5.0
    health_check_interval: float = 30.0
    config_path: Optional[str] = None
    acquisition_ack_timeout: float = 30.0

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate the connection configuration.

        Returns:
            Tuple of (is_valid, list_of_error_messages)
        """
        errors = []

        if not isinstance(self.host, str) or not self.host.strip():
            errors.append(f"Host must be a non-empty string: {self.host!r}")

        if not isinstance(self.port, int) or isinstance(self.port, bool) \
                or not (1 <= self.port <= 65535):
            errors.append(f"Port out of range (1-65535): {self.port}")

        if self.connect_timeout <= 0:
            errors.append(f"Connect timeout must be positive: {self.connect_timeout}")

        if self.read_timeout <= 0:
            errors.append(f"Read timeout must be positive: {self.read_timeout}")

        if self.max_reconnect_attempts < 0:
            errors.append(
                f"Reconnect attempts must not be negative: {self.max_reconnect_attempts}"
            )

        if self.reconnect_delay < 0:
            errors.append(f"Reconnect delay must not be negative: {self.reconnect_delay}")

        if self.health_check_interval < 0:
            errors.append(
                f"Health check interval must not be negative: {self.health_check_interval}"
            )

        if self.acquisition_ack_timeout <= 0:
            errors.append(
                f"Acquisition ack timeout must be positive: {self.acquisition_ack_timeout}"
            )

        return (len(errors) == 0, errors)

    def with_changes(self, **changes: Any) -> "ConnectionConfig":
        """Return a copy with some settings replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)

    @property
    def reconnect_budget(self) -> float:
        """Upper bound in seconds spent waiting between reconnect attempts."""
        return self.max_reconnect_attempts * self.reconnect_delay


class ConnectionState(Enum):
    """
    Enumeration of possible connection states.

    States:
        DISCONNECTED: No socket open
        CONNECTING: Initial connection attempt in progress
        CONNECTED: Socket open and usable
        RECONNECTING: Recovering from an I/O failure
        FAILED: Reconnection exhausted or disabled after a failure
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionStatus:
    """
    Snapshot of the connection, handed to state observers.

    Attributes:
        state: Current connection state
        host: Server host
        port: Server port
        connected_at: When the current socket was opened, None if not connected
        last_error: Last I/O error message, if any
    """

    state: ConnectionState
    host: Optional[str] = None
    port: Optional[int] = None
    connected_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class HealthProbeRecord:
    """
    Outcome of the most recent health probe.

    Used only to decide whether to reconnect; not application data.
    """

    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    status: str = "not probed"
    probes_sent: int = 0

    @property
    def healthy(self) -> bool:
        if self.last_success is None:
            return False
        return self.last_failure is None or self.last_success >= self.last_failure


@dataclass(frozen=True)
class ServerProbeResult:
    """
    Result of a one-shot server reachability check.

    Attributes:
        can_connect: TCP connection could be opened
        is_responding: Server answered a position query
        host: Probed host
        port: Probed port
        message: Human readable summary
    """

    can_connect: bool
    is_responding: bool
    host: str
    port: int
    message: str

    def __str__(self) -> str:
        return (f"ServerProbeResult[{self.host}:{self.port}, connect={self.can_connect}, "
                f"responding={self.is_responding}, msg={self.message}]")
