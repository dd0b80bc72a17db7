"""
Command verbs for the microscope acquisition server protocol.

Every request is one text line starting with one of these verbs. Verbs are
grouped by subsystem for clarity.

Usage Example:
    >>> from py2scope.core.command_codes import StageCommands
    >>> from py2scope.core.message_encoder import MessageEncoder
    >>>
    >>> encoder = MessageEncoder()
    >>> encoder.encode_command(StageCommands.MOVE_XY, [("x", 100.5), ("y", 200.7)])
    'move --x 100.5 --y 200.7'
"""


class SystemCommands:
    """
    Connection-level commands.

    QUIT and SHUTDOWN produce no reply. SHUTDOWN stops the server process
    and must never be retried.
    """

    CONFIG = "config"  # Announce microscope configuration file
    QUIT = "quitclnt"  # Polite disconnect
    SHUTDOWN = "shutdown"  # Stop the server


class StageCommands:
    """
    Stage position queries and moves.

    Positions are in micrometers, rotation in degrees.
    """

    GET_XY = "getxy"
    GET_Z = "getz"
    GET_R = "getr"
    MOVE_XY = "move"
    MOVE_Z = "move_z"
    MOVE_R = "move_r"


class CameraCommands:
    """Camera queries."""

    GET_FOV = "getfov"


class AcquisitionCommands:
    """
    Long-running acquisition commands.

    ACQUIRE and BACKGROUND return as soon as the server has accepted the
    work; STATUS is polled until a terminal state is reported.
    """

    ACQUIRE = "acquire"
    BACKGROUND = "bgacquir"
    STATUS = "status"
    PROGRESS = "progress"
    CANCEL = "cancel"

    # Manual focus checkpoint
    MANUAL_FOCUS_REQUESTED = "reqmanf"
    MANUAL_FOCUS_ACK = "ackmf"
    SKIP_AUTOFOCUS = "skipaf"


# Lightweight idempotent query used by the health check
HEALTH_PROBE = StageCommands.GET_XY

# Commands the server does not answer
NO_REPLY_COMMANDS = frozenset({SystemCommands.QUIT, SystemCommands.SHUTDOWN})
