"""
Acquisition models.

Data structures describing a long-running acquisition as seen by the
client: the server-reported status, tile progress, the session the
monitor tracks, manual focus checkpoints and the final result.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class AcquisitionStatus(Enum):
    """
    Acquisition states reported by the server.

    States:
        QUEUED: Accepted, not yet running (server reports IDLE or QUEUED)
        RUNNING: Tiles are being acquired
        AWAITING_MANUAL_FOCUS: Server is waiting for a focus decision
        CANCELLING: Cancellation requested, server is winding down
        COMPLETED: Finished successfully
        FAILED: Finished with an error
        CANCELLED: Stopped on request
    """

    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_MANUAL_FOCUS = "awaiting_manual_focus"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    AcquisitionStatus.COMPLETED,
    AcquisitionStatus.FAILED,
    AcquisitionStatus.CANCELLED,
})


@dataclass(frozen=True)
class AcquisitionProgress:
    """
    Tile progress of a running acquisition.

    Example:
        >>> progress = AcquisitionProgress(12, 48)
        >>> progress.percentage
        25.0
    """

    current: int
    total: int

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return 100.0 * self.current / self.total

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.current >= self.total

    def __str__(self) -> str:
        return f"{self.current}/{self.total}"


@dataclass(frozen=True)
class StatusReport:
    """
    One parsed status reply.

    Attributes:
        status: Reported state
        message: Failure text or other detail
        progress: Tile progress if the reply carried it
        manual_focus_retries: Remaining autofocus retries when awaiting focus
        final_z: Focus position at completion, when reported
        final_exposures: Angle to exposure map, when reported
        raw: The reply as received
    """

    status: AcquisitionStatus
    message: Optional[str] = None
    progress: Optional[AcquisitionProgress] = None
    manual_focus_retries: Optional[int] = None
    final_z: Optional[float] = None
    final_exposures: Dict[float, float] = field(default_factory=dict)
    raw: str = ""


@dataclass
class AcquisitionSession:
    """
    Client-side record of one server acquisition.

    Created when a start command is accepted and mutated only by the
    acquisition monitor's poll loop. The protocol has one channel, so at
    most one session is active per connection; ``session_id`` only
    identifies it in logs.
    """

    verb: str
    detail: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    status: AcquisitionStatus = AcquisitionStatus.QUEUED
    progress: Optional[AcquisitionProgress] = None
    started_at: datetime = field(default_factory=datetime.now)
    started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    last_report: Optional[StatusReport] = None

    @property
    def elapsed(self) -> float:
        """Seconds since the start command was accepted."""
        return time.monotonic() - self.started_monotonic

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def apply(self, report: StatusReport) -> bool:
        """
        Fold a status report into the session.

        Returns:
            True if the status or the progress changed
        """
        changed = report.status is not self.status
        self.status = report.status
        if report.progress is not None and report.progress != self.progress:
            self.progress = report.progress
            changed = True
        self.last_report = report
        return changed


class ManualFocusDecision(Enum):
    """
    Answer to a manual focus checkpoint.

    RETRY: Focus was adjusted by hand; retry autofocus from here
    SKIP: Keep the current focus and continue
    CANCEL: Stop the acquisition
    """

    RETRY = "retry"
    SKIP = "skip"
    CANCEL = "cancel"


@dataclass(frozen=True)
class ManualFocusRequest:
    """Context handed to a manual focus handler."""

    session: AcquisitionSession
    retries_remaining: int
    requested_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class AcquisitionResult:
    """
    Terminal outcome of a monitored acquisition.

    Attributes:
        status: COMPLETED, FAILED or CANCELLED
        message: Server failure text, if any
        final_z: Focus position reported at completion
        final_exposures: Exposures the server settled on, by angle
        progress: Last known tile progress
        elapsed: Seconds from start to terminal state
        manual_focus_requests: Number of focus checkpoints handled
    """

    status: AcquisitionStatus
    message: Optional[str] = None
    final_z: Optional[float] = None
    final_exposures: Dict[float, float] = field(default_factory=dict)
    progress: Optional[AcquisitionProgress] = None
    elapsed: float = 0.0
    manual_focus_requests: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is AcquisitionStatus.COMPLETED
