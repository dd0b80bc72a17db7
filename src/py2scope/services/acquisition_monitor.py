"""
Acquisition monitoring service.

Drives a started acquisition to a terminal state by polling the server
through the shared Transport. Each poll is an independent round trip, so
other callers (a cancel request, the health probe, stage queries) can use
the connection between polls.

State machine:

    STARTED -> POLLING -> MANUAL_FOCUS_REQUESTED -> AUTO_SKIPPED | USER_PROVIDED_FOCUS -> POLLING
                       -> COMPLETED | FAILED | CANCELLED

Manual focus checkpoints are answered by a handler. The default handler
skips immediately, and any handler is abandoned (and the checkpoint
skipped) after ``manual_focus_timeout`` seconds, so a missing or stuck
handler can never leave the server waiting forever.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from py2scope.core.errors import (
    ConnectionError,
    ErrorCodes,
    ProtocolError,
    ScopeError,
    TimeoutError,
)
from py2scope.models.acquisition import (
    AcquisitionProgress,
    AcquisitionResult,
    AcquisitionSession,
    AcquisitionStatus,
    ManualFocusDecision,
    ManualFocusRequest,
    StatusReport,
)

ProgressCallback = Callable[[AcquisitionProgress, float], None]
ManualFocusHandler = Callable[[ManualFocusRequest], ManualFocusDecision]
StateObserver = Callable[["MonitorState"], None]


class MonitorState(Enum):
    """States of the acquisition monitor."""

    STARTED = "started"
    POLLING = "polling"
    MANUAL_FOCUS_REQUESTED = "manual_focus_requested"
    AUTO_SKIPPED = "auto_skipped"
    USER_PROVIDED_FOCUS = "user_provided_focus"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_MONITOR_STATES = {
    AcquisitionStatus.COMPLETED: MonitorState.COMPLETED,
    AcquisitionStatus.FAILED: MonitorState.FAILED,
    AcquisitionStatus.CANCELLED: MonitorState.CANCELLED,
}


def auto_skip_manual_focus(request: ManualFocusRequest) -> ManualFocusDecision:
    """Default manual focus handler: keep the current focus and continue."""
    return ManualFocusDecision.SKIP


class AcquisitionMonitor:
    """
    Polls a running acquisition until it completes, fails or is cancelled.

    Args:
        client: MicroscopeClient used for every round trip
        poll_interval: Seconds between status polls
        manual_focus_timeout: Seconds a manual focus handler may take
        stall_timeout: Raise TimeoutError if neither state nor progress
            changes for this long; None disables the check
        max_poll_failures: Consecutive failed polls tolerated before the
            error is raised
        cancel_confirm_timeout: Seconds to wait for the server to report a
            terminal state after a cancel request

    Example:
        >>> session = client.start_acquisition(command)
        >>> monitor = AcquisitionMonitor(client, poll_interval=1.0)
        >>> result = monitor.monitor(session, progress_callback=print)
        >>> result.status
        <AcquisitionStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        client,
        poll_interval: float = 0.5,
        manual_focus_timeout: float = 300.0,
        stall_timeout: Optional[float] = None,
        max_poll_failures: int = 3,
        cancel_confirm_timeout: float = 30.0,
    ):
        if poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive: {poll_interval}")
        if manual_focus_timeout <= 0:
            raise ValueError(f"Manual focus timeout must be positive: {manual_focus_timeout}")
        if max_poll_failures < 1:
            raise ValueError(f"max_poll_failures must be at least 1: {max_poll_failures}")

        self.client = client
        self.poll_interval = poll_interval
        self.manual_focus_timeout = manual_focus_timeout
        self.stall_timeout = stall_timeout
        self.max_poll_failures = max_poll_failures
        self.cancel_confirm_timeout = cancel_confirm_timeout
        self.logger = logging.getLogger(self.__class__.__name__)

    def start(
        self,
        session: AcquisitionSession,
        progress_callback: Optional[ProgressCallback] = None,
        manual_focus_handler: Optional[ManualFocusHandler] = None,
        done_callback: Optional[Callable[["AcquisitionHandle"], None]] = None,
    ) -> "AcquisitionHandle":
        """
        Monitor ``session`` on a dedicated daemon thread.

        Returns:
            Handle to wait on or cancel the acquisition
        """
        handle = AcquisitionHandle(session, done_callback=done_callback)

        def run():
            try:
                result = self.monitor(
                    session,
                    progress_callback=progress_callback,
                    manual_focus_handler=manual_focus_handler,
                    cancel_event=handle._cancel_event,
                    state_observer=handle._set_state,
                )
            except Exception as e:
                self.logger.error(f"Monitoring of acquisition {session.session_id} failed: {e}")
                handle._set_state(MonitorState.FAILED)
                handle._finish(error=e)
            else:
                handle._finish(result=result)

        handle._thread = threading.Thread(
            target=run,
            name=f"py2scope-monitor-{session.session_id}",
            daemon=True
        )
        handle._thread.start()
        return handle

    def monitor(
        self,
        session: AcquisitionSession,
        progress_callback: Optional[ProgressCallback] = None,
        manual_focus_handler: Optional[ManualFocusHandler] = None,
        cancel_event: Optional[threading.Event] = None,
        state_observer: Optional[StateObserver] = None,
    ) -> AcquisitionResult:
        """
        Poll until the acquisition reaches a terminal state.

        Runs in the calling thread. Cancellation is cooperative: setting
        ``cancel_event`` makes the monitor send a cancel request before the
        next poll and then wait for the server to confirm.

        Args:
            session: Session returned by the start command
            progress_callback: Called as ``callback(progress, elapsed_seconds)``
                for each poll that carries tile progress
            manual_focus_handler: Decides manual focus checkpoints; defaults
                to auto_skip_manual_focus
            cancel_event: Set to request cancellation
            state_observer: Called with each MonitorState entered

        Returns:
            AcquisitionResult describing the terminal state

        Raises:
            ConnectionError, TimeoutError, ProtocolError: If polling fails
                ``max_poll_failures`` times in a row
            TimeoutError: If the acquisition stalls beyond ``stall_timeout``
            HardwareError: If the server reports an error for a poll
        """
        run = _MonitorRun(
            session=session,
            handler=manual_focus_handler or auto_skip_manual_focus,
            cancel_event=cancel_event or threading.Event(),
            state_observer=state_observer,
            progress_callback=progress_callback,
        )
        self._transition(run, MonitorState.STARTED)
        self.logger.info(f"Monitoring acquisition {session.session_id}")
        self._transition(run, MonitorState.POLLING)

        while True:
            if run.cancel_event.is_set() and not run.cancel_sent:
                self._request_cancel(run)

            report = self._poll(run)
            if report is not None:
                result = self._handle_report(run, report)
                if result is not None:
                    return result

            if run.cancel_sent and time.monotonic() - run.cancel_sent_at > self.cancel_confirm_timeout:
                self.logger.warning(
                    f"Server did not confirm cancellation within {self.cancel_confirm_timeout:.0f}s"
                )
                return self._finish(run, AcquisitionStatus.CANCELLED,
                                    message="Cancellation requested; server did not confirm")

            self._check_stall(run)
            if run.cancel_sent:
                time.sleep(self.poll_interval)
            else:
                # Wakes early when cancellation is requested
                run.cancel_event.wait(self.poll_interval)

    # ========== Poll cycle ==========

    def _poll(self, run: "_MonitorRun") -> Optional[StatusReport]:
        """
        One poll cycle: status, then the manual focus query and progress
        while running. Returns None after a tolerated transient failure.

        Only the status query counts toward ``max_poll_failures``; a bad
        reply to the manual focus or progress query is logged and the
        status report is kept.
        """
        try:
            report = self.client.get_acquisition_status()
        except (ConnectionError, TimeoutError, ProtocolError) as e:
            run.consecutive_failures += 1
            self.logger.warning(
                f"Status poll failed ({run.consecutive_failures}/{self.max_poll_failures}): {e}"
            )
            if run.consecutive_failures >= self.max_poll_failures:
                self.logger.error(f"Giving up on acquisition {run.session.session_id} after "
                                  f"{run.consecutive_failures} failed polls")
                self._transition(run, MonitorState.FAILED)
                raise
            return None

        run.consecutive_failures = 0
        if report.status is not AcquisitionStatus.RUNNING or run.cancel_sent:
            return report

        try:
            retries = self.client.is_manual_focus_requested()
        except ScopeError as e:
            self.logger.warning(f"Manual focus query failed, keeping status: {e}")
            retries = None
        if retries is not None:
            return StatusReport(
                status=AcquisitionStatus.AWAITING_MANUAL_FOCUS,
                progress=report.progress,
                manual_focus_retries=retries,
                raw=report.raw,
            )

        if report.progress is None:
            try:
                progress = self.client.get_acquisition_progress()
            except ScopeError as e:
                self.logger.debug(f"Progress query failed, keeping status: {e}")
            else:
                report = StatusReport(
                    status=report.status,
                    message=report.message,
                    progress=progress,
                    raw=report.raw,
                )
        return report

    def _handle_report(self, run: "_MonitorRun", report: StatusReport) -> Optional[AcquisitionResult]:
        session = run.session
        if session.apply(report):
            run.last_change = time.monotonic()
            self.logger.debug(f"Acquisition {session.session_id}: {report.raw}")

        if report.progress is not None and run.progress_callback is not None:
            try:
                run.progress_callback(report.progress, session.elapsed)
            except Exception as e:
                self.logger.warning(f"Progress callback raised: {e}")

        if report.status.is_terminal:
            return self._finish(run, report.status, message=report.message,
                                final_z=report.final_z, final_exposures=report.final_exposures)

        if report.status is AcquisitionStatus.AWAITING_MANUAL_FOCUS and not run.cancel_sent:
            self._handle_manual_focus(run, report.manual_focus_retries or 0)

        return None

    def _check_stall(self, run: "_MonitorRun") -> None:
        if self.stall_timeout is None:
            return
        idle = time.monotonic() - run.last_change
        if idle > self.stall_timeout:
            self.logger.error(
                f"Acquisition {run.session.session_id} made no progress for {idle:.0f}s"
            )
            self._transition(run, MonitorState.FAILED)
            raise TimeoutError(
                f"Acquisition made no progress for {idle:.0f}s",
                timeout_seconds=self.stall_timeout,
                error_code=ErrorCodes.ACQUISITION_STALLED,
                context={'session_id': run.session.session_id}
            )

    # ========== Manual focus ==========

    def _handle_manual_focus(self, run: "_MonitorRun", retries: int) -> None:
        self._transition(run, MonitorState.MANUAL_FOCUS_REQUESTED)
        run.manual_focus_requests += 1
        self.logger.info(
            f"Manual focus requested for acquisition {run.session.session_id} "
            f"({retries} autofocus retries left)"
        )

        request = ManualFocusRequest(session=run.session, retries_remaining=retries)
        decision, decided_by_user = self._decide_manual_focus(run, request)

        if decision is ManualFocusDecision.CANCEL:
            self.logger.info("Manual focus handler chose to cancel the acquisition")
            run.cancel_event.set()
            self._request_cancel(run)
            return

        if decided_by_user:
            self._transition(run, MonitorState.USER_PROVIDED_FOCUS)
        else:
            self._transition(run, MonitorState.AUTO_SKIPPED)

        if decision is ManualFocusDecision.RETRY:
            self.client.acknowledge_manual_focus()
        else:
            self.client.skip_autofocus_retry()
        self.logger.info(f"Manual focus answered with {decision.value}")

        run.last_change = time.monotonic()
        self._transition(run, MonitorState.POLLING)

    def _decide_manual_focus(self, run: "_MonitorRun", request: ManualFocusRequest):
        """
        Ask the handler, bounded by ``manual_focus_timeout``.

        Returns:
            (decision, decided_by_user)
        """
        if run.handler is auto_skip_manual_focus:
            return ManualFocusDecision.SKIP, False

        outcome: List = []

        def call_handler():
            try:
                outcome.append(run.handler(request))
            except Exception as e:
                outcome.append(e)

        worker = threading.Thread(target=call_handler, name="py2scope-manual-focus", daemon=True)
        worker.start()

        deadline = time.monotonic() + self.manual_focus_timeout
        while worker.is_alive():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning(
                    f"Manual focus handler did not answer within "
                    f"{self.manual_focus_timeout:.1f}s; skipping autofocus"
                )
                return ManualFocusDecision.SKIP, False
            if run.cancel_event.is_set():
                return ManualFocusDecision.CANCEL, True
            worker.join(min(remaining, 0.1))

        value = outcome[0] if outcome else None
        if isinstance(value, Exception):
            self.logger.error(f"Manual focus handler raised: {value}; skipping autofocus")
            return ManualFocusDecision.SKIP, False
        if not isinstance(value, ManualFocusDecision):
            self.logger.warning(f"Manual focus handler returned {value!r}; skipping autofocus")
            return ManualFocusDecision.SKIP, False
        return value, True

    # ========== Cancellation and completion ==========

    def _request_cancel(self, run: "_MonitorRun") -> None:
        self.logger.info(f"Cancelling acquisition {run.session.session_id}")
        self.client.cancel_acquisition()
        run.cancel_sent = True
        run.cancel_sent_at = time.monotonic()

    def _finish(self, run: "_MonitorRun", status: AcquisitionStatus, message=None,
                final_z=None, final_exposures=None) -> AcquisitionResult:
        run.session.status = status
        self._transition(run, _TERMINAL_MONITOR_STATES[status])
        result = AcquisitionResult(
            status=status,
            message=message,
            final_z=final_z,
            final_exposures=dict(final_exposures or {}),
            progress=run.session.progress,
            elapsed=run.session.elapsed,
            manual_focus_requests=run.manual_focus_requests,
        )
        log = self.logger.info if status is AcquisitionStatus.COMPLETED else self.logger.warning
        log(f"Acquisition {run.session.session_id} finished: {status.value}"
            + (f" ({message})" if message else ""))
        return result

    def _transition(self, run: "_MonitorRun", state: MonitorState) -> None:
        run.state = state
        self.logger.debug(f"Monitor state -> {state.value}")
        if run.state_observer is not None:
            run.state_observer(state)


class _MonitorRun:
    """Mutable bookkeeping for one monitor() call."""

    def __init__(self, session, handler, cancel_event, state_observer, progress_callback):
        self.session = session
        self.handler = handler
        self.cancel_event = cancel_event
        self.state_observer = state_observer
        self.progress_callback = progress_callback
        self.state = MonitorState.STARTED
        self.consecutive_failures = 0
        self.manual_focus_requests = 0
        self.cancel_sent = False
        self.cancel_sent_at = 0.0
        self.last_change = time.monotonic()


class AcquisitionHandle:
    """
    Handle on an acquisition monitored in the background.

    Example:
        >>> handle = client.run_acquisition(command)
        >>> result = handle.wait(timeout=3600)
        >>> if not result.succeeded:
        ...     print(result.message)
    """

    def __init__(self, session: AcquisitionSession,
                 done_callback: Optional[Callable[["AcquisitionHandle"], None]] = None):
        self.session = session
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._done_callback = done_callback
        self._thread: Optional[threading.Thread] = None
        self._state = MonitorState.STARTED
        self._result: Optional[AcquisitionResult] = None
        self._error: Optional[Exception] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def result(self) -> Optional[AcquisitionResult]:
        return self._result

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def progress(self) -> Optional[AcquisitionProgress]:
        return self.session.progress

    def done(self) -> bool:
        return self._done_event.is_set()

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next poll."""
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> AcquisitionResult:
        """
        Block until monitoring ends.

        Raises:
            TimeoutError: If monitoring is still running after ``timeout``
            Exception: Whatever error ended monitoring
        """
        if not self._done_event.wait(timeout):
            raise TimeoutError(
                f"Acquisition {self.session.session_id} still running after {timeout}s",
                timeout_seconds=timeout
            )
        if self._error is not None:
            raise self._error
        return self._result

    def _set_state(self, state: MonitorState) -> None:
        self._state = state

    def _finish(self, result: Optional[AcquisitionResult] = None,
                error: Optional[Exception] = None) -> None:
        self._result = result
        self._error = error
        self._done_event.set()
        if self._done_callback is not None:
            try:
                self._done_callback(self)
            except Exception as e:
                self.logger.error(f"Done callback raised: {e}")
