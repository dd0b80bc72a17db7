"""
Reply parsing for the microscope acquisition server protocol.

Each request gets exactly one reply line. This module turns reply lines
into values, raising HardwareError for errors the server reports and
ProtocolError for anything it does not recognise.

REPLY SHAPES:
=============
    Position queries      "100.5 200.7" / "50.0"
    Acknowledgements      "ACK"
    Start commands        "STARTED" or "STARTED:<detail>"
    Status                "RUNNING|progress:12/48"
                          "MANUAL_FOCUS|retries:2"
                          "COMPLETED|final_z:1234.5|final_exposures:-5.0=120.0,0.0=250.0"
                          "FAILED: stage not initialized"
    Progress              "12/48"
    Manual focus query    "IDLE" or "NEEDED2"
    Server errors         "HW_ERROR ...", "HWERR ...", "ERROR ...", "FAILED ..."
"""

import logging
import re
from typing import Dict, Optional, Tuple

from py2scope.core.errors import ErrorCodes, HardwareError, ProtocolError
from py2scope.models.acquisition import AcquisitionProgress, AcquisitionStatus, StatusReport

logger = logging.getLogger(__name__)

ERROR_PREFIXES = ("HW_ERROR", "HWERR", "ERROR", "FAILED")

ACK = "ACK"
STARTED = "STARTED"

_STATUS_NAMES = {
    "IDLE": AcquisitionStatus.QUEUED,
    "QUEUED": AcquisitionStatus.QUEUED,
    "STARTED": AcquisitionStatus.RUNNING,
    "RUNNING": AcquisitionStatus.RUNNING,
    "MANUAL_FOCUS": AcquisitionStatus.AWAITING_MANUAL_FOCUS,
    "AWAITING_MANUAL_FOCUS": AcquisitionStatus.AWAITING_MANUAL_FOCUS,
    "CANCELLING": AcquisitionStatus.CANCELLING,
    "CANCELLED": AcquisitionStatus.CANCELLED,
    "COMPLETED": AcquisitionStatus.COMPLETED,
    "SUCCESS": AcquisitionStatus.COMPLETED,
    "FAILED": AcquisitionStatus.FAILED,
}

_PROGRESS = re.compile(r'^\s*(\d+)\s*/\s*(\d+)\s*$')
_MANUAL_FOCUS_NEEDED = re.compile(r'^NEEDED\s*(\d+)', re.IGNORECASE)


def is_error_reply(response: str) -> bool:
    """True if the reply is an error reported by the server."""
    return response.lstrip().upper().startswith(ERROR_PREFIXES)


def check_for_error(response: str, command: Optional[str] = None) -> str:
    """
    Raise HardwareError if the server reported an error.

    Returns:
        The reply unchanged, stripped of surrounding whitespace
    """
    text = response.strip()
    if is_error_reply(text):
        raise HardwareError(text, command=command, error_code=ErrorCodes.SERVER_REPORTED)
    return text


def parse_floats(response: str, count: int, command: Optional[str] = None) -> Tuple[float, ...]:
    """
    Parse a reply holding exactly ``count`` whitespace-separated numbers.

    Raises:
        HardwareError: If the server reported an error
        ProtocolError: If the reply is not ``count`` numbers
    """
    text = check_for_error(response, command)
    parts = text.replace(',', ' ').split()
    if len(parts) != count:
        raise ProtocolError(
            f"Expected {count} value(s) for '{command}', got: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )
    try:
        return tuple(float(p) for p in parts)
    except ValueError as e:
        raise ProtocolError(
            f"Non-numeric reply for '{command}': {text!r}",
            response=text,
            cause=e,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )


def parse_ack(response: str, command: Optional[str] = None) -> None:
    """Accept an ``ACK`` reply; anything else is an error."""
    text = check_for_error(response, command)
    if text.upper() != ACK:
        raise ProtocolError(
            f"Expected ACK for '{command}', got: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )


def parse_started(response: str, command: Optional[str] = None) -> str:
    """
    Accept a ``STARTED[:detail]`` reply to a start command.

    Returns:
        The detail text after the colon, or an empty string
    """
    text = check_for_error(response, command)
    if not text.upper().startswith(STARTED):
        raise ProtocolError(
            f"Expected STARTED for '{command}', got: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )
    _, _, detail = text.partition(':')
    return detail.strip()


def parse_progress(response: str) -> AcquisitionProgress:
    """Parse a ``current/total`` reply."""
    text = check_for_error(response, "progress")
    progress = _parse_progress_text(text)
    if progress is None:
        raise ProtocolError(
            f"Unrecognized progress reply: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )
    return progress


def parse_manual_focus(response: str) -> Optional[int]:
    """
    Parse the reply to a manual focus query.

    Returns:
        Remaining autofocus retries if focus is requested, None if idle
    """
    text = check_for_error(response, "reqmanf")
    if text.upper().startswith("IDLE"):
        return None
    match = _MANUAL_FOCUS_NEEDED.match(text)
    if match is None:
        raise ProtocolError(
            f"Unrecognized manual focus reply: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )
    return int(match.group(1))


def parse_exposures(text: str) -> Dict[float, float]:
    """
    Parse ``angle=exposure`` pairs separated by commas.

    ``angle:exposure`` pairs are accepted too. Malformed pairs are skipped
    with a warning.
    """
    exposures: Dict[float, float] = {}
    for pair in text.split(','):
        pair = pair.strip()
        if not pair:
            continue
        sep = '=' if '=' in pair else ':'
        angle, _, exposure = pair.partition(sep)
        try:
            exposures[float(angle)] = float(exposure)
        except ValueError:
            logger.warning(f"Skipping malformed angle/exposure pair: {pair!r}")
    return exposures


def parse_status(response: str) -> StatusReport:
    """
    Parse a status reply.

    ``FAILED`` replies describe the acquisition, not the request, so they
    produce a FAILED report instead of raising. Other error prefixes raise
    HardwareError.

    Raises:
        HardwareError: If the server could not report a status
        ProtocolError: If the state name is unknown
    """
    text = response.strip()
    upper = text.upper()

    if upper.startswith("FAILED"):
        head, _, tail = text.partition('|')
        message = head[len("FAILED"):].lstrip(':').strip() or None
        values = _parse_key_values(tail) if tail else {}
        return _build_report(AcquisitionStatus.FAILED, values, text,
                             message=message or values.get('message'))

    check_for_error(text, "status")

    head, _, tail = text.partition('|')
    name, _, detail = head.partition(':')
    status = _STATUS_NAMES.get(name.strip().upper())
    if status is None:
        raise ProtocolError(
            f"Unrecognized status reply: {text!r}",
            response=text,
            error_code=ErrorCodes.UNEXPECTED_RESPONSE
        )
    values = _parse_key_values(tail) if tail else {}
    message = values.get('message') or (detail.strip() or None)
    return _build_report(status, values, text, message=message)


def _build_report(status: AcquisitionStatus, values: Dict[str, str], raw: str,
                  message: Optional[str] = None) -> StatusReport:
    progress = None
    if 'progress' in values:
        progress = _parse_progress_text(values['progress'])
        if progress is None:
            logger.warning(f"Ignoring malformed progress in status: {values['progress']!r}")

    retries = None
    if 'retries' in values:
        try:
            retries = int(values['retries'])
        except ValueError:
            logger.warning(f"Ignoring malformed retry count in status: {values['retries']!r}")

    final_z = None
    if 'final_z' in values:
        try:
            final_z = float(values['final_z'])
        except ValueError:
            logger.warning(f"Ignoring malformed final_z in status: {values['final_z']!r}")

    exposures = parse_exposures(values['final_exposures']) if 'final_exposures' in values else {}

    return StatusReport(
        status=status,
        message=message,
        progress=progress,
        manual_focus_retries=retries,
        final_z=final_z,
        final_exposures=exposures,
        raw=raw,
    )


def _parse_key_values(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for part in text.split('|'):
        key, sep, value = part.partition(':')
        if not sep:
            logger.debug(f"Ignoring status field without value: {part!r}")
            continue
        values[key.strip().lower()] = value.strip()
    return values


def _parse_progress_text(text: str) -> Optional[AcquisitionProgress]:
    match = _PROGRESS.match(text)
    if match is None:
        return None
    return AcquisitionProgress(int(match.group(1)), int(match.group(2)))
