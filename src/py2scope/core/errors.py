"""
Error hierarchy for py2scope.

Every error raised by the transport, the message encoder, the reply parser
and the acquisition monitor derives from ScopeError, so callers can catch
the whole library with a single except clause.  The names ConnectionError
and TimeoutError intentionally shadow the builtins inside this package; a
builtin socket error is always wrapped before it reaches the caller.

Error Code Ranges:
- 1000-1999: Connection errors
- 2000-2999: Protocol errors
- 3000-3999: Hardware errors (reported by the server)
- 6000-6999: Configuration errors
- 7000-7999: Validation errors
- 8000-8999: Timeout errors
- 9000: Unknown
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import traceback


class ErrorCodes:
    """Numeric codes attached to ScopeError instances."""

    # Connection
    CONNECTION_REFUSED = 1001
    CONNECTION_LOST = 1003
    NOT_CONNECTED = 1004
    RECONNECT_EXHAUSTED = 1005

    # Protocol
    UNEXPECTED_RESPONSE = 2001

    # Hardware
    SERVER_REPORTED = 3001

    # Configuration
    CONFIG_NOT_FOUND = 6001
    CONFIG_INVALID = 6002
    UNKNOWN_SETTING = 6003

    # Validation
    INVALID_PARAMETER = 7001
    MISSING_REQUIRED = 7003

    # Timeout
    RESPONSE_TIMEOUT = 8001
    ACQUISITION_STALLED = 8002

    UNKNOWN_ERROR = 9000


class ScopeError(Exception):
    """
    Base exception for all py2scope errors.

    Attributes:
        message: Text shown to the user; for HardwareError this is the
            server's reply verbatim
        error_code: One of ErrorCodes, or the class default
        context: Key/value details (verb, attempts, setting, ...)
        cause: The wrapped lower-level exception, if any
        suggestions: Next steps for the user
        timestamp: When the error was created
    """

    DEFAULT_CODE = ErrorCodes.UNKNOWN_ERROR
    CATEGORY: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.DEFAULT_CODE
        self.context = dict(context or {})
        self.cause = cause
        self.suggestions = list(suggestions or [])
        self.timestamp = datetime.now()

        if self.CATEGORY:
            self.context['category'] = self.CATEGORY

        self.stack_trace = None
        if cause is not None:
            self.__cause__ = cause
            self.context['original_error'] = str(cause)
            self.context['original_type'] = type(cause).__name__
            self.stack_trace = ''.join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

    def _add_context(self, **values: Any) -> None:
        """Record the non-None values in the context dict."""
        self.context.update({k: v for k, v in values.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view of the error, used by ErrorFormatter."""
        return {
            'error_type': type(self).__name__,
            'message': self.message,
            'code': self.error_code,
            'context': self.context,
            'suggestions': self.suggestions,
            'timestamp': self.timestamp.isoformat(),
            'cause': None if self.cause is None else str(self.cause),
            'stack_trace': self.stack_trace,
        }

    def format_user_message(self) -> str:
        """The message plus numbered suggestions, without codes or traces."""
        lines = [self.message]
        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            lines.extend(f"  {n}. {text}" for n, text in enumerate(self.suggestions, 1))
        return "\n".join(lines)

    def format_log_message(self) -> str:
        """Single-line form with code, context and cause for log files."""
        parts = [f"[{self.error_code}] {type(self).__name__}: {self.message}"]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.cause is not None:
            parts.append(f"Caused by: {self.cause}")
        if self.stack_trace:
            parts.append(f"Stack trace:\n{self.stack_trace}")
        return " | ".join(parts)


class ConnectionError(ScopeError):
    """Connect or reconnect failed, or the socket is not usable."""

    DEFAULT_CODE = ErrorCodes.CONNECTION_REFUSED
    CATEGORY = 'CONNECTION'

    def __init__(self, message: str, attempts: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self._add_context(attempts=attempts)


class ProtocolError(ScopeError):
    """A response could not be parsed into any recognized shape."""

    DEFAULT_CODE = ErrorCodes.UNEXPECTED_RESPONSE
    CATEGORY = 'PROTOCOL'

    def __init__(self, message: str, response: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.response = response
        self._add_context(response=response)


class HardwareError(ScopeError):
    """An error reported by the server; the message is the server's text."""

    DEFAULT_CODE = ErrorCodes.SERVER_REPORTED
    CATEGORY = 'HARDWARE'

    def __init__(self, message: str, command: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.command = command
        self._add_context(command=command or None)


class ConfigurationError(ScopeError):
    """Client configuration file or setting problem."""

    DEFAULT_CODE = ErrorCodes.CONFIG_NOT_FOUND
    CATEGORY = 'CONFIGURATION'

    def __init__(self, message: str, setting_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.setting_name = setting_name
        self._add_context(setting=setting_name or None)


class ValidationError(ScopeError):
    """
    A command descriptor or parameter failed validation.

    ``missing_fields`` lists every missing required field, in declaration
    order, so all of them can be fixed in one pass.  When it is given the
    code defaults to MISSING_REQUIRED.
    """

    DEFAULT_CODE = ErrorCodes.INVALID_PARAMETER
    CATEGORY = 'VALIDATION'

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        missing_fields: Optional[List[str]] = None,
        **kwargs
    ):
        if missing_fields and not kwargs.get('error_code'):
            kwargs['error_code'] = ErrorCodes.MISSING_REQUIRED
        super().__init__(message, **kwargs)
        self.field_name = field_name
        self.missing_fields = list(missing_fields or [])
        self._add_context(field=field_name or None,
                          missing_fields=self.missing_fields or None)


class TimeoutError(ScopeError):
    """A round trip or a monitored operation ran out of time."""

    DEFAULT_CODE = ErrorCodes.RESPONSE_TIMEOUT
    CATEGORY = 'TIMEOUT'

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds
        self._add_context(timeout_seconds=timeout_seconds)


def wrap_external_error(e: Exception, message: str, error_class=ScopeError, **context) -> ScopeError:
    """
    Wrap a non-library exception (socket, YAML, OS) in a ScopeError.

    Example:
        >>> try:
        ...     sock.connect(address)
        ... except OSError as e:
        ...     raise wrap_external_error(e, "Failed to connect",
        ...                               ConnectionError, host=host) from e
    """
    return error_class(message, cause=e, context=context)
