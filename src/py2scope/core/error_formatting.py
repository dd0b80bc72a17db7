"""
Presentation of errors for the terminal, log files and JSON output.

The command-line interface prints ScopeError instances through
ErrorFormatter.format_for_user; anything else is shown generically.
"""

import json
import traceback
from datetime import datetime
from typing import Dict, Any, Union

from py2scope.core.errors import (
    ScopeError,
    ConnectionError,
    ConfigurationError,
    ErrorCodes,
)


class ErrorFormatter:
    """Render exceptions as text, dicts or JSON, optionally with ANSI colour."""

    COLORS = {
        'RED': '\033[91m',
        'YELLOW': '\033[93m',
        'RESET': '\033[0m'
    }

    # First matching class wins; everything else is 'error'
    SEVERITIES = (
        (ConnectionError, 'critical'),
        (ConfigurationError, 'warning'),
    )

    def __init__(self, use_colors: bool = False):
        self.use_colors = use_colors

    def get_severity(self, error: Exception) -> str:
        """Return 'critical', 'error' or 'warning' for an exception."""
        for error_class, severity in self.SEVERITIES:
            if isinstance(error, error_class):
                return severity
        return 'error'

    def colorize(self, text: str, color: str) -> str:
        if not self.use_colors or color not in self.COLORS:
            return text
        return f"{self.COLORS[color]}{text}{self.COLORS['RESET']}"

    def format_for_user(self, error: Exception) -> str:
        """Message and suggestions; red for connection problems, yellow otherwise."""
        if isinstance(error, ScopeError):
            text = error.format_user_message()
        else:
            text = f"An error occurred: {error}"
        color = 'RED' if self.get_severity(error) == 'critical' else 'YELLOW'
        return self.colorize(text, color)

    def format_for_log(self, error: Exception, include_trace: bool = True) -> str:
        """
        Detailed single-entry form for log files.

        Args:
            error: The error to format
            include_trace: Append the active traceback for non-library errors
        """
        if isinstance(error, ScopeError):
            return error.format_log_message()
        text = f"{type(error).__name__}: {error}"
        if include_trace:
            text += f"\nStack trace:\n{traceback.format_exc()}"
        return text

    def format_for_dict(self, error: Exception) -> Dict[str, Any]:
        if not isinstance(error, ScopeError):
            return {
                'title': 'Error',
                'message': str(error),
                'code': ErrorCodes.UNKNOWN_ERROR,
                'suggestions': [],
                'details': {'type': type(error).__name__},
                'severity': 'error',
            }
        # HardwareError -> "Hardware Error"
        title = type(error).__name__.replace('Error', ' Error')
        return {
            'title': title,
            'message': error.message,
            'code': error.error_code,
            'suggestions': list(error.suggestions),
            'details': error.context or None,
            'severity': self.get_severity(error),
        }

    def format_for_json(self, error: Exception) -> str:
        if isinstance(error, ScopeError):
            payload = error.to_dict()
        else:
            payload = {
                'error_type': type(error).__name__,
                'message': str(error),
                'timestamp': datetime.now().isoformat(),
            }
        return json.dumps(payload, indent=2, default=str)


_FORMATS = {
    'user': ErrorFormatter.format_for_user,
    'log': ErrorFormatter.format_for_log,
    'dict': ErrorFormatter.format_for_dict,
    'json': ErrorFormatter.format_for_json,
}


def format_error(error: Exception, format_type: str = 'user') -> Union[str, Dict]:
    """
    Format an error with a default ErrorFormatter.

    Args:
        error: The error to format
        format_type: One of 'user', 'log', 'dict' or 'json'

    Raises:
        ValueError: If format_type is not recognized
    """
    try:
        method = _FORMATS[format_type]
    except KeyError:
        raise ValueError(f"Unknown format type: {format_type}") from None
    return method(ErrorFormatter(), error)
