"""
Core layer for microscope server communication.

This package contains the wire protocol pieces: command verbs, the message
encoder, reply parsing, the error framework and the Transport that owns
the single server connection.

Only the error framework is re-exported here; import the encoder and the
transport from their modules (models depend on this package).
"""

from .errors import (
    ScopeError,
    ConnectionError,
    ProtocolError,
    HardwareError,
    ConfigurationError,
    ValidationError,
    TimeoutError,
    ErrorCodes,
)

__all__ = [
    'ScopeError',
    'ConnectionError',
    'ProtocolError',
    'HardwareError',
    'ConfigurationError',
    'ValidationError',
    'TimeoutError',
    'ErrorCodes',
]
