"""
Custom exception classes for canstream.

Every failure raised by the socket wrapper is a ``SocketCanError`` carrying a
stable ``code`` so callers can branch programmatically (for example
``LISTENING_ERROR`` vs ``RECEIVE_TIMEOUT``) instead of parsing messages.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes carried by ``SocketCanError``."""

    NOT_OPEN = 'NOT_OPEN'
    SOCKET_OPEN_ERROR = 'SOCKET_OPEN_ERROR'
    SOCKET_CLOSE_ERROR = 'SOCKET_CLOSE_ERROR'
    SEND_ERROR = 'SEND_ERROR'
    RECEIVE_ERROR = 'RECEIVE_ERROR'
    RECEIVE_TIMEOUT = 'RECEIVE_TIMEOUT'
    INVALID_ID = 'INVALID_ID'
    INVALID_DATA_LENGTH = 'INVALID_DATA_LENGTH'
    INVALID_BYTE = 'INVALID_BYTE'
    INVALID_PARAMETERS = 'INVALID_PARAMETERS'
    INVALID_FORMAT = 'INVALID_FORMAT'
    INVALID_FILTER = 'INVALID_FILTER'
    FILTER_ERROR = 'FILTER_ERROR'
    PLATFORM_NOT_SUPPORTED = 'PLATFORM_NOT_SUPPORTED'
    INTERFACE_NOT_FOUND = 'INTERFACE_NOT_FOUND'
    PERMISSION_DENIED = 'PERMISSION_DENIED'
    ALREADY_LISTENING = 'ALREADY_LISTENING'
    LISTENING_ERROR = 'LISTENING_ERROR'
    READER_BUSY = 'READER_BUSY'
    OBSERVER_ERROR = 'OBSERVER_ERROR'

    def __str__(self) -> str:
        return self.value


class CanStreamException(Exception):
    """Base exception for all canstream errors.

    All custom exceptions inherit from this class so callers can catch every
    package-specific error while preserving the hierarchy.
    """
    pass


class SocketCanError(CanStreamException):
    """Uniform error shape for socket, validation and reception failures.

    Attributes:
        code: Stable ``ErrorCode`` identifying the failure
        operation: Operation that failed (e.g. 'open', 'send', 'receive')
        original_error: The underlying exception that caused this error
    """

    def __init__(self, message: str, code: ErrorCode, operation: str = None,
                 original_error: Exception = None):
        """Initialize SocketCanError.

        Args:
            message: Human-readable error message
            code: Error code
            operation: Operation that failed (optional)
            original_error: Underlying exception (optional)
        """
        super().__init__(message)
        self.code = ErrorCode(code)
        self.operation = operation
        self.original_error = original_error

    def __repr__(self) -> str:
        return f"SocketCanError(code={self.code.value!r}, message={str(self)!r})"


class PlatformNotSupported(CanStreamException):
    """Raised by a native primitive that cannot run on the current platform."""
    pass


class ConfigurationError(CanStreamException):
    """Exception raised for invalid configuration values.

    Attributes:
        setting_name: Name of the setting that is invalid
        setting_value: The invalid value
        expected: Description of expected value
    """

    def __init__(self, message: str, setting_name: str = None, setting_value: Any = None,
                 expected: Optional[str] = None):
        super().__init__(message)
        self.setting_name = setting_name
        self.setting_value = setting_value
        self.expected = expected
