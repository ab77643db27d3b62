"""
Exception classes and error taxonomy for the handshake authentication engine.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Typed reasons a handshake operation can fail."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CONFIG = "invalid_config"
    INVALID_DOMAIN = "invalid_domain"
    INVALID_STATEMENT = "invalid_statement"
    INVALID_VERSION = "invalid_version"
    INVALID_SIGNATURE = "invalid_signature"
    MESSAGE_EXPIRED_OR_REPLAYED = "message_expired_or_replayed"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    UNKNOWN_ERROR = "unknown_error"


class HandshakeError(Exception):
    """Base exception for all handshake errors."""

    def __init__(self, message: str, error_code: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class ConfigurationError(HandshakeError):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, ErrorKind.INVALID_CONFIG)
        self.field = field


class InvalidRequestError(HandshakeError):
    """Raised when a challenge request is malformed."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, ErrorKind.INVALID_REQUEST)
        self.field = field


class StorageUnavailableError(HandshakeError):
    """Raised when the nonce store cannot be reached."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.STORAGE_UNAVAILABLE)


class KeyManagementError(HandshakeError):
    """Raised when key operations fail."""
    pass


class InvalidKeyError(KeyManagementError):
    """Raised when a key or address is invalid or corrupted."""
    pass


class KeyNotFoundError(KeyManagementError):
    """Raised when a required key is not found."""
    pass


class ValidationError(HandshakeError):
    """Raised when a sign-in message cannot be parsed or composed."""
    pass


class AuthenticationError(HandshakeError):
    """Raised by the host adapter when a handshake is rejected."""

    def __init__(
        self,
        message: str,
        failure_reason: ErrorKind = ErrorKind.UNKNOWN_ERROR
    ) -> None:
        super().__init__(message, failure_reason)
        self.failure_reason = failure_reason
