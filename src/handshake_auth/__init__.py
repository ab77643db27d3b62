"""
Handshake Authentication

A challenge-response sign-in handshake proving control of an ed25519 key
pair, with nonce-based replay prevention.
"""

__version__ = "1.0.0"

from .exceptions import (
    ErrorKind,
    HandshakeError,
    AuthenticationError,
    ConfigurationError,
    InvalidRequestError,
    StorageUnavailableError,
    ValidationError,
)
from .config import HandshakeConfig, validate_config
from .auth_engine import HandshakeEngine, HandshakeResult, HandshakeState
from .adapter import HandshakeAdapter, initialize_adapter

__all__ = [
    "__version__",
    "ErrorKind",
    "HandshakeError",
    "AuthenticationError",
    "ConfigurationError",
    "InvalidRequestError",
    "StorageUnavailableError",
    "ValidationError",
    "HandshakeConfig",
    "validate_config",
    "HandshakeEngine",
    "HandshakeResult",
    "HandshakeState",
    "HandshakeAdapter",
    "initialize_adapter",
]
