"""
Signature verification for sign-in messages.

Verifiers report a tagged outcome rather than raising, so the handshake
engine can map each outcome onto a rejection reason.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from .exceptions import HandshakeError
from .key_manager import KeyManager
from .protocol import SignInMessage


class VerificationStatus(str, Enum):
    """Outcome of a signature verification."""
    VALID = "valid"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED_OR_UNKNOWN_NONCE = "expired_or_unknown_nonce"
    ERROR = "error"


@dataclass
class VerificationResult:
    """Result of verifying one signed message."""
    status: VerificationStatus
    detail: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == VerificationStatus.VALID


class SignatureVerifier(Protocol):
    """Checks that a message was signed by the address it names."""

    async def verify(
        self,
        message: str,
        signature: str,
        expected_nonce: str
    ) -> VerificationResult:
        ...


class Ed25519SignatureVerifier:
    """
    Verifies ed25519 signatures over sign-in messages.

    The signer is the address inside the message. Besides the signature, the
    nonce must match the one the caller expects and the message must be
    inside its expiration/not-before window.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def verify(
        self,
        message: str,
        signature: str,
        expected_nonce: str
    ) -> VerificationResult:
        try:
            parsed = SignInMessage.parse(message)
        except HandshakeError as e:
            return VerificationResult(VerificationStatus.ERROR, str(e))

        if parsed.nonce != expected_nonce:
            return VerificationResult(VerificationStatus.EXPIRED_OR_UNKNOWN_NONCE, "nonce mismatch")

        now = self._clock()
        expiration_time = parsed.get_expiration_time()
        if expiration_time is not None and not expiration_time > now:
            return VerificationResult(VerificationStatus.EXPIRED_OR_UNKNOWN_NONCE, "message expired")

        not_before = parsed.get_not_before()
        if not_before is not None and now < not_before:
            return VerificationResult(VerificationStatus.ERROR, "message not yet valid")

        if not KeyManager.is_valid_address(parsed.address):
            return VerificationResult(VerificationStatus.INVALID_SIGNATURE, "malformed address")

        if not KeyManager.verify_signature(parsed.address, signature, message):
            return VerificationResult(VerificationStatus.INVALID_SIGNATURE)

        return VerificationResult(VerificationStatus.VALID)
