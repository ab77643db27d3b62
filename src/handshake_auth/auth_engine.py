"""
Authentication Engine for the handshake authentication system.

Issues sign-in challenges, checks that a presented proof is bound to this
server's domain, statement and version, delegates signature verification and
consumes the challenge nonce so a proof is accepted at most once.
"""

import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .audit import AuditLogger
from .config import HandshakeConfig, validate_config
from .exceptions import ErrorKind, HandshakeError, InvalidRequestError, StorageUnavailableError
from .key_manager import KeyManager
from .nonce_store import MemoryNonceStore, NonceStore
from .protocol import (
    ChallengeResponse,
    MessageChallengeRequest,
    MessageChallengeResponse,
    NonceExpirationChallengeRequest,
    NonceExpirationChallengeResponse,
    ProofEnvelope,
    ProtocolHandler,
    SignInMessage,
    format_timestamp,
)
from .verifier import Ed25519SignatureVerifier, SignatureVerifier, VerificationStatus


NONCE_BYTES = 16

_VERIFIER_REJECTIONS = {
    VerificationStatus.INVALID_SIGNATURE: ErrorKind.INVALID_SIGNATURE,
    VerificationStatus.EXPIRED_OR_UNKNOWN_NONCE: ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED,
    VerificationStatus.ERROR: ErrorKind.UNKNOWN_ERROR,
}

_REJECTION_REASONS = [
    ErrorKind.INVALID_DOMAIN,
    ErrorKind.INVALID_STATEMENT,
    ErrorKind.INVALID_VERSION,
    ErrorKind.INVALID_SIGNATURE,
    ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED,
    ErrorKind.UNKNOWN_ERROR,
]


def generate_nonce() -> str:
    """Generate a 128-bit alphanumeric nonce from the system CSPRNG."""
    return secrets.token_hex(NONCE_BYTES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HandshakeState(str, Enum):
    """States of a single handshake validation."""
    START = "start"
    BINDING_CHECKED = "binding_checked"
    SIGNATURE_VERIFIED = "signature_verified"
    NONCE_CONSUMED = "nonce_consumed"
    REJECTED = "rejected"


@dataclass
class BindingResult:
    """Outcome of comparing a proof's bound fields with configuration."""
    ok: bool
    failure_reason: Optional[ErrorKind] = None
    message: Optional[SignInMessage] = None


@dataclass
class HandshakeResult:
    """Result of a handshake validation."""
    success: bool
    state: HandshakeState
    address: Optional[str] = None
    failure_reason: Optional[ErrorKind] = None
    duration_ms: Optional[float] = None


class BindingValidator:
    """Pure check that a proof echoes the configured binding fields."""

    def __init__(self, config: HandshakeConfig):
        self.config = config

    def check_binding(self, proof: ProofEnvelope) -> BindingResult:
        """
        Parse the proof's message and compare domain, statement and version.

        Args:
            proof: Submitted proof envelope

        Returns:
            BindingResult; the first mismatching field decides the reason
        """
        try:
            message = SignInMessage.parse(proof.message)
        except HandshakeError:
            return BindingResult(ok=False, failure_reason=ErrorKind.UNKNOWN_ERROR)

        if message.domain != self.config.domain:
            return BindingResult(ok=False, failure_reason=ErrorKind.INVALID_DOMAIN, message=message)
        if message.statement != self.config.statement:
            return BindingResult(ok=False, failure_reason=ErrorKind.INVALID_STATEMENT, message=message)
        if message.version != self.config.version:
            return BindingResult(ok=False, failure_reason=ErrorKind.INVALID_VERSION, message=message)

        return BindingResult(ok=True, message=message)


class HandshakeEngine:
    """Core engine implementing challenge issuance and proof validation."""

    def __init__(
        self,
        config: Union[HandshakeConfig, Dict[str, Any]],
        nonce_store: Optional[NonceStore] = None,
        verifier: Optional[SignatureVerifier] = None,
        address_validator: Optional[Callable[[str], bool]] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the handshake engine.

        Args:
            config: Handshake settings; validated here, construction fails on error
            nonce_store: Store for replay-prevention records (in-memory if omitted)
            verifier: Signature verification capability
            address_validator: Predicate for well-formed addresses
            audit_logger: Optional audit logger for handshake events
            clock: Source of the current UTC time
        """
        self.config = validate_config(config)
        self.clock = clock or _utcnow
        self.nonce_store = nonce_store if nonce_store is not None else MemoryNonceStore()
        self.verifier = verifier or Ed25519SignatureVerifier(clock=self.clock)
        self.address_validator = address_validator or KeyManager.is_valid_address
        self.audit_logger = audit_logger
        self.binding_validator = BindingValidator(self.config)

        if self.audit_logger:
            self.audit_logger.log_config_loaded(self.config.domain, self.config.prevent_replay)

        self._stats_lock = threading.Lock()
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        stats = {
            "challenges_issued": 0,
            "challenges_rejected": 0,
            "handshake_attempts": 0,
            "handshake_successes": 0,
            "handshake_failures": 0,
        }
        for reason in _REJECTION_REASONS:
            stats[f"rejected_{reason.value}"] = 0
        return stats

    def _count(self, *keys: str) -> None:
        with self._stats_lock:
            for key in keys:
                self.stats[key] += 1

    def _validate_message_request(self, request: MessageChallengeRequest) -> None:
        chain_id = request.chain_id
        if isinstance(chain_id, bool) or not isinstance(chain_id, int) or chain_id <= 0:
            raise InvalidRequestError("Invalid chainId", field="chain_id")
        if not self.address_validator(request.address):
            raise InvalidRequestError("Invalid address", field="address")
        if not isinstance(request.uri, str) or not request.uri.strip() or "\n" in request.uri:
            raise InvalidRequestError("Invalid uri", field="uri")

    async def issue_challenge(self, request: Any) -> ChallengeResponse:
        """
        Issue a fresh challenge.

        Args:
            request: A challenge request variant, or raw request data

        Returns:
            Composed message and nonce, or nonce and expiration only

        Raises:
            InvalidRequestError: If the request is malformed
            StorageUnavailableError: If the replay guard record could not be written
        """
        start_time = time.time()

        try:
            if isinstance(request, (dict, str, bytes)):
                request = ProtocolHandler.parse_challenge_request(request)
            elif not isinstance(request, (MessageChallengeRequest, NonceExpirationChallengeRequest)):
                raise InvalidRequestError("Unsupported challenge request", field="response_type")
            if isinstance(request, MessageChallengeRequest):
                self._validate_message_request(request)
        except InvalidRequestError as e:
            self._count("challenges_rejected")
            if self.audit_logger:
                self.audit_logger.log_challenge_rejected(e.field, str(e))
            raise

        nonce = generate_nonce()
        now = self.clock()
        expires_at = now + self.config.message_validity

        if self.config.prevent_replay:
            try:
                await self.nonce_store.create(nonce, expires_at)
            except Exception as e:
                if self.audit_logger:
                    self.audit_logger.log_storage_error("create", str(e))
                if isinstance(e, StorageUnavailableError):
                    raise
                raise StorageUnavailableError(f"Failed to record challenge nonce: {e}") from e

        self._count("challenges_issued")
        duration_ms = (time.time() - start_time) * 1000

        if isinstance(request, MessageChallengeRequest):
            message = SignInMessage(
                domain=self.config.domain,
                address=request.address,
                statement=self.config.statement,
                uri=request.uri,
                version=self.config.version,
                chain_id=request.chain_id,
                nonce=nonce,
                issued_at=format_timestamp(now),
                expiration_time=format_timestamp(expires_at),
            )
            response = MessageChallengeResponse(message=message.prepare_message(), nonce=nonce)
            address = request.address
        else:
            response = NonceExpirationChallengeResponse(
                nonce=nonce,
                expiration_time=format_timestamp(expires_at)
            )
            address = None

        if self.audit_logger:
            self.audit_logger.log_challenge_issued(
                domain=self.config.domain,
                response_type=request.response_type,
                address=address,
                duration_ms=duration_ms
            )

        return response

    def check_binding(self, proof: ProofEnvelope) -> BindingResult:
        """Compare a proof's bound fields with configuration."""
        return self.binding_validator.check_binding(proof)

    async def validate_handshake(self, proof: Any) -> HandshakeResult:
        """
        Validate a submitted proof.

        Binding fields are checked before the signature, and the nonce is
        consumed last, so a rejected proof never burns its challenge.

        Args:
            proof: ProofEnvelope or raw proof data

        Returns:
            HandshakeResult carrying the verified address or one rejection reason
        """
        start_time = time.time()
        self._count("handshake_attempts")

        def reject(reason: ErrorKind) -> HandshakeResult:
            duration_ms = (time.time() - start_time) * 1000
            self._count("handshake_failures", f"rejected_{reason.value}")
            if self.audit_logger:
                self.audit_logger.log_handshake_failure(
                    failure_reason=reason.value,
                    domain=self.config.domain,
                    duration_ms=duration_ms
                )
            return HandshakeResult(
                success=False,
                state=HandshakeState.REJECTED,
                failure_reason=reason,
                duration_ms=duration_ms
            )

        if not isinstance(proof, ProofEnvelope):
            try:
                proof = ProtocolHandler.parse_proof(proof)
            except HandshakeError:
                return reject(ErrorKind.UNKNOWN_ERROR)

        state = HandshakeState.START

        binding = self.check_binding(proof)
        if not binding.ok:
            return reject(binding.failure_reason)
        state = HandshakeState.BINDING_CHECKED

        try:
            verification = await self.verifier.verify(proof.message, proof.signature, proof.nonce)
            status = verification.status
        except Exception:
            status = VerificationStatus.ERROR
        if status != VerificationStatus.VALID:
            return reject(_VERIFIER_REJECTIONS.get(status, ErrorKind.UNKNOWN_ERROR))

        address = binding.message.address
        if proof.address and proof.address != address:
            return reject(ErrorKind.INVALID_SIGNATURE)
        state = HandshakeState.SIGNATURE_VERIFIED

        if self.config.prevent_replay:
            try:
                consumed = await self.nonce_store.consume(proof.nonce, self.clock())
            except Exception as e:
                if self.audit_logger:
                    self.audit_logger.log_storage_error("consume", str(e))
                return reject(ErrorKind.UNKNOWN_ERROR)
            if not consumed:
                return reject(ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED)
            state = HandshakeState.NONCE_CONSUMED

        duration_ms = (time.time() - start_time) * 1000
        self._count("handshake_successes")
        if self.audit_logger:
            self.audit_logger.log_handshake_success(address, self.config.domain, duration_ms)

        return HandshakeResult(
            success=True,
            state=state,
            address=address,
            duration_ms=duration_ms
        )

    async def sweep_expired(self) -> int:
        """Delete nonce records whose expiry has passed."""
        try:
            count = await self.nonce_store.delete_all_expired(self.clock())
        except Exception as e:
            if self.audit_logger:
                self.audit_logger.log_storage_error("sweep", str(e))
            if isinstance(e, StorageUnavailableError):
                raise
            raise StorageUnavailableError(f"Failed to sweep expired nonces: {e}") from e

        if self.audit_logger:
            self.audit_logger.log_nonces_swept(count)
        return count

    def get_statistics(self) -> Dict[str, Any]:
        """Get handshake statistics."""
        with self._stats_lock:
            stats = self.stats.copy()

        stats["success_rate"] = (
            stats["handshake_successes"] / max(stats["handshake_attempts"], 1)
        ) * 100
        return stats

    def reset_statistics(self) -> None:
        """Reset handshake statistics."""
        with self._stats_lock:
            self.stats = self._empty_stats()

