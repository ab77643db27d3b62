"""
Host-facing adapter for the handshake engine.

Accepts and returns plain dictionaries using the camelCase keys host
frameworks send, so the engine can sit behind any transport.
"""

from typing import Any, Callable, Dict, Optional

from .audit import AuditLogger
from .auth_engine import HandshakeEngine
from .config import HandshakeConfig, validate_config
from .exceptions import AuthenticationError, ConfigurationError, ErrorKind, InvalidRequestError
from .nonce_store import NonceStore
from .verifier import SignatureVerifier


OPTION_KEYS = {
    "domain": "domain",
    "statement": "statement",
    "version": "version",
    "preventReplay": "prevent_replay",
    "messageValidityInMs": "message_validity_ms",
}

CHALLENGE_KEYS = {
    "chainId": "chain_id",
    "responseType": "response_type",
}

REJECTION_MESSAGES = {
    ErrorKind.INVALID_DOMAIN: "Invalid domain",
    ErrorKind.INVALID_STATEMENT: "Invalid statement",
    ErrorKind.INVALID_VERSION: "Invalid version",
    ErrorKind.INVALID_SIGNATURE: "Invalid signature",
    ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED: "Message expired",
    ErrorKind.UNKNOWN_ERROR: "Auth failed unknown error",
}


def _rename_keys(data: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    return {mapping.get(key, key): value for key, value in data.items()}


class HandshakeAdapter:
    """Exposes challenge issuance and proof validation to a host application."""

    def __init__(self, engine: HandshakeEngine):
        self.engine = engine

    @property
    def config(self) -> HandshakeConfig:
        return self.engine.config

    async def challenge(self, challenge_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Issue a challenge for a host request.

        Raises:
            InvalidRequestError: If the request is malformed
            StorageUnavailableError: If the replay guard could not be recorded
        """
        if not isinstance(challenge_data, dict):
            raise InvalidRequestError("Challenge data must be an object")
        response = await self.engine.issue_challenge(_rename_keys(challenge_data, CHALLENGE_KEYS))
        return response.model_dump(by_alias=True)

    async def validate_auth_data(self, auth_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate submitted auth data.

        Returns:
            ``{"address": ...}`` for the verified signer

        Raises:
            AuthenticationError: Carrying the rejection reason
        """
        result = await self.engine.validate_handshake(auth_data)
        if not result.success:
            reason = result.failure_reason or ErrorKind.UNKNOWN_ERROR
            raise AuthenticationError(REJECTION_MESSAGES[reason], failure_reason=reason)
        return {"address": result.address}

    @staticmethod
    def validate_options(options: Optional[Dict[str, Any]]) -> HandshakeConfig:
        """Validate host options, raising ConfigurationError naming the bad field."""
        if not isinstance(options, dict):
            raise ConfigurationError("Options object is required")
        return validate_config(_rename_keys(options, OPTION_KEYS))

    async def validate_app_id(self) -> None:
        """Sign-in handshakes are not scoped to an application id."""
        return None


def initialize_adapter(
    options: Dict[str, Any],
    nonce_store: Optional[NonceStore] = None,
    verifier: Optional[SignatureVerifier] = None,
    audit_logger: Optional[AuditLogger] = None,
    clock: Optional[Callable] = None
) -> HandshakeAdapter:
    """Build an adapter from host options; fails fast on invalid options."""
    config = HandshakeAdapter.validate_options(options)
    engine = HandshakeEngine(
        config,
        nonce_store=nonce_store,
        verifier=verifier,
        audit_logger=audit_logger,
        clock=clock
    )
    return HandshakeAdapter(engine)
