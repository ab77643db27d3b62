"""
Integration tests for the full sign-in handshake flow.
"""

import asyncio
import json
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from handshake_auth.adapter import initialize_adapter
from handshake_auth.audit import LogLevel, setup_audit_logger
from handshake_auth.auth_engine import HandshakeEngine, HandshakeState
from handshake_auth.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    InvalidRequestError,
)
from handshake_auth.nonce_store import MemoryNonceStore, SQLiteNonceStore
from handshake_auth.protocol import MessageChallengeRequest, NonceExpirationChallengeRequest


HOST_OPTIONS = {
    "domain": "example.com",
    "statement": "Sign in",
    "version": "1",
    "preventReplay": True,
    "messageValidityInMs": 60000,
}


@pytest.fixture
def audit_logger():
    """Setup audit logger for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        log_path = Path(tmpdir) / "audit.log"
        logger = setup_audit_logger(
            enabled=True,
            log_level=LogLevel.DEBUG,
            log_file_path=log_path
        )
        yield logger
        logger.close()


class TestHandshakeFlow:
    """Test complete handshake flows against the engine."""

    @pytest.mark.asyncio
    async def test_client_assembled_message(
        self, handshake_config, keypair, clock, compose_message, sign_proof
    ):
        """Test nonce-expiration challenge followed by a client-built proof."""
        store = MemoryNonceStore()
        engine = HandshakeEngine(handshake_config, nonce_store=store, clock=clock)

        response = await engine.issue_challenge(NonceExpirationChallengeRequest())

        assert response.expiration_time == "2024-01-01T12:01:00.000Z"
        records = await store.list_records()
        assert len(records) == 1
        assert records[0].token == response.nonce
        assert records[0].expires_at == clock() + timedelta(seconds=60)

        clock.advance(seconds=5)
        message = compose_message(keypair, response.nonce, clock(), response.expiration_time)
        result = await engine.validate_handshake(sign_proof(keypair, message, response.nonce))

        assert result.success
        assert result.address == keypair.address
        assert await store.list_records() == []

    @pytest.mark.asyncio
    async def test_server_composed_message(self, handshake_config, keypair, clock, sign_proof):
        """Test message challenge followed by signing the returned text verbatim."""
        engine = HandshakeEngine(handshake_config, nonce_store=MemoryNonceStore(), clock=clock)

        response = await engine.issue_challenge(MessageChallengeRequest(
            address=keypair.address, uri="https://example.com/login", chain_id=1
        ))
        result = await engine.validate_handshake(
            sign_proof(keypair, response.message, response.nonce)
        )

        assert result.success
        assert result.state == HandshakeState.NONCE_CONSUMED
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_challenge_expires_unused(
        self, handshake_config, keypair, clock, compose_message, sign_proof
    ):
        """Test a proof presented after the validity window closed."""
        engine = HandshakeEngine(handshake_config, nonce_store=MemoryNonceStore(), clock=clock)

        response = await engine.issue_challenge(NonceExpirationChallengeRequest())
        message = compose_message(keypair, response.nonce, clock(), response.expiration_time)
        clock.advance(seconds=61)

        result = await engine.validate_handshake(sign_proof(keypair, message, response.nonce))
        assert result.failure_reason == ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED
        assert await engine.sweep_expired() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    async def test_concurrent_submissions_single_success(
        self, handshake_config, keypair, clock, sign_proof, tmp_path, backend
    ):
        """Test that concurrent submissions of one proof succeed exactly once."""
        if backend == "sqlite":
            store = SQLiteNonceStore(tmp_path / "nonces.db")
            await store.setup()
        else:
            store = MemoryNonceStore()
        engine = HandshakeEngine(handshake_config, nonce_store=store, clock=clock)

        response = await engine.issue_challenge(MessageChallengeRequest(
            address=keypair.address, uri="https://example.com/login", chain_id=1
        ))
        proof = sign_proof(keypair, response.message, response.nonce)

        results = await asyncio.gather(*[engine.validate_handshake(proof) for _ in range(10)])

        successes = [result for result in results if result.success]
        assert len(successes) == 1
        assert all(
            result.failure_reason == ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED
            for result in results if not result.success
        )

    @pytest.mark.asyncio
    async def test_shared_sqlite_store_across_engines(
        self, handshake_config, keypair, clock, sign_proof, tmp_path
    ):
        """Test that a nonce issued by one instance is consumable by another."""
        path = tmp_path / "nonces.db"
        issuing = HandshakeEngine(handshake_config, nonce_store=SQLiteNonceStore(path), clock=clock)
        await issuing.nonce_store.setup()
        validating = HandshakeEngine(
            handshake_config, nonce_store=SQLiteNonceStore(path), clock=clock
        )

        response = await issuing.issue_challenge(MessageChallengeRequest(
            address=keypair.address, uri="https://example.com/login", chain_id=1
        ))
        proof = sign_proof(keypair, response.message, response.nonce)

        assert (await validating.validate_handshake(proof)).success
        assert not (await issuing.validate_handshake(proof)).success


class TestAdapterFlow:
    """Test the host-facing adapter end to end."""

    @pytest.mark.asyncio
    async def test_challenge_and_validate(
        self, keypair, clock, compose_message, sign_proof, audit_logger
    ):
        """Test a host driving the handshake with plain dictionaries."""
        adapter = initialize_adapter(HOST_OPTIONS, audit_logger=audit_logger, clock=clock)

        challenge = await adapter.challenge({"responseType": "nonce-expiration"})
        assert set(challenge) == {"nonce", "expirationTime"}

        message = compose_message(keypair, challenge["nonce"], clock(), challenge["expirationTime"])
        proof = sign_proof(keypair, message, challenge["nonce"])

        assert await adapter.validate_auth_data(proof.model_dump()) == {"address": keypair.address}

        with pytest.raises(AuthenticationError) as exc_info:
            await adapter.validate_auth_data(proof.model_dump())
        assert str(exc_info.value) == "Message expired"
        assert exc_info.value.failure_reason == ErrorKind.MESSAGE_EXPIRED_OR_REPLAYED

        counts = audit_logger.get_statistics()["event_counts"]
        assert counts["challenge_issued"] == 1
        assert counts["handshake_success"] == 1
        assert counts["handshake_failure"] == 1
        assert counts["config_loaded"] == 1

    @pytest.mark.asyncio
    async def test_message_challenge(self, keypair, clock, sign_proof):
        """Test the camelCase message request."""
        adapter = initialize_adapter(HOST_OPTIONS, clock=clock)

        challenge = await adapter.challenge({
            "address": keypair.address,
            "uri": "https://example.com/login",
            "chainId": 1,
        })
        proof = sign_proof(keypair, challenge["message"], challenge["nonce"])

        assert await adapter.validate_auth_data(proof.model_dump()) == {"address": keypair.address}

    @pytest.mark.asyncio
    async def test_wrong_domain_message(self, keypair, clock, compose_message, sign_proof):
        """Test the rejection message for a foreign domain."""
        adapter = initialize_adapter(HOST_OPTIONS, clock=clock)
        challenge = await adapter.challenge({"responseType": "nonce-expiration"})

        message = compose_message(
            keypair, challenge["nonce"], clock(), challenge["expirationTime"], domain="evil.com"
        )
        with pytest.raises(AuthenticationError) as exc_info:
            await adapter.validate_auth_data(
                sign_proof(keypair, message, challenge["nonce"]).model_dump()
            )
        assert str(exc_info.value) == "Invalid domain"

    @pytest.mark.asyncio
    async def test_invalid_challenge_request(self, clock, audit_logger):
        """Test that malformed host requests are rejected and audited."""
        adapter = initialize_adapter(HOST_OPTIONS, audit_logger=audit_logger, clock=clock)

        with pytest.raises(InvalidRequestError) as exc_info:
            await adapter.challenge({"address": "0x00", "uri": "https://x", "chainId": 1})
        assert exc_info.value.field == "address"

        with pytest.raises(InvalidRequestError):
            await adapter.challenge("nonce-expiration")

        assert audit_logger.get_statistics()["event_counts"]["challenge_rejected"] == 1

    def test_invalid_options(self):
        """Test that bad host options fail adapter construction."""
        with pytest.raises(ConfigurationError) as exc_info:
            initialize_adapter({**HOST_OPTIONS, "messageValidityInMs": -1})
        assert exc_info.value.field == "message_validity_ms"

        with pytest.raises(ConfigurationError):
            initialize_adapter(None)

    @pytest.mark.asyncio
    async def test_app_id_is_not_checked(self):
        """Test that app id validation is a no-op."""
        adapter = initialize_adapter(HOST_OPTIONS)
        assert await adapter.validate_app_id() is None

    @pytest.mark.asyncio
    async def test_audit_file_excludes_nonce(self, keypair, clock, compose_message, sign_proof):
        """Test that the audit trail records outcomes without nonce values."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.log"
            logger = setup_audit_logger(log_level=LogLevel.DEBUG, log_file_path=log_path)
            adapter = initialize_adapter(HOST_OPTIONS, audit_logger=logger, clock=clock)

            challenge = await adapter.challenge({"responseType": "nonce-expiration"})
            message = compose_message(
                keypair, challenge["nonce"], clock(), challenge["expirationTime"]
            )
            await adapter.validate_auth_data(
                sign_proof(keypair, message, challenge["nonce"]).model_dump()
            )
            logger.close()

            lines = log_path.read_text().splitlines()

        events = [json.loads(line) for line in lines]
        assert [event["event_type"] for event in events] == [
            "config_loaded", "challenge_issued", "handshake_success"
        ]
        assert all(challenge["nonce"] not in line for line in lines)
