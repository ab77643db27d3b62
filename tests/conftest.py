"""
Shared fixtures for handshake tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from handshake_auth.config import HandshakeConfig
from handshake_auth.key_manager import KeyManager
from handshake_auth.protocol import ProofEnvelope, SignInMessage, format_timestamp


T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handshake_options():
    """Raw handshake settings."""
    return {
        "domain": "example.com",
        "statement": "Sign in",
        "version": "1",
        "prevent_replay": True,
        "message_validity_ms": 60000,
    }


@pytest.fixture
def handshake_config(handshake_options):
    return HandshakeConfig(**handshake_options)


@pytest.fixture
def keypair():
    """Client key pair."""
    return KeyManager.generate_keypair()


def sign_proof(keypair, message: str, nonce: str) -> ProofEnvelope:
    """Sign a message and wrap it as a proof."""
    return ProofEnvelope(
        message=message,
        signature=keypair.sign_message(message),
        nonce=nonce,
        address=keypair.address,
    )


def compose_message(keypair, nonce: str, issued_at: datetime, expiration_time: str, **overrides) -> str:
    """Assemble a message client-side, as after a nonce-expiration challenge."""
    fields = dict(
        domain="example.com",
        address=keypair.address,
        statement="Sign in",
        uri="https://example.com/login",
        version="1",
        chain_id=1,
        nonce=nonce,
        issued_at=format_timestamp(issued_at),
        expiration_time=expiration_time,
    )
    fields.update(overrides)
    return SignInMessage(**fields).prepare_message()


@pytest.fixture(name="sign_proof")
def sign_proof_fixture():
    return sign_proof


@pytest.fixture(name="compose_message")
def compose_message_fixture():
    return compose_message
