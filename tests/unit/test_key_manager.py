"""
Unit tests for KeyManager module.
"""

import tempfile
from pathlib import Path
import pytest

from handshake_auth.key_manager import KeyManager, KeyPair
from handshake_auth.exceptions import InvalidKeyError, KeyNotFoundError


class TestKeyPair:
    """Test KeyPair functionality."""

    def test_keypair_address(self):
        """Test the address derived from a KeyPair."""
        keypair = KeyManager.generate_keypair()

        assert keypair.address.startswith("0x")
        assert len(keypair.address) == 66
        assert KeyManager.is_valid_address(keypair.address)

    def test_sign_message_and_verify(self):
        """Test signing a message and verifying it against the address."""
        keypair = KeyManager.generate_keypair()
        signature = keypair.sign_message("hello")

        assert signature.startswith("0x")
        assert len(signature) == 130
        assert KeyManager.verify_signature(keypair.address, signature, "hello")
        assert not KeyManager.verify_signature(keypair.address, signature, "goodbye")

    def test_signature_from_other_key_fails(self):
        """Test that another key's signature does not verify."""
        keypair = KeyManager.generate_keypair()
        other = KeyManager.generate_keypair()

        signature = other.sign_message("hello")
        assert not KeyManager.verify_signature(keypair.address, signature, "hello")


class TestKeyManager:
    """Test KeyManager functionality."""

    def test_generate_keypair(self):
        """Test key pair generation."""
        keypair = KeyManager.generate_keypair()
        assert isinstance(keypair, KeyPair)

    def test_save_and_load_keypair(self):
        """Test saving and loading key pairs."""
        with tempfile.TemporaryDirectory() as tmpdir:
            private_path = Path(tmpdir) / "test-private.pem"

            original_keypair = KeyManager.generate_keypair()
            KeyManager.save_keypair(original_keypair, private_path)
            assert private_path.exists()

            loaded_keypair = KeyManager.load_keypair(private_path)
            assert loaded_keypair.address == original_keypair.address

    def test_save_refuses_overwrite(self):
        """Test that saving over an existing key requires overwrite."""
        with tempfile.TemporaryDirectory() as tmpdir:
            private_path = Path(tmpdir) / "key.pem"
            KeyManager.save_keypair(KeyManager.generate_keypair(), private_path)

            with pytest.raises(FileExistsError):
                KeyManager.save_keypair(KeyManager.generate_keypair(), private_path)

            KeyManager.save_keypair(KeyManager.generate_keypair(), private_path, overwrite=True)

    def test_load_missing_key(self):
        """Test loading a key that does not exist."""
        with pytest.raises(KeyNotFoundError):
            KeyManager.load_keypair("/nonexistent/key.pem")

    def test_load_corrupted_key(self):
        """Test loading a file that is not a key."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "bad.pem"
            path.write_text("not a key")

            with pytest.raises(InvalidKeyError):
                KeyManager.load_keypair(path)

    @pytest.mark.parametrize("address", [
        "",
        "0x",
        "0x1234",
        "1" * 66,
        "0x" + "g" * 64,
        "0x" + "a" * 63,
        "0x" + "a" * 65,
    ])
    def test_malformed_addresses(self, address):
        """Test address format checking."""
        assert not KeyManager.is_valid_address(address)

    def test_non_string_address(self):
        """Test that non-string addresses are rejected."""
        assert not KeyManager.is_valid_address(None)
        assert not KeyManager.is_valid_address(1234)

    def test_public_key_from_malformed_address(self):
        """Test recovering a key from a malformed address."""
        with pytest.raises(InvalidKeyError):
            KeyManager.public_key_from_address("0x1234")

    def test_malformed_signature(self):
        """Test that malformed signatures never verify."""
        keypair = KeyManager.generate_keypair()
        assert not KeyManager.verify_signature(keypair.address, "0xabc", "hello")
        assert not KeyManager.verify_signature(keypair.address, "", "hello")
