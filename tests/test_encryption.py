"""Tests for the AES-256-CBC token encryption service."""

import os

import pytest

from republisher.utils.encryption import (
    DecryptionError,
    EncryptionKeyMissingError,
    EncryptionService,
    get_encryption_service,
)


@pytest.fixture(autouse=True)
def reset_encryption_singleton():
    """Reset the EncryptionService singleton before and after each test."""
    EncryptionService.reset_instance()
    yield
    EncryptionService.reset_instance()


class TestEncryptionService:
    """Test suite for EncryptionService class."""

    def test_encrypt_decrypt_roundtrip(self, encryption_env: str) -> None:
        """Test that encrypt followed by decrypt returns original plaintext."""
        service = get_encryption_service()
        plaintext = "ya29.a0AfB_byC-long-oauth-token"

        assert service.decrypt(service.encrypt(plaintext)) == plaintext

    def test_blob_format_is_iv_and_ciphertext_hex(self, encryption_env: str) -> None:
        """Test that the stored blob is '<32 hex IV>:<hex ciphertext>'."""
        blob = get_encryption_service().encrypt("token")

        iv_hex, ciphertext_hex = blob.split(":")
        assert len(iv_hex) == 32
        bytes.fromhex(iv_hex)
        # "token" pads to a single 16-byte block
        assert len(bytes.fromhex(ciphertext_hex)) == 16

    def test_same_plaintext_gets_distinct_ivs(self, encryption_env: str) -> None:
        """Test that each encryption uses a fresh random IV."""
        service = get_encryption_service()

        first = service.encrypt("same-token")
        second = service.encrypt("same-token")

        assert first.split(":")[0] != second.split(":")[0]
        assert first != second
        assert service.decrypt(first) == service.decrypt(second) == "same-token"

    def test_unicode_roundtrip(self, encryption_env: str) -> None:
        """Test that non-ASCII plaintext survives encryption."""
        service = get_encryption_service()

        assert service.decrypt(service.encrypt("jeton-été-✓")) == "jeton-été-✓"

    def test_singleton_returns_same_instance(self, encryption_env: str) -> None:
        """Test that get_encryption_service returns a singleton."""
        assert get_encryption_service() is get_encryption_service()


class TestKeyValidation:
    """Test ENCRYPTION_KEY loading."""

    def test_missing_key_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a missing key is reported at construction."""
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)

        with pytest.raises(EncryptionKeyMissingError, match="ENCRYPTION_KEY"):
            get_encryption_service()

    def test_non_hex_key_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a key that is not hex is rejected."""
        monkeypatch.setenv("ENCRYPTION_KEY", "z" * 64)

        with pytest.raises(EncryptionKeyMissingError, match="format"):
            get_encryption_service()

    def test_short_key_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a 16-byte key is rejected (AES-256 needs 32 bytes)."""
        monkeypatch.setenv("ENCRYPTION_KEY", os.urandom(16).hex())

        with pytest.raises(EncryptionKeyMissingError, match="length"):
            get_encryption_service()


class TestDecryptionErrors:
    """Test that malformed or foreign blobs raise DecryptionError."""

    @pytest.mark.parametrize(
        "blob",
        [
            "",
            "no-separator",
            "a:b:c",
            "zz" * 16 + ":" + "00" * 16,
            "00" * 8 + ":" + "00" * 16,
            "00" * 16 + ":",
            "00" * 16 + ":" + "00" * 15,
        ],
    )
    def test_malformed_blob(self, encryption_env: str, blob: str) -> None:
        """Test each malformed blob shape is rejected without decrypting."""
        with pytest.raises(DecryptionError):
            get_encryption_service().decrypt(blob)

    def test_wrong_key_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a blob encrypted under another key does not decrypt."""
        monkeypatch.setenv("ENCRYPTION_KEY", os.urandom(32).hex())
        blob = get_encryption_service().encrypt("ya29.secret-token-value")

        EncryptionService.reset_instance()
        monkeypatch.setenv("ENCRYPTION_KEY", os.urandom(32).hex())

        # A wrong key almost always breaks PKCS7 padding or UTF-8 decoding;
        # in the rare case it does not, the plaintext is still not recovered.
        try:
            result = get_encryption_service().decrypt(blob)
        except DecryptionError:
            return
        assert result != "ya29.secret-token-value"

    def test_error_carries_user_id_not_ciphertext(self, encryption_env: str) -> None:
        """Test that DecryptionError mentions the user but never the blob."""
        blob = "not-a-valid-blob-with-secret"

        with pytest.raises(DecryptionError) as exc_info:
            get_encryption_service().decrypt(blob, user_id="user-42")

        assert "user-42" in str(exc_info.value)
        assert blob not in str(exc_info.value)
