"""AES-256-CBC encryption for OAuth tokens at rest.

Every call to ``encrypt`` generates a fresh random 16-byte IV. The stored blob
is ``<iv hex>:<ciphertext hex>`` so it fits a plain text column.

The ENCRYPTION_KEY environment variable must hold 64 hex characters (32 bytes).
Generate one with ``python -c "import os; print(os.urandom(32).hex())"``.

Usage:
    from republisher.utils.encryption import get_encryption_service

    service = get_encryption_service()
    blob = service.encrypt("ya29.a0...")
    token = service.decrypt(blob)

Security Notes:
    - NEVER log plaintext tokens or ciphertext blobs
    - Key rotation requires re-encrypting all stored credentials
"""

import os
from typing import ClassVar

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 16
BLOCK_SIZE_BITS = 128
SEPARATOR = ":"


class EncryptionKeyMissingError(Exception):
    """Raised when ENCRYPTION_KEY is not set or is not 64 hex characters."""


class DecryptionError(Exception):
    """Raised when a ciphertext blob cannot be decrypted.

    Covers malformed blobs (missing separator, bad hex, wrong IV length) as well
    as key mismatch (invalid padding or non UTF-8 plaintext). Never carries the
    ciphertext itself.

    Attributes:
        user_id: Optional user ID for debugging context.
    """

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.user_id:
            return f"{super().__str__()} (user_id={self.user_id})"
        return super().__str__()


class EncryptionService:
    """Singleton AES-256-CBC service keyed from ENCRYPTION_KEY.

    Example:
        >>> service = get_encryption_service()
        >>> blob = service.encrypt("my-oauth-token")
        >>> service.decrypt(blob)
        'my-oauth-token'

    Raises:
        EncryptionKeyMissingError: If ENCRYPTION_KEY is missing or malformed.
    """

    _instance: ClassVar["EncryptionService | None"] = None
    _key: bytes

    def __new__(cls) -> "EncryptionService":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._initialize()
            cls._instance = instance
        return cls._instance

    def _initialize(self) -> None:
        key_hex = os.environ.get("ENCRYPTION_KEY")
        if not key_hex:
            raise EncryptionKeyMissingError(
                "ENCRYPTION_KEY environment variable is required. "
                "It must contain 64 hex characters (32 bytes)."
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise EncryptionKeyMissingError(
                "Invalid ENCRYPTION_KEY format: expected 64 hex characters"
            ) from e
        if len(key) != KEY_LENGTH_BYTES:
            raise EncryptionKeyMissingError(
                f"Invalid ENCRYPTION_KEY length: expected {KEY_LENGTH_BYTES} bytes, "
                f"got {len(key)}"
            )
        self._key = key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string with a fresh random IV.

        Args:
            plaintext: The sensitive string to encrypt (e.g., OAuth token).

        Returns:
            ``"<iv hex>:<ciphertext hex>"``
        """
        iv = os.urandom(IV_LENGTH_BYTES)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, blob: str, user_id: str | None = None) -> str:
        """Decrypt a blob produced by ``encrypt``.

        Args:
            blob: ``"<iv hex>:<ciphertext hex>"`` from storage.
            user_id: Optional user ID for error context.

        Returns:
            Decrypted plaintext string.

        Raises:
            DecryptionError: If the blob is malformed or the key does not match.
        """
        parts = blob.split(SEPARATOR) if blob else []
        if len(parts) != 2:
            raise DecryptionError("Decryption failed: malformed ciphertext blob", user_id=user_id)

        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
        except ValueError as e:
            raise DecryptionError(
                "Decryption failed: ciphertext blob is not valid hex", user_id=user_id
            ) from e

        if len(iv) != IV_LENGTH_BYTES:
            raise DecryptionError("Decryption failed: invalid IV length", user_id=user_id)
        if not ciphertext or len(ciphertext) % (BLOCK_SIZE_BITS // 8) != 0:
            raise DecryptionError("Decryption failed: invalid ciphertext length", user_id=user_id)

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(
                "Decryption failed: invalid encryption key or corrupted data",
                user_id=user_id,
            ) from e

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (for testing only)."""
        cls._instance = None


def get_encryption_service() -> EncryptionService:
    """Get the singleton EncryptionService instance.

    Raises:
        EncryptionKeyMissingError: If ENCRYPTION_KEY is missing or malformed.
    """
    return EncryptionService()
