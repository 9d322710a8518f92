"""
Encryption at rest for audit logs.

AES-256-GCM authenticated encryption with PBKDF2-HMAC-SHA256 key
derivation (600,000 iterations).

Each log line is encrypted by a RecordCipher (ENC:L: prefix), which
derives its key once per file from a salt stored in the file header.

Hashes are always computed over plaintext records, so an encrypted log
verifies exactly like a plaintext one once decrypted.
"""

import base64
import os
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_SIZE = 16  # 128 bits
IV_SIZE = 12  # 96 bits for GCM
KEY_SIZE = 32  # 256 bits
PBKDF2_ITERATIONS = 600_000

ENCRYPTION_KEY_ENV = "AUDIT_ENCRYPTION_KEY"
ENCRYPTION_ENABLED_ENV = "AUDIT_ENCRYPTION_ENABLED"

LINE_PREFIX = "ENC:L:"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


class KeyDerivationError(EncryptionError):
    """Raised when key derivation fails."""
    pass


def _derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive a 256-bit key from a passphrase.

    Raises:
        KeyDerivationError: If the passphrase is empty
    """
    if not password:
        raise KeyDerivationError("Password cannot be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def get_encryption_key() -> str | None:
    return os.getenv(ENCRYPTION_KEY_ENV)


def is_encryption_enabled() -> bool:
    """True when AUDIT_ENCRYPTION_ENABLED is truthy and a key is configured."""
    enabled = os.getenv(ENCRYPTION_ENABLED_ENV, "false").lower()
    if enabled not in ("true", "1", "yes", "on"):
        return False
    return get_encryption_key() is not None


def generate_encryption_key() -> str:
    """Base64-encoded 256-bit random key."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")


class RecordCipher:
    """
    Per-file line cipher.

    The key is derived once from (passphrase, salt); each line gets a
    fresh IV. The salt and iteration count are persisted in the log header
    via header_dict() so the file can be reopened.
    """

    def __init__(self, key: str, salt: bytes | None = None, iterations: int = PBKDF2_ITERATIONS):
        self.salt = salt if salt is not None else secrets.token_bytes(SALT_SIZE)
        self.iterations = iterations
        self._aesgcm = AESGCM(_derive_key(key, self.salt, iterations))

    @classmethod
    def from_header(cls, key: str, header: dict[str, Any]) -> "RecordCipher":
        try:
            salt = base64.b64decode(header["salt"])
            iterations = int(header.get("iterations", PBKDF2_ITERATIONS))
        except (KeyError, TypeError, ValueError) as e:
            raise EncryptionError(f"Invalid cipher header: {e}") from e
        return cls(key, salt=salt, iterations=iterations)

    def header_dict(self) -> dict[str, Any]:
        return {
            "algorithm": "AES-256-GCM",
            "kdf": "PBKDF2-HMAC-SHA256",
            "iterations": self.iterations,
            "salt": base64.b64encode(self.salt).decode("ascii"),
        }

    def encrypt_line(self, text: str) -> str:
        iv = secrets.token_bytes(IV_SIZE)
        ciphertext = self._aesgcm.encrypt(iv, text.encode("utf-8"), None)
        return LINE_PREFIX + base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt_line(self, line: str) -> str:
        """
        Raises:
            EncryptionError: If the line is not an ENC:L: line, or on a wrong key or tampering
        """
        if not line.startswith(LINE_PREFIX):
            raise EncryptionError("Line is not encrypted")
        try:
            blob = base64.b64decode(line[len(LINE_PREFIX):])
            plaintext = self._aesgcm.decrypt(blob[:IV_SIZE], blob[IV_SIZE:], None)
        except (ValueError, InvalidTag) as e:
            raise EncryptionError("Decryption failed: wrong key or tampered line") from e
        return plaintext.decode("utf-8")
