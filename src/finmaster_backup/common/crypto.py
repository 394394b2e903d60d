"""Password-based encryption of backup payloads.

PBKDF2-HMAC-SHA256 (100,000 iterations) derives a 256-bit key from the
password and a random 16-byte salt; AES-256-GCM with a random 12-byte
nonce encrypts the UTF-8 text. These parameters are fixed so existing
backups stay decryptable by any implementation.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..state.models import PACKAGE_VERSION, EncryptedPackage
from .errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)


# Fixed format parameters; changing any of them breaks existing backups
PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32    # AES-256
SALT_LENGTH = 16
NONCE_LENGTH = 12  # 96-bit GCM nonce


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


class DerivedKey:
    """AES-GCM key usable for encrypt/decrypt only.

    The raw key bytes are consumed by the AEAD object and not kept.
    """

    __slots__ = ("_aead",)

    def __init__(self, key_bytes: bytes) -> None:
        self._aead = AESGCM(key_bytes)

    def encrypt(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.encrypt(nonce, data, None)

    def decrypt(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.decrypt(nonce, data, None)

    def __repr__(self) -> str:
        return "DerivedKey(<hidden>)"


class CipherService:
    """Encrypt/decrypt a plaintext string with a user-chosen password."""

    PBKDF2_ITERATIONS = PBKDF2_ITERATIONS
    KEY_LENGTH = KEY_LENGTH
    SALT_LENGTH = SALT_LENGTH
    NONCE_LENGTH = NONCE_LENGTH

    def derive_key(self, password: str, salt: bytes) -> DerivedKey:
        """Derive a 256-bit AES-GCM key from password + salt via PBKDF2-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.PBKDF2_ITERATIONS,
        )
        return DerivedKey(kdf.derive(password.encode("utf-8")))

    def encrypt(self, plaintext: str, password: str) -> EncryptedPackage:
        """
        Encrypt `plaintext` under `password`.

        A fresh salt and nonce come from `os.urandom` on every call, so equal
        inputs never produce equal packages.

        Raises:
        - EncryptionError on any primitive failure.
        """
        try:
            salt = os.urandom(self.SALT_LENGTH)
            nonce = os.urandom(self.NONCE_LENGTH)
            key = self.derive_key(password, salt)
            ciphertext = key.encrypt(nonce, plaintext.encode("utf-8"))
        except Exception as exc:
            logger.debug("Encryption primitive failed: %s", type(exc).__name__)
            raise EncryptionError("Encryption failed. Please try again.") from None

        return EncryptedPackage(
            ciphertext=_b64encode(ciphertext),
            salt=_b64encode(salt),
            iv=_b64encode(nonce),
            version=PACKAGE_VERSION,
        )

    def decrypt(self, package: EncryptedPackage, password: str) -> str:
        """
        Decrypt `package` with `password` and return the plaintext.

        GCM tag verification is the only integrity check; a wrong password
        and tampered ciphertext both fail it.

        Raises:
        - DecryptionError for every failure, with one generic message.
        """
        try:
            salt = _b64decode(package.salt)
            nonce = _b64decode(package.iv)
            ciphertext = _b64decode(package.ciphertext)
        except (binascii.Error, ValueError):
            raise DecryptionError() from None

        if len(salt) != self.SALT_LENGTH or len(nonce) != self.NONCE_LENGTH:
            raise DecryptionError()

        try:
            key = self.derive_key(password, salt)
            data = key.decrypt(nonce, ciphertext)
        except InvalidTag:
            raise DecryptionError() from None
        except Exception as exc:
            logger.debug("Decryption primitive failed: %s", type(exc).__name__)
            raise DecryptionError() from None

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError() from None


__all__ = ["CipherService", "DerivedKey"]
