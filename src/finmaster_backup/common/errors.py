from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base error for the secure backup subsystem."""


class ConfigurationError(BackupError):
    """No application client identifier has been configured."""


class AuthenticationError(BackupError):
    """Interactive sign-in failed, was cancelled, or is already running."""


class NotAuthenticatedError(BackupError):
    """An operation needing a session was attempted while signed out."""


class SessionExpiredError(BackupError):
    """The provider rejected a locally valid-looking token (HTTP 401)."""


class EncryptionError(BackupError):
    """Encryption failed. Carries no detail about the inputs."""


class DecryptionError(BackupError):
    """Wrong password or corrupted file.

    Raised for every decryption failure alike; callers cannot tell a bad
    password from tampered ciphertext.
    """

    def __init__(self, message: str = "Decryption failed. Wrong password or corrupted file.") -> None:
        super().__init__(message)


class ArmorError(DecryptionError):
    """Stored content is not a readable encrypted package."""


class RemoteStorageError(BackupError):
    """The storage provider reported a failure other than 401."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(BackupError):
    """Missing password or a malformed state payload."""


class RestoreError(BackupError):
    """Collapsed failure of the restore pipeline."""

    def __init__(self, message: str = "Restore failed. Wrong password or corrupted file.") -> None:
        super().__init__(message)


__all__ = [
    "BackupError",
    "ConfigurationError",
    "AuthenticationError",
    "NotAuthenticatedError",
    "SessionExpiredError",
    "EncryptionError",
    "DecryptionError",
    "ArmorError",
    "RemoteStorageError",
    "ValidationError",
    "RestoreError",
]
