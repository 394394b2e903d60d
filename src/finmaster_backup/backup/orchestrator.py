"""Backup orchestration: export -> encrypt -> armor -> upload, and back.

The restore pipeline collapses every stage failure into one RestoreError so
that callers (and anyone watching them) cannot tell a bad password from a
damaged or foreign file.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, UTC
from typing import Callable, List, Optional

from ..common.armor import armor_package, unarmor_package
from ..common.crypto import CipherService
from ..common.drive import BACKUP_NAME_PREFIX, DriveAppDataClient
from ..common.errors import NotAuthenticatedError, RestoreError, ValidationError
from ..common.oauth import RemoteAuthSession
from ..state.host_state import HostState
from ..state.models import AuthSession, BackupFileDescriptor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def backup_file_name(now: datetime) -> str:
    """`finmaster_backup_2025-03-01T10-15-30-000Z.json` for the given instant."""
    stamp = now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")
    millis = now.microsecond // 1000
    iso = f"{stamp}.{millis:03d}Z"
    return f"{BACKUP_NAME_PREFIX}{iso.replace(':', '-').replace('.', '-')}.json"


class BackupOrchestrator:
    """
    Public surface of the secure backup subsystem.

    Collaborators are injected: the cipher, the app-data storage client, the
    auth session it reads from, and the host application's state hooks.
    """

    def __init__(
        self,
        *,
        session: RemoteAuthSession,
        storage: DriveAppDataClient,
        host_state: HostState,
        cipher: Optional[CipherService] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._storage = storage
        self._host_state = host_state
        self._cipher = cipher or CipherService()
        self._clock = clock

    # --------------- Session pass-throughs ---------------
    def configure(self, client_id: str) -> None:
        self._session.configure(client_id)

    @property
    def is_configured(self) -> bool:
        return self._session.is_configured

    def is_authenticated(self) -> bool:
        return self._session.is_authenticated()

    @property
    def session_expires_at_ms(self) -> Optional[int]:
        return self._session.expires_at_ms if self._session.is_authenticated() else None

    def sign_in(self) -> AuthSession:
        return self._session.sign_in()

    def sign_out(self) -> None:
        self._session.sign_out()

    # --------------- Backup operations ---------------
    def backup_now(self, password: str) -> BackupFileDescriptor:
        """
        Encrypt the current application state and upload it.

        Raises:
        - ValidationError when `password` is empty.
        - NotAuthenticatedError when signed out (checked before any work).
        - EncryptionError, SessionExpiredError, RemoteStorageError from the
          lower layers, unchanged.
        """
        if not password:
            raise ValidationError("Password is required for encryption.")
        if not self._session.is_authenticated():
            raise NotAuthenticatedError("Not signed in to the storage provider.")

        plaintext = self._host_state.export_state()
        logger.info("Encrypting backup")
        package = self._cipher.encrypt(plaintext, password)
        content = armor_package(package)
        name = backup_file_name(self._clock())

        logger.info("Uploading backup %s", name)
        descriptor = self._storage.upload(name, content)
        logger.info("Backup stored as %s", descriptor.id)
        return descriptor

    def list_backups(self) -> List[BackupFileDescriptor]:
        if not self._session.is_authenticated():
            return []
        return self._storage.list()

    def restore_backup(self, file_id: str, password: str) -> bool:
        """
        Download, decrypt and import a backup, replacing all application state.

        The caller should reload its in-memory state after success.

        Raises:
        - ValidationError when `password` is empty.
        - RestoreError for any failure after that, with a single generic
          message. A 401 still clears the session, so callers can check
          `is_authenticated()` to decide whether to ask for sign-in again.
        """
        if not password:
            raise ValidationError("Password is required to decrypt.")

        try:
            logger.info("Downloading backup %s", file_id)
            content = self._storage.download(file_id)
            package = unarmor_package(content)
            plaintext = self._cipher.decrypt(package, password)
            parsed = json.loads(plaintext)
            result = self._host_state.import_state(parsed)
        except Exception as exc:
            logger.debug("Restore of %s failed at %s", file_id, type(exc).__name__)
            raise RestoreError() from None

        if result is False:
            raise RestoreError()
        logger.info("Restore of %s complete", file_id)
        return True

    def delete_backup(self, file_id: str) -> bool:
        self._storage.delete(file_id)
        return True


__all__ = ["BackupOrchestrator", "backup_file_name"]
