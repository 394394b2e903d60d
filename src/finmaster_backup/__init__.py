"""
finmaster-backup: password-encrypted backups of FinMaster data in the
application-private Google Drive folder.
"""

from .backup.orchestrator import BackupOrchestrator
from .common.crypto import CipherService
from .common.drive import DriveAppDataClient
from .common.oauth import RemoteAuthSession

__version__ = "0.1.0"

__all__ = [
    "BackupOrchestrator",
    "CipherService",
    "DriveAppDataClient",
    "RemoteAuthSession",
]
