"""
Data records and local state for the backup subsystem.

The models here describe what travels to and from the storage provider;
session_store keeps the short-lived access token, host_state bridges to the
application's own export/import.
"""

from .models import AuthSession, BackupFileDescriptor, EncryptedPackage, TokenResponse

__all__ = ["AuthSession", "BackupFileDescriptor", "EncryptedPackage", "TokenResponse"]
