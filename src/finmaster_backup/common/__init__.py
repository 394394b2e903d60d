"""
Building blocks for secure backups.

Modules:
- crypto: PBKDF2 key derivation and AES-GCM package encryption
- armor: versioned text envelope for stored packages
- oauth: access-token lifecycle and the interactive consent flow
- drive: Google Drive appDataFolder client with timeouts and retries
- errors: exception taxonomy
"""

__all__ = [
    "armor",
    "crypto",
    "drive",
    "errors",
    "oauth",
]
