from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


PACKAGE_VERSION = 1
DEFAULT_EXPIRES_IN = 3599


class EncryptedPackage(BaseModel):
    """
    Password-encrypted backup payload as stored remotely.

    Fields
    - ciphertext: base64 of the AES-GCM output (ciphertext followed by the 16-byte tag).
    - salt: base64 of the 16-byte PBKDF2 salt.
    - iv: base64 of the 12-byte GCM nonce.
    - version: format discriminator, currently always 1.

    Notes
    - salt and iv are freshly generated for every encryption call.
    - Serialized JSON uses exactly these four keys so that packages written by
      the original web client remain readable.
    """

    model_config = ConfigDict(extra="ignore")

    ciphertext: str = Field(..., description="Base64 ciphertext with embedded GCM tag")
    salt: str = Field(..., description="Base64 PBKDF2 salt (16 bytes)")
    iv: str = Field(..., description="Base64 GCM nonce (12 bytes)")
    version: int = Field(default=PACKAGE_VERSION, description="Package format version")


class AuthSession(BaseModel):
    """An access token and the epoch-millisecond instant it stops being usable."""

    access_token: str
    expires_at_ms: int

    def is_valid(self, now_ms: int) -> bool:
        return bool(self.access_token) and now_ms < self.expires_at_ms

    def __repr__(self) -> str:
        return f"AuthSession(access_token=<redacted>, expires_at_ms={self.expires_at_ms})"

    __str__ = __repr__


class TokenResponse(BaseModel):
    """Reply from the provider's token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    # Google issues one-hour tokens; 3599 matches what it reports
    expires_in: int = DEFAULT_EXPIRES_IN
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @field_validator("expires_in", mode="before")
    @classmethod
    def _default_lifetime(cls, v):
        # null, zero or negative lifetimes fall back to the default
        if v is None or v == "" or int(v) <= 0:
            return DEFAULT_EXPIRES_IN
        return v


class BackupFileDescriptor(BaseModel):
    """
    Provider metadata for one stored backup.

    Populated from Drive's `id`, `name`, `createdTime` and `size` fields.
    Never holds plaintext or key material.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    created_time: Optional[datetime] = Field(default=None, alias="createdTime")
    size: Optional[int] = None


__all__ = [
    "PACKAGE_VERSION",
    "EncryptedPackage",
    "AuthSession",
    "TokenResponse",
    "BackupFileDescriptor",
]
