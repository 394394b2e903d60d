"""Text armor for encrypted packages stored remotely.

Current writer output is ``FMB1:`` followed by base64 of the package JSON.
Readers classify content by its leading characters instead of attempting
one parse and falling back to another:

- ``FMB1:...``  enveloped package (this writer)
- ``{...}``     raw package JSON (already unarmored, or foreign files)
- anything else legacy base64 of the package JSON (original web client)
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Literal

from pydantic import ValidationError as PydanticValidationError

from ..state.models import PACKAGE_VERSION, EncryptedPackage
from .errors import ArmorError


ENVELOPE_PREFIX = "FMB1:"

ArmorFormat = Literal["enveloped", "raw_json", "legacy_base64"]


def _package_json(pkg: EncryptedPackage) -> str:
    return json.dumps(pkg.model_dump(), separators=(",", ":"), sort_keys=True)


def armor_package(pkg: EncryptedPackage) -> str:
    """Serialize `pkg` to the versioned envelope text."""
    encoded = base64.b64encode(_package_json(pkg).encode("utf-8")).decode("ascii")
    return f"{ENVELOPE_PREFIX}{encoded}"


def detect_format(content: str) -> ArmorFormat:
    text = content.strip()
    if text.startswith(ENVELOPE_PREFIX):
        return "enveloped"
    if text.startswith("{"):
        return "raw_json"
    return "legacy_base64"


def _decode_base64_json(body: str) -> str:
    try:
        return base64.b64decode(body.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeError) as exc:
        raise ArmorError("Backup content is not valid base64") from exc


def unarmor_package(content: str) -> EncryptedPackage:
    """
    Parse stored text back into an `EncryptedPackage`.

    Raises ArmorError when the content cannot be decoded, is not a JSON
    object of the package shape, or carries an unknown version.
    """
    if not isinstance(content, str):
        raise ArmorError("Backup content must be text")
    text = content.strip()
    fmt = detect_format(text)

    if fmt == "enveloped":
        raw = _decode_base64_json(text[len(ENVELOPE_PREFIX):])
    elif fmt == "raw_json":
        raw = text
    else:
        raw = _decode_base64_json(text)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArmorError("Backup content is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ArmorError("Backup content is not a package object")

    try:
        pkg = EncryptedPackage.model_validate(data)
    except PydanticValidationError as exc:
        raise ArmorError("Backup content is missing package fields") from exc

    if pkg.version != PACKAGE_VERSION:
        raise ArmorError(f"Unsupported package version: {pkg.version}")
    return pkg


__all__ = [
    "ENVELOPE_PREFIX",
    "ArmorFormat",
    "armor_package",
    "detect_format",
    "unarmor_package",
]
