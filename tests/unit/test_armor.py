from __future__ import annotations

import base64
import json

import pytest

from finmaster_backup.common.armor import (
    ENVELOPE_PREFIX,
    armor_package,
    detect_format,
    unarmor_package,
)
from finmaster_backup.common.errors import ArmorError, DecryptionError
from finmaster_backup.state.models import EncryptedPackage


def _pkg() -> EncryptedPackage:
    return EncryptedPackage(ciphertext="Y2lwaGVy", salt="c2FsdA==", iv="aXY=", version=1)


def test_armor_output_is_prefixed_base64_json():
    text = armor_package(_pkg())

    assert text.startswith(ENVELOPE_PREFIX)
    decoded = json.loads(base64.b64decode(text[len(ENVELOPE_PREFIX):]))
    assert decoded == {"ciphertext": "Y2lwaGVy", "iv": "aXY=", "salt": "c2FsdA==", "version": 1}


def test_enveloped_content_is_read_back():
    assert unarmor_package(armor_package(_pkg())) == _pkg()


def test_legacy_bare_base64_content_is_read():
    # Format written by the original web client: btoa(JSON.stringify(pkg))
    legacy = base64.b64encode(json.dumps(_pkg().model_dump()).encode()).decode()

    assert detect_format(legacy) == "legacy_base64"
    assert unarmor_package(legacy) == _pkg()


def test_raw_json_content_is_read():
    raw = json.dumps({"ciphertext": "Y2lwaGVy", "salt": "c2FsdA==", "iv": "aXY=", "version": 1})

    assert detect_format("\n  " + raw) == "raw_json"
    assert unarmor_package(raw) == _pkg()


def test_missing_version_defaults_to_one():
    raw = json.dumps({"ciphertext": "Y2lwaGVy", "salt": "c2FsdA==", "iv": "aXY="})
    assert unarmor_package(raw).version == 1


@pytest.mark.parametrize(
    "content",
    [
        "",
        "not base64 at all!",
        ENVELOPE_PREFIX + "%%%",
        "{not json",
        "[1, 2, 3]",
        json.dumps({"ciphertext": "x"}),
        json.dumps({"ciphertext": "x", "salt": "y", "iv": "z", "version": 2}),
        base64.b64encode(b"\xff\xfe").decode(),
    ],
)
def test_unreadable_content_raises_armor_error(content: str):
    with pytest.raises(ArmorError):
        unarmor_package(content)


def test_armor_error_is_a_decryption_error():
    assert issubclass(ArmorError, DecryptionError)
