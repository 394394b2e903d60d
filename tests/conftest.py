import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable without an editable install
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    # 100k PBKDF2 rounds per call would dominate the suite; the production
    # constant is pinned separately in test_crypto.
    from finmaster_backup.common.crypto import CipherService

    monkeypatch.setattr(CipherService, "PBKDF2_ITERATIONS", 1_000)
