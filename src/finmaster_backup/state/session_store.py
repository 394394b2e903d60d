from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from ..common.errors import ConfigurationError

logger = logging.getLogger(__name__)


# Keys shared with the original web client's sessionStorage
TOKEN_KEY = "fm_gdrive_token_v2"
EXPIRY_KEY = "fm_gdrive_exp"

ENV_RUNTIME_DIR = "XDG_RUNTIME_DIR"
SESSION_FILE_NAME = "finmaster-backup-session.json"


class SessionStore(Protocol):
    """Storage for the token/expiry pair that must not outlive the login session."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemorySessionStore:
    """Process-lifetime store; the default."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class RuntimeDirSessionStore:
    """
    JSON file in the per-login runtime directory (`$XDG_RUNTIME_DIR`).

    - The OS empties that directory at logout, so a token never survives a
      restart. There is deliberately no fallback to a persistent location:
      without a runtime directory, construction fails.
    - The file is created with mode 0600 and rewritten atomically.
    """

    def __init__(self, directory: Optional[os.PathLike[str] | str] = None) -> None:
        base = directory or os.environ.get(ENV_RUNTIME_DIR)
        if not base:
            raise ConfigurationError(
                f"{ENV_RUNTIME_DIR} is not set; refusing to keep the session token on persistent storage"
            )
        self._path = Path(base) / SESSION_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, str]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("Discarding unreadable session file %s", self._path)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items() if isinstance(v, (str, int))}

    def _write(self, data: Dict[str, str]) -> None:
        if not data:
            self._path.unlink(missing_ok=True)
            return
        tmp = self._path.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, sort_keys=True)
        os.replace(tmp, self._path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


__all__ = [
    "TOKEN_KEY",
    "EXPIRY_KEY",
    "SessionStore",
    "InMemorySessionStore",
    "RuntimeDirSessionStore",
]
