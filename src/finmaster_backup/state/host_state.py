from __future__ import annotations

import json
import logging
import os
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Protocol

from ..common.errors import ValidationError

logger = logging.getLogger(__name__)


# Top-level slices a backup must carry to be importable
CORE_FIELDS = ("user", "accounts", "transactions")
EXPORT_VERSION = "1.0"


class HostState(Protocol):
    """Export/import hooks supplied by the host application."""

    def export_state(self) -> str: ...

    def import_state(self, parsed: Any) -> bool: ...


class JsonFileHostState:
    """
    Application state kept in a single JSON file.

    - `export_state()` returns the serialized state with a `version` and an
      ISO-8601 `timestamp`.
    - `import_state()` requires `user`, `accounts` and `transactions`, then
      replaces the file contents wholesale (no merge). The write goes to a
      temp file first and is swapped in with `os.replace`.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValidationError(f"State file {self._path} does not hold a JSON object")
        return data

    def export_state(self) -> str:
        state = self.load()
        payload = {
            "version": EXPORT_VERSION,
            "timestamp": datetime.now(UTC).isoformat(),
            "settings": state.get("settings", {}),
            "user": state.get("user", {}),
            "accounts": state.get("accounts", []),
            "budgets": state.get("budgets", []),
            "transactions": state.get("transactions", {"expenses": [], "income": []}),
            "goals": state.get("goals", []),
        }
        return json.dumps(payload, ensure_ascii=False)

    def import_state(self, parsed: Any) -> bool:
        if not isinstance(parsed, dict):
            raise ValidationError("Invalid backup file: payload is not an object")
        missing = [name for name in CORE_FIELDS if parsed.get(name) is None]
        if missing:
            raise ValidationError(f"Invalid backup file: missing core data ({', '.join(missing)})")

        current = self.load()
        new_state = {
            **current,
            "settings": parsed.get("settings") or current.get("settings", {}),
            "user": parsed["user"],
            "accounts": parsed.get("accounts") or [],
            "budgets": parsed.get("budgets") or [],
            "transactions": parsed.get("transactions") or {"expenses": [], "income": []},
            "goals": parsed.get("goals") or [],
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f".{self._path.name}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(new_state, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)
        logger.info("Imported state into %s", self._path)
        return True


__all__ = ["CORE_FIELDS", "HostState", "JsonFileHostState"]
