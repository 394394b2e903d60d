from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..state.models import BackupFileDescriptor
from .errors import NotAuthenticatedError, RemoteStorageError, SessionExpiredError
from .oauth import RemoteAuthSession

logger = logging.getLogger(__name__)


DEFAULT_API_BASE = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"

APP_DATA_FOLDER = "appDataFolder"
BACKUP_NAME_PREFIX = "finmaster_backup_"
LIST_PAGE_SIZE = 30
DESCRIPTOR_FIELDS = "id,name,createdTime,size"

_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


class DriveAppDataClient:
    """
    Google Drive v3 client confined to the application's `appDataFolder`.

    Notes
    - Files in `appDataFolder` are hidden from the user's Drive listing and
      reachable only with the `drive.appdata` scope.
    - Every call checks `session.is_authenticated()` first and raises
      NotAuthenticatedError without touching the network when it is false.
    - HTTP 401 clears the session and raises SessionExpiredError; there is no
      silent refresh.
    - `list` and `download` retry transport errors, 429 and 5xx with
      exponential backoff. `upload` and `delete` are sent exactly once.
    """

    def __init__(
        self,
        session: RemoteAuthSession,
        *,
        api_base: str = DEFAULT_API_BASE,
        upload_url: str = DEFAULT_UPLOAD_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._session = session
        self._api_base = api_base.rstrip("/")
        self._upload_url = upload_url
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "DriveAppDataClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def upload(self, name: str, content: str) -> BackupFileDescriptor:
        """Create `name` in appDataFolder with `content` in one multipart/related request."""
        metadata = {"name": name, "parents": [APP_DATA_FOLDER]}
        boundary = secrets.token_hex(16)
        body = b"".join(
            [
                f"--{boundary}\r\n".encode("ascii"),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                b"\r\n",
                f"--{boundary}\r\n".encode("ascii"),
                b"Content-Type: application/octet-stream\r\n\r\n",
                content.encode("utf-8"),
                b"\r\n",
                f"--{boundary}--\r\n".encode("ascii"),
            ]
        )
        resp = self._send(
            "POST",
            self._upload_url,
            idempotent=False,
            params={"uploadType": "multipart", "fields": DESCRIPTOR_FIELDS},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        descriptor = self._parse_descriptor(self._json(resp))
        logger.info("Uploaded %s as %s", name, descriptor.id)
        return descriptor

    def list(self) -> List[BackupFileDescriptor]:
        """Newest-first backups in appDataFolder, at most LIST_PAGE_SIZE entries."""
        params = {
            "q": (
                f"name contains '{BACKUP_NAME_PREFIX}' and "
                f"'{APP_DATA_FOLDER}' in parents and trashed = false"
            ),
            "spaces": APP_DATA_FOLDER,
            "fields": f"files({DESCRIPTOR_FIELDS.replace(',', ', ')})",
            "orderBy": "createdTime desc",
            "pageSize": str(LIST_PAGE_SIZE),
        }
        resp = self._send("GET", f"{self._api_base}/files", idempotent=True, params=params)
        payload = self._json(resp)
        files = payload.get("files") or []
        if not isinstance(files, list):
            raise RemoteStorageError("Malformed file listing from Drive")
        return [self._parse_descriptor(item) for item in files]

    def download(self, file_id: str) -> str:
        resp = self._send(
            "GET",
            self._file_url(file_id),
            idempotent=True,
            params={"alt": "media"},
        )
        return resp.text

    def delete(self, file_id: str) -> None:
        self._send("DELETE", self._file_url(file_id), idempotent=False)
        logger.info("Deleted %s", file_id)

    # --------------- Internal ---------------
    def _file_url(self, file_id: str) -> str:
        if not file_id:
            raise ValueError("file_id is required")
        return f"{self._api_base}/files/{quote(file_id, safe='')}"

    def _authorization(self) -> Dict[str, str]:
        if not self._session.is_authenticated():
            raise NotAuthenticatedError("Not authenticated. Please sign in again.")
        self._session.require_configured()
        return {"Authorization": f"Bearer {self._session.access_token}"}

    def _send(self, method: str, url: str, *, idempotent: bool, **kwargs: Any) -> httpx.Response:
        self._authorization()  # fail fast before any I/O

        attempts = self._max_attempts if idempotent else 1
        extra_headers: Dict[str, str] = kwargs.pop("headers", None) or {}
        backoff = 0.5
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            headers = {**extra_headers, **self._authorization()}
            try:
                resp = self._client.request(method, url, headers=headers, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt, attempts, type(exc).__name__)
            else:
                if 200 <= resp.status_code < 300:
                    return resp
                if resp.status_code == 401:
                    self._session.clear()
                    raise SessionExpiredError("Session expired. Please sign in again.")
                error = RemoteStorageError(self._error_message(resp), status_code=resp.status_code)
                if resp.status_code not in _RETRYABLE_STATUSES or not idempotent:
                    raise error
                last_exc = error
                logger.warning("%s %s returned HTTP %d (attempt %d/%d)", method, url, resp.status_code, attempt, attempts)

            if attempt < attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        status = last_exc.status_code if isinstance(last_exc, RemoteStorageError) else None
        raise RemoteStorageError(
            f"Drive request failed after {attempts} attempt(s)", status_code=status
        ) from last_exc

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        # Drive errors look like {"error": {"code": 404, "message": "File not found: x."}}
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
        text = resp.text[:200] if resp.text else ""
        return text or f"Drive API error (HTTP {resp.status_code})"

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteStorageError("Failed to parse JSON from Drive", status_code=resp.status_code) from exc
        if not isinstance(data, dict):
            raise RemoteStorageError("Unexpected response shape from Drive", status_code=resp.status_code)
        return data

    @staticmethod
    def _parse_descriptor(item: Any) -> BackupFileDescriptor:
        try:
            return BackupFileDescriptor.model_validate(item)
        except PydanticValidationError as exc:
            raise RemoteStorageError("Malformed file metadata from Drive") from exc


__all__ = [
    "APP_DATA_FOLDER",
    "BACKUP_NAME_PREFIX",
    "LIST_PAGE_SIZE",
    "DriveAppDataClient",
]
