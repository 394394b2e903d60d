from __future__ import annotations

import json
from typing import Callable, List

import httpx
import pytest

from finmaster_backup.common.drive import DriveAppDataClient, LIST_PAGE_SIZE
from finmaster_backup.common.errors import (
    ConfigurationError,
    NotAuthenticatedError,
    RemoteStorageError,
    SessionExpiredError,
)
from finmaster_backup.common.oauth import RemoteAuthSession
from finmaster_backup.state.session_store import EXPIRY_KEY, TOKEN_KEY, InMemorySessionStore

NOW_MS = 1_700_000_000_000


def _signed_in_session(*, configured: bool = True, expires_in_ms: int = 60_000) -> RemoteAuthSession:
    store = InMemorySessionStore()
    store.set(TOKEN_KEY, "tok-xyz")
    store.set(EXPIRY_KEY, str(NOW_MS + expires_in_ms))
    session = RemoteAuthSession(
        store=store,
        clock=lambda: NOW_MS,
        client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
    )
    if configured:
        session.configure("cid")
    return session


def _drive(
    session: RemoteAuthSession,
    handler: Callable[[httpx.Request], httpx.Response],
    **kwargs,
) -> DriveAppDataClient:
    client = httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)
    kwargs.setdefault("sleep", lambda _s: None)
    return DriveAppDataClient(session, client=client, **kwargs)


def _file(id_: str, name: str, created: str, size: str = "120") -> dict:
    return {"id": id_, "name": name, "createdTime": created, "size": size}


def test_upload_sends_multipart_related_into_app_data_folder():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=_file("f1", "finmaster_backup_2025-03-01T10-15-30-000Z.json", "2025-03-01T10:15:31.000Z", "88"),
        )

    with _drive(_signed_in_session(), handler) as drive:
        desc = drive.upload("finmaster_backup_2025-03-01T10-15-30-000Z.json", "FMB1:abc")

    assert desc.id == "f1"
    assert desc.size == 88
    assert desc.created_time is not None and desc.created_time.year == 2025

    req = seen[0]
    assert req.method == "POST"
    assert req.url.path == "/upload/drive/v3/files"
    assert req.url.params.get("uploadType") == "multipart"
    assert req.headers["Authorization"] == "Bearer tok-xyz"
    ctype = req.headers["Content-Type"]
    assert ctype.startswith("multipart/related; boundary=")
    boundary = ctype.split("boundary=")[1]

    body = req.content.decode("utf-8")
    parts = [p for p in body.split(f"--{boundary}") if p.strip() not in ("", "--")]
    assert len(parts) == 2
    meta_headers, meta_json = parts[0].split("\r\n\r\n", 1)
    assert "application/json" in meta_headers
    assert json.loads(meta_json) == {
        "name": "finmaster_backup_2025-03-01T10-15-30-000Z.json",
        "parents": ["appDataFolder"],
    }
    content_headers, content = parts[1].split("\r\n\r\n", 1)
    assert "application/octet-stream" in content_headers
    assert content.strip() == "FMB1:abc"


def test_list_queries_app_data_namespace_newest_first():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "files": [
                    _file("b", "finmaster_backup_2025-03-02T00-00-00-000Z.json", "2025-03-02T00:00:00Z"),
                    _file("a", "finmaster_backup_2025-03-01T00-00-00-000Z.json", "2025-03-01T00:00:00Z"),
                ]
            },
        )

    with _drive(_signed_in_session(), handler) as drive:
        files = drive.list()

    assert [f.id for f in files] == ["b", "a"]
    params = seen[0].url.params
    assert seen[0].url.path == "/drive/v3/files"
    assert params["spaces"] == "appDataFolder"
    assert params["orderBy"] == "createdTime desc"
    assert params["pageSize"] == str(LIST_PAGE_SIZE)
    assert "name contains 'finmaster_backup_'" in params["q"]
    assert "'appDataFolder' in parents" in params["q"]
    assert "trashed = false" in params["q"]


def test_list_handles_empty_response():
    with _drive(_signed_in_session(), lambda r: httpx.Response(200, json={})) as drive:
        assert drive.list() == []


def test_download_returns_text_and_quotes_id():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="FMB1:payload")

    with _drive(_signed_in_session(), handler) as drive:
        assert drive.download("id/with space") == "FMB1:payload"

    assert seen[0].url.raw_path.startswith(b"/drive/v3/files/id%2Fwith%20space")
    assert seen[0].url.params["alt"] == "media"


def test_delete_sends_delete():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    with _drive(_signed_in_session(), handler) as drive:
        drive.delete("f1")

    assert seen[0].method == "DELETE"
    assert seen[0].url.path == "/drive/v3/files/f1"


@pytest.mark.parametrize(
    "call",
    [
        lambda d: d.upload("n", "c"),
        lambda d: d.list(),
        lambda d: d.download("f1"),
        lambda d: d.delete("f1"),
    ],
)
def test_signed_out_calls_fail_without_network(call):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, json={})

    session = _signed_in_session(expires_in_ms=0)  # expired on load
    with _drive(session, handler) as drive:
        with pytest.raises(NotAuthenticatedError):
            call(drive)
    assert calls["n"] == 0


def test_unconfigured_session_raises_configuration_error():
    with _drive(_signed_in_session(configured=False), lambda r: httpx.Response(200, json={})) as drive:
        with pytest.raises(ConfigurationError):
            drive.list()


@pytest.mark.parametrize(
    "call",
    [
        lambda d: d.upload("n", "c"),
        lambda d: d.list(),
        lambda d: d.download("f1"),
        lambda d: d.delete("f1"),
    ],
)
def test_unauthorized_clears_session(call):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

    session = _signed_in_session()
    with _drive(session, handler) as drive:
        with pytest.raises(SessionExpiredError):
            call(drive)

    assert calls["n"] == 1  # no retry, no refresh
    assert not session.is_authenticated()


def test_provider_error_message_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": 404, "message": "File not found: f9."}})

    with _drive(_signed_in_session(), handler) as drive:
        with pytest.raises(RemoteStorageError) as info:
            drive.download("f9")

    assert "File not found: f9." in str(info.value)
    assert info.value.status_code == 404


def test_list_retries_transient_errors_then_succeeds():
    state = {"n": 0}
    sleeps: List[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        if state["n"] == 1:
            raise httpx.ConnectTimeout("slow", request=request)
        if state["n"] == 2:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"files": []})

    with _drive(_signed_in_session(), handler, sleep=sleeps.append, max_attempts=3) as drive:
        assert drive.list() == []

    assert state["n"] == 3
    assert sleeps == [0.5, 1.0]


def test_download_gives_up_after_max_attempts():
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        return httpx.Response(500, text="boom")

    with _drive(_signed_in_session(), handler, max_attempts=2) as drive:
        with pytest.raises(RemoteStorageError) as info:
            drive.download("f1")

    assert state["n"] == 2
    assert info.value.status_code == 500


@pytest.mark.parametrize(
    "call",
    [lambda d: d.upload("n", "c"), lambda d: d.delete("f1")],
)
def test_non_idempotent_calls_are_not_retried(call):
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        return httpx.Response(503, json={"error": {"message": "Backend Error"}})

    with _drive(_signed_in_session(), handler, max_attempts=5) as drive:
        with pytest.raises(RemoteStorageError, match="Backend Error"):
            call(drive)

    assert state["n"] == 1


def test_upload_transport_failure_is_not_retried():
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        raise httpx.ConnectError("offline", request=request)

    with _drive(_signed_in_session(), handler, max_attempts=5) as drive:
        with pytest.raises(RemoteStorageError) as info:
            drive.upload("n", "c")

    assert state["n"] == 1
    assert info.value.status_code is None
    assert isinstance(info.value.__cause__, httpx.ConnectError)


def test_malformed_listing_raises():
    with _drive(_signed_in_session(), lambda r: httpx.Response(200, json={"files": [{"name": "no id"}]})) as drive:
        with pytest.raises(RemoteStorageError):
            drive.list()


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        DriveAppDataClient(_signed_in_session(), max_attempts=0)
