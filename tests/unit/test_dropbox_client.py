from __future__ import annotations

import json
import threading
from typing import Any, Dict, List

import httpx
import pytest

from common.dropbox import (
    DropboxApiError,
    DropboxAuth,
    DropboxAuthError,
    DropboxClient,
    DropboxError,
)


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeDropbox:
    """Routes token, metadata and download calls; tokens are numbered."""

    def __init__(self) -> None:
        self.issued = 0
        self.valid_token: str | None = None
        self.calls: List[str] = []
        self.rev = "rev-1"
        self.content = b"xlsx-bytes"
        self.expire_next = 0
        self.expired_style = "status"

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path == "/oauth2/token":
            form = dict(x.split("=", 1) for x in request.content.decode().split("&"))
            assert form["grant_type"] == "refresh_token"
            assert form["refresh_token"] == "R"
            self.issued += 1
            self.valid_token = f"T{self.issued}"
            return httpx.Response(200, json={"access_token": self.valid_token, "expires_in": 14400})

        if self.expire_next > 0 or request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            self.expire_next = max(0, self.expire_next - 1)
            body = {"error_summary": "expired_access_token/..", "error": {".tag": "expired_access_token"}}
            status = 401 if self.expired_style == "status" else 409
            return httpx.Response(status, json=body)

        if path == "/2/files/get_metadata":
            arg = json.loads(request.content)
            return httpx.Response(200, json={"path_display": arg["path"], "rev": self.rev})
        if path == "/2/files/download":
            arg = json.loads(request.headers["Dropbox-API-Arg"])
            result = {"path_display": arg["path"], "rev": self.rev, "server_modified": "2025-06-01T10:00:00Z"}
            return httpx.Response(200, content=self.content, headers={"Dropbox-API-Result": json.dumps(result)})
        if path == "/2/users/get_current_account":
            return httpx.Response(200, json={"name": {"display_name": "School Admin"}})
        return httpx.Response(404)


def _make(fake: FakeDropbox, clock: FakeClock | None = None, sleeps: List[float] | None = None):
    http = httpx.Client(transport=httpx.MockTransport(fake.handler))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http, clock=clock or FakeClock())
    sleeps = sleeps if sleeps is not None else []
    return auth, DropboxClient(auth, client=http, sleep=sleeps.append)


def test_token_is_reused_until_max_age():
    fake = FakeDropbox()
    clock = FakeClock()
    auth, _ = _make(fake, clock)

    assert auth.token() == "T1"
    clock.advance(3600)
    assert auth.token() == "T1"
    clock.advance(1)
    assert auth.token() == "T2"
    assert fake.issued == 2


def test_metadata_and_download():
    fake = FakeDropbox()
    _, dbx = _make(fake)

    meta = dbx.get_metadata("/ledger.xlsx")
    assert meta.rev == "rev-1"
    dl = dbx.download("/ledger.xlsx")
    assert dl.content == b"xlsx-bytes"
    assert dl.metadata.rev == "rev-1"
    assert dl.metadata.server_modified == "2025-06-01T10:00:00Z"
    assert fake.issued == 1


@pytest.mark.parametrize("style", ["status", "summary"])
def test_expired_token_refreshes_and_retries(style):
    fake = FakeDropbox()
    fake.expired_style = style
    auth, dbx = _make(fake)
    auth.token()
    fake.expire_next = 1

    dl = dbx.download("/ledger.xlsx")

    assert dl.content == b"xlsx-bytes"
    assert fake.issued == 2
    assert fake.calls.count("/2/files/download") == 2


def test_persistent_auth_failure_is_bounded():
    fake = FakeDropbox()
    _, dbx = _make(fake)
    fake.expire_next = 10

    with pytest.raises(DropboxError):
        dbx.get_metadata("/ledger.xlsx")
    # Three attempts plus the one earned by refreshing on the last of them
    assert fake.calls.count("/2/files/get_metadata") == 4


def test_refresh_failure_raises_auth_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http)
    with pytest.raises(DropboxAuthError):
        auth.token()


def test_transport_errors_retry_with_fixed_delay():
    fake = FakeDropbox()
    state = {"n": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/2/files/get_metadata":
            state["n"] += 1
            if state["n"] == 1:
                raise httpx.ConnectTimeout("slow", request=request)
        return fake.handler(request)

    http = httpx.Client(transport=httpx.MockTransport(flaky))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http)
    sleeps: List[float] = []
    dbx = DropboxClient(auth, client=http, retry_delay=2.0, sleep=sleeps.append)

    assert dbx.get_metadata("/ledger.xlsx").rev == "rev-1"
    assert sleeps == [2.0]


def test_path_errors_are_not_retried():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/token":
            return httpx.Response(200, json={"access_token": "T"})
        return httpx.Response(409, json={"error_summary": "path/not_found/"})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http)
    dbx = DropboxClient(auth, client=http)
    with pytest.raises(DropboxApiError):
        dbx.get_metadata("/missing.xlsx")


def test_verify_connection():
    fake = FakeDropbox()
    _, dbx = _make(fake)
    assert dbx.verify_connection() is True


def test_refresh_on_final_attempt_retries_once_more():
    fake = FakeDropbox()
    http = httpx.Client(transport=httpx.MockTransport(fake.handler))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http)
    dbx = DropboxClient(auth, client=http, max_retries=1)
    auth.token()
    fake.expire_next = 1

    assert dbx.get_metadata("/ledger.xlsx").rev == "rev-1"
    assert fake.calls.count("/2/files/get_metadata") == 2
    assert fake.issued == 2


def test_stale_invalidate_keeps_newer_token():
    fake = FakeDropbox()
    auth, _ = _make(fake)
    assert auth.token() == "T1"
    auth.invalidate("T1")
    assert auth.token() == "T2"

    auth.invalidate("T1")
    assert auth.token() == "T2"
    assert fake.issued == 2


def test_concurrent_expiry_refreshes_token_once():
    fake = FakeDropbox()
    both_rejected = threading.Barrier(2, timeout=5)

    def handler(request: httpx.Request) -> httpx.Response:
        # Both workers must see T1 rejected before either refreshes
        if request.url.path == "/2/files/get_metadata" and request.headers.get("Authorization") == "Bearer T1":
            both_rejected.wait()
            return httpx.Response(401, json={"error_summary": "expired_access_token/.."})
        return fake.handler(request)

    http = httpx.Client(transport=httpx.MockTransport(handler))
    auth = DropboxAuth(client_id="C", client_secret="S", refresh_token="R", client=http, clock=FakeClock())
    dbx = DropboxClient(auth, client=http, sleep=lambda _s: None)
    assert auth.token() == "T1"

    revs: List[str] = []
    errors: List[Exception] = []

    def worker() -> None:
        try:
            revs.append(dbx.get_metadata("/ledger.xlsx").rev)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert revs == ["rev-1", "rev-1"]
    assert fake.issued == 2
