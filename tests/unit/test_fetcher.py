from __future__ import annotations

import httpx
import pytest

from common.fetcher import FetchError, RemoteFetcher


URL = "https://files.example.com/ledger.xlsx?rlkey=secret&dl=1"


def _fetcher(handler, sleeps):
    client = httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)
    return RemoteFetcher(retries=3, retry_delay=2.0, client=client, sleep=sleeps.append)


def test_returns_bytes_on_success():
    sleeps: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params.get("dl") == "1"
        return httpx.Response(200, content=b"PK\x03\x04")

    with _fetcher(handler, sleeps) as f:
        assert f.get_bytes(URL) == b"PK\x03\x04"
    assert sleeps == []


def test_retries_timeouts_with_fixed_delay_then_succeeds():
    sleeps: list = []
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        if state["n"] < 3:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, content=b"ok")

    with _fetcher(handler, sleeps) as f:
        assert f.get_bytes(URL) == b"ok"
    assert state["n"] == 3
    assert sleeps == [2.0, 2.0]


def test_exhausting_retries_raises_fetch_error():
    sleeps: list = []
    state = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["n"] += 1
        if state["n"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(503, text="unavailable")

    with _fetcher(handler, sleeps) as f:
        with pytest.raises(FetchError):
            f.get_bytes(URL)
    assert state["n"] == 3
    # No wait after the final attempt
    assert sleeps == [2.0, 2.0]


def test_non_retryable_status_fails_fast():
    sleeps: list = []
    state = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        state["n"] += 1
        return httpx.Response(404, text="missing")

    with _fetcher(handler, sleeps) as f:
        with pytest.raises(FetchError) as ei:
            f.get_bytes(URL)
    assert state["n"] == 1
    assert "secret" not in str(ei.value)


def test_rejects_non_positive_retries():
    with pytest.raises(ValueError):
        RemoteFetcher(retries=0)
