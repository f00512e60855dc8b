from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import structlog


LOGGER = structlog.get_logger(__name__)

TOKEN_URL = "https://api.dropbox.com/oauth2/token"
API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"

TOKEN_MAX_AGE = 3600.0


class DropboxError(RuntimeError):
    """Base error for the Dropbox client."""


class DropboxAuthError(DropboxError):
    """The access token could not be obtained or renewed."""


class DropboxApiError(DropboxError):
    """The API answered with a non-retryable error."""


@dataclass(frozen=True)
class FileMetadata:
    path: str
    rev: str
    server_modified: Optional[str] = None


@dataclass(frozen=True)
class Download:
    content: bytes
    metadata: FileMetadata


class DropboxAuth:
    """
    Holds one OAuth2 bearer token obtained from a long-lived refresh token.

    - `token()` refreshes when no token is held or the held one is older than `max_age`.
    - `invalidate(stale)` drops the held token only while it is still `stale`, so
      callers that saw the same rejected token trigger a single refresh.
    - Refreshes are serialized by a lock; a caller arriving while another thread
      refreshes reuses the fresh token instead of requesting a second one.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        max_age: float = TOKEN_MAX_AGE,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not client_id or not client_secret or not refresh_token:
            raise ValueError("client_id, client_secret and refresh_token are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._max_age = max_age
        self._client = client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._refreshed_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        if self._token is None or self._refreshed_at is None:
            return False
        return (self._clock() - self._refreshed_at) <= self._max_age

    def token(self) -> str:
        if self._is_fresh():
            return self._token  # type: ignore[return-value]
        with self._lock:
            if self._is_fresh():
                return self._token  # type: ignore[return-value]
            return self._refresh_locked()

    def invalidate(self, stale: Optional[str] = None) -> None:
        with self._lock:
            if stale is not None and self._token != stale:
                return
            self._token = None
            self._refreshed_at = None

    def _refresh_locked(self) -> str:
        LOGGER.info("dropbox token refresh_started")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            resp = self._client.post(TOKEN_URL, data=data)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            LOGGER.error("dropbox token refresh_failed", error=str(exc))
            raise DropboxAuthError("Could not renew the Dropbox access token") from exc
        if resp.status_code != 200:
            LOGGER.error("dropbox token refresh_failed", status=resp.status_code, body=resp.text[:200])
            raise DropboxAuthError(f"Could not renew the Dropbox access token (HTTP {resp.status_code})")
        try:
            token = resp.json()["access_token"]
        except (ValueError, KeyError) as exc:
            raise DropboxAuthError("Token endpoint returned no access_token") from exc

        self._token = token
        self._refreshed_at = self._clock()
        LOGGER.info("dropbox token refreshed")
        return token


def _is_expired_token(resp: httpx.Response) -> bool:
    if resp.status_code == 401:
        return True
    try:
        body = resp.json()
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    summary = body.get("error_summary")
    if isinstance(summary, str) and summary.startswith("expired_access_token"):
        return True
    err = body.get("error")
    return isinstance(err, dict) and err.get(".tag") == "expired_access_token"


class DropboxClient:
    """
    Minimal Dropbox HTTP API client for file metadata and downloads.

    Notes
    - An unauthorized answer (HTTP 401 or an `expired_access_token` error) drops
      the held token, refreshes it synchronously and retries the same call.
    - Timeouts and transport errors are retried with a fixed delay.
    - Both kinds of retry share the `max_retries` bound, except that a refresh
      triggered by the final attempt earns one more attempt with the new token.
    """

    def __init__(
        self,
        auth: DropboxAuth,
        *,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._auth = auth
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "DropboxClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def get_metadata(self, path: str) -> FileMetadata:
        resp = self._call(f"{API_BASE}/files/get_metadata", json_body={"path": path})
        return _metadata_from(resp.json(), path)

    def download(self, path: str) -> Download:
        resp = self._call(
            f"{CONTENT_BASE}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": path})},
        )
        raw = resp.headers.get("Dropbox-API-Result")
        try:
            meta = json.loads(raw) if raw else {}
        except ValueError as exc:
            raise DropboxApiError("Malformed Dropbox-API-Result header") from exc
        return Download(content=resp.content, metadata=_metadata_from(meta, path))

    def current_account_name(self) -> str:
        resp = self._call(f"{API_BASE}/users/get_current_account")
        body = resp.json()
        name = body.get("name", {}).get("display_name") if isinstance(body, dict) else None
        if not isinstance(name, str) or not name:
            raise DropboxApiError("Unexpected response from get_current_account")
        return name

    def verify_connection(self) -> bool:
        """Return True when the credentials reach a Dropbox account."""
        try:
            name = self.current_account_name()
        except DropboxError as exc:
            LOGGER.error("dropbox connection_failed", error=str(exc))
            return False
        LOGGER.info("dropbox connected", account=name)
        return True

    # --------------- Internal ---------------
    def _call(
        self,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        last_exc: Optional[Exception] = None
        limit = self._max_retries
        attempt = 0
        while attempt < limit:
            attempt += 1
            token = self._auth.token()
            req_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
            try:
                if json_body is not None:
                    resp = self._client.post(url, json=json_body, headers=req_headers)
                else:
                    resp = self._client.post(url, headers=req_headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                LOGGER.warning("dropbox request failed", url=url, attempt=attempt, error=str(exc))
                if attempt < limit:
                    self._sleep(self._retry_delay)
                continue

            if resp.status_code == 200:
                return resp
            if _is_expired_token(resp):
                LOGGER.info("dropbox token expired", attempt=attempt, retries=limit)
                self._auth.invalidate(token)
                self._auth.token()
                if attempt == self._max_retries:
                    limit = self._max_retries + 1
                last_exc = DropboxAuthError("Access token expired")
                continue
            if resp.status_code in (429, 500, 502, 503, 504):
                last_exc = DropboxApiError(f"HTTP {resp.status_code} from Dropbox")
                if attempt < limit:
                    self._sleep(self._retry_delay)
                continue
            raise DropboxApiError(f"HTTP {resp.status_code} from Dropbox: {resp.text[:200]}")

        LOGGER.error("dropbox request exhausted", url=url, attempts=attempt)
        raise DropboxError(f"Dropbox request failed after {attempt} attempts") from last_exc


def _metadata_from(payload: Dict[str, Any], path: str) -> FileMetadata:
    rev = payload.get("rev") if isinstance(payload, dict) else None
    if not isinstance(rev, str) or not rev:
        raise DropboxApiError(f"No revision in metadata for {path}")
    return FileMetadata(
        path=str(payload.get("path_display") or path),
        rev=rev,
        server_modified=payload.get("server_modified"),
    )


__all__ = [
    "DropboxAuth",
    "DropboxClient",
    "DropboxError",
    "DropboxAuthError",
    "DropboxApiError",
    "FileMetadata",
    "Download",
]
