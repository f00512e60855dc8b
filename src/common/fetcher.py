from __future__ import annotations

import time
from typing import Callable, Optional

import httpx
import structlog


LOGGER = structlog.get_logger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_TIMEOUT = 15.0

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class FetchError(RuntimeError):
    """Raised when a remote resource could not be downloaded."""


class RemoteFetcher:
    """
    Downloads binary resources over HTTP with bounded retries.

    Notes
    - Attempts `retries` times with a fixed `retry_delay` between attempts.
    - Timeouts, transport errors, 429 and 5xx are retried; other HTTP errors fail fast.
    - Exhausting retries raises `FetchError` chained to the last failure.
    """

    def __init__(
        self,
        *,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries <= 0:
            raise ValueError("retries must be > 0")
        self._retries = retries
        self._retry_delay = retry_delay
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_bytes(self, url: str) -> bytes:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._retries + 1):
            LOGGER.info("fetch attempt", url=_redact(url), attempt=attempt, retries=self._retries)
            try:
                resp = self._client.get(url)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    LOGGER.info("fetch succeeded", url=_redact(url), size=len(resp.content))
                    return resp.content
                if resp.status_code not in _RETRYABLE_STATUS:
                    raise FetchError(f"HTTP {resp.status_code} while fetching {_redact(url)}")
                last_exc = FetchError(f"HTTP {resp.status_code}")

            LOGGER.warning("fetch failed", url=_redact(url), attempt=attempt, error=str(last_exc))
            if attempt < self._retries:
                self._sleep(self._retry_delay)

        raise FetchError(f"Failed to fetch {_redact(url)} after {self._retries} attempts") from last_exc


def _redact(url: str) -> str:
    # Shared links carry access keys in the query string
    return url.split("?", 1)[0]


__all__ = ["RemoteFetcher", "FetchError"]
