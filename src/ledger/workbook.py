from __future__ import annotations

import threading
import time
from io import BytesIO
from typing import Any, Callable, Optional

import structlog
from openpyxl import load_workbook


LOGGER = structlog.get_logger(__name__)

DEFAULT_TTL = 3600.0


def parse_workbook(content: bytes) -> Any:
    # data_only exposes the cached result of formula cells
    return load_workbook(BytesIO(content), read_only=False, data_only=True)


class WorkbookCache:
    """
    Process-wide parsed ledger workbook with a TTL refresh policy.

    - `get()` reuses the held workbook until `ttl` seconds elapsed since the last
      successful refresh; then the whole workbook is reloaded.
    - No fingerprint check and no partial invalidation.
    - Refreshes are single-flight: concurrent callers hitting an expired entry
      wait for one reload instead of downloading the file several times.
    - A failed refresh leaves the previous workbook untouched and propagates.
    """

    def __init__(
        self,
        loader: Callable[[], bytes],
        *,
        ttl: float = DEFAULT_TTL,
        parse: Callable[[bytes], Any] = parse_workbook,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl
        self._parse = parse
        self._clock = clock
        self._lock = threading.Lock()
        self._workbook: Optional[Any] = None
        self._fetched_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        if self._workbook is None or self._fetched_at is None:
            return False
        return (self._clock() - self._fetched_at) <= self._ttl

    def get(self) -> Any:
        if self._is_fresh():
            return self._workbook
        with self._lock:
            if self._is_fresh():
                return self._workbook
            LOGGER.info("workbook refresh_started")
            content = self._loader()
            workbook = self._parse(content)
            self._workbook = workbook
            self._fetched_at = self._clock()
            LOGGER.info("workbook refreshed", sheets=list(getattr(workbook, "sheetnames", [])))
            return workbook

    def invalidate(self) -> None:
        with self._lock:
            self._workbook = None
            self._fetched_at = None


__all__ = ["WorkbookCache", "parse_workbook"]
