from __future__ import annotations

import hashlib
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, Protocol

import structlog

from .dropbox import Download, DropboxError, FileMetadata


LOGGER = structlog.get_logger(__name__)

DEFAULT_CACHE_DIR_ENV = "SCHOOLPAY_CACHE_DIR"


def _default_cache_dir() -> Path:
    base = os.environ.get(DEFAULT_CACHE_DIR_ENV)
    if base:
        return Path(base)
    return Path(tempfile.gettempdir()) / "dropbox_cache_v2"


class RemoteStore(Protocol):
    def get_metadata(self, path: str) -> FileMetadata: ...

    def download(self, path: str) -> Download: ...


@dataclass
class _Entry:
    rev: str
    sha256: str
    server_modified: Optional[str]
    cached_at: str  # ISO 8601 timestamp with offset


class ContentCache:
    """
    On-disk cache of remote files keyed by their logical path.

    - Each path maps to `<sha256(path)>` (bytes) plus `<sha256(path)>.meta` (JSON).
    - A cached entry is served only while the remote revision still matches.
    - Both files are written through temp files and `os.replace`; the metadata
      records the blob digest so a half-replaced pair reads as a miss.
    """

    def __init__(self, store: RemoteStore, cache_dir: Optional[os.PathLike[str] | str] = None) -> None:
        self._store = store
        self._dir = Path(cache_dir) if cache_dir else _default_cache_dir()

    @staticmethod
    def _key(path: str) -> str:
        return hashlib.sha256(path.encode("utf-8")).hexdigest()

    def _blob_path(self, path: str) -> Path:
        return self._dir / self._key(path)

    def _meta_path(self, path: str) -> Path:
        return self._dir / f"{self._key(path)}.meta"

    def get(self, path: str, *, use_cache: bool = True, force_refresh: bool = False) -> bytes:
        """Return the file content for `path`, downloading only when stale."""
        if use_cache and not force_refresh:
            cached = self._read_entry(path)
            if cached is not None:
                entry, blob = cached
                try:
                    current = self._store.get_metadata(path)
                except DropboxError as exc:
                    LOGGER.warning("content-cache metadata_failed", path=path, error=str(exc))
                else:
                    if current.rev == entry.rev:
                        LOGGER.info("content-cache hit", path=path, rev=entry.rev)
                        return blob
                    LOGGER.info("content-cache stale", path=path, cached=entry.rev, current=current.rev)

        download = self._store.download(path)
        if use_cache:
            self._write_entry(path, download)
        LOGGER.info("content-cache downloaded", path=path, rev=download.metadata.rev, size=len(download.content))
        return download.content

    def _read_entry(self, path: str) -> Optional[tuple[_Entry, bytes]]:
        blob_path = self._blob_path(path)
        meta_path = self._meta_path(path)
        if not blob_path.exists() or not meta_path.exists():
            return None
        try:
            with meta_path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            entry = _Entry(
                rev=str(raw["rev"]),
                sha256=str(raw["sha256"]),
                server_modified=raw.get("server_modified"),
                cached_at=str(raw.get("cached_at", "")),
            )
            blob = blob_path.read_bytes()
        except (OSError, ValueError, KeyError, TypeError):
            return None
        if hashlib.sha256(blob).hexdigest() != entry.sha256:
            return None
        return entry, blob

    def _write_entry(self, path: str, download: Download) -> None:
        entry = _Entry(
            rev=download.metadata.rev,
            sha256=hashlib.sha256(download.content).hexdigest(),
            server_modified=download.metadata.server_modified,
            cached_at=datetime.now(UTC).isoformat(timespec="seconds"),
        )
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            _atomic_write(self._blob_path(path), download.content)
            _atomic_write(self._meta_path(path), json.dumps(entry.__dict__, sort_keys=True).encode("utf-8"))
        except OSError as exc:
            # The download already succeeded; the caller still gets fresh bytes
            LOGGER.warning("content-cache write_failed", path=path, error=str(exc))


def _atomic_write(target: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, target)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


__all__ = ["ContentCache", "RemoteStore"]
