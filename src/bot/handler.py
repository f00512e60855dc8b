from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from common.admins import AdminPolicy
from common.config import Settings
from common.content_cache import ContentCache
from common.dropbox import DropboxAuth, DropboxClient
from common.fetcher import RemoteFetcher
from common.log import configure_logging
from common.telegram import TelegramApiError, TelegramClient, TelegramError
from ledger.directory import StudentDirectory
from ledger.parser import LedgerColumns
from ledger.workbook import WorkbookCache
from state.s3_store import S3UserStore

from .broadcast import Broadcaster
from .messages import (
    AudioContent,
    Content,
    DocumentContent,
    ImageContent,
    Inbound,
    StickerContent,
    TextContent,
    VideoContent,
)
from .runner import ConversationRunner


LOGGER = structlog.get_logger(__name__)

POLL_TIMEOUT = 30


class TelegramChannel:
    """Outbound side of the chat channel on top of the Bot API."""

    def __init__(self, client: TelegramClient) -> None:
        self._tg = client

    def send(self, recipient_id: str, content: Content) -> None:
        if isinstance(content, TextContent):
            try:
                self._tg.send_message(recipient_id, content.text, parse_mode="Markdown")
            except TelegramApiError:
                # Free text (names, broadcasts) may not be valid Markdown
                self._tg.send_message(recipient_id, content.text)
        elif isinstance(content, ImageContent):
            self._tg.send_photo(recipient_id, content.media, caption=content.caption)
        elif isinstance(content, VideoContent):
            self._tg.send_video(recipient_id, content.media, caption=content.caption)
        elif isinstance(content, AudioContent):
            self._tg.send_audio(recipient_id, content.media, mimetype=content.mimetype)
        elif isinstance(content, DocumentContent):
            self._tg.send_document(
                recipient_id, content.media, filename=content.filename, mimetype=content.mimetype
            )
        elif isinstance(content, StickerContent):
            self._tg.send_sticker(recipient_id, content.media)
        else:
            raise TypeError(f"Unsupported content: {type(content).__name__}")


def _content_of(message: Dict[str, Any]) -> Optional[Content]:
    caption = message.get("caption") if isinstance(message.get("caption"), str) else ""
    text = message.get("text")
    if isinstance(text, str):
        return TextContent(text)
    photos = message.get("photo")
    if isinstance(photos, list) and photos:
        # Sizes are ascending; the last one is the original resolution
        return ImageContent(photos[-1]["file_id"], caption=caption)
    if isinstance(message.get("video"), dict):
        return VideoContent(message["video"]["file_id"], caption=caption)
    for key in ("audio", "voice"):
        audio = message.get(key)
        if isinstance(audio, dict):
            return AudioContent(audio["file_id"], mimetype=audio.get("mime_type") or "audio/mpeg")
    doc = message.get("document")
    if isinstance(doc, dict):
        return DocumentContent(
            doc["file_id"],
            filename=doc.get("file_name") or "document",
            mimetype=doc.get("mime_type") or "application/octet-stream",
        )
    if isinstance(message.get("sticker"), dict):
        return StickerContent(message["sticker"]["file_id"])
    return None


def update_to_inbound(update: Dict[str, Any]) -> Optional[Inbound]:
    """Resolve a raw Telegram update into an `Inbound`, or None when irrelevant."""
    msg = update.get("message") if isinstance(update, dict) else None
    if not isinstance(msg, dict):
        return None
    sender = msg.get("from")
    if isinstance(sender, dict) and sender.get("is_bot"):
        return None
    chat = msg.get("chat")
    if not isinstance(chat, dict) or chat.get("id") is None:
        return None
    content = _content_of(msg)
    if content is None:
        return None
    return Inbound(sender_id=str(chat["id"]), content=content)


def _next_offset(updates: List[Dict[str, Any]], current: Optional[int]) -> Optional[int]:
    out = current
    for upd in updates:
        try:
            uid = int(upd.get("update_id"))
        except (TypeError, ValueError):
            continue
        if out is None or uid + 1 > out:
            out = uid + 1
    return out


class PollingService:
    """
    Long-running Telegram poller dispatching each message to a worker thread.

    Messages of different users (and of the same user) run concurrently; the
    runner isolates failures per message.
    """

    def __init__(
        self,
        client: TelegramClient,
        runner: ConversationRunner,
        *,
        workers: int = 8,
        poll_timeout: int = POLL_TIMEOUT,
    ) -> None:
        self._tg = client
        self._runner = runner
        self._poll_timeout = poll_timeout
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conversation")
        self._offset: Optional[int] = None

    def poll_once(self) -> int:
        updates = self._tg.get_updates(
            offset=self._offset, limit=100, timeout=self._poll_timeout, allowed_updates=["message"]
        )
        self._offset = _next_offset(updates, self._offset)
        dispatched = 0
        for upd in updates:
            inbound = update_to_inbound(upd)
            if inbound is None:
                continue
            self._pool.submit(self._runner.handle, inbound)
            dispatched += 1
        return dispatched

    def run_forever(self, stop: threading.Event) -> None:
        LOGGER.info("bot started")
        try:
            while not stop.is_set():
                try:
                    self.poll_once()
                except TelegramError as exc:
                    LOGGER.error("telegram poll_failed", error=str(exc))
                    stop.wait(3.0)
        finally:
            self._runner.shutdown()
            self._pool.shutdown(wait=True)
            LOGGER.info("bot stopped")


def _ledger_loader(settings: Settings) -> Callable[[], bytes]:
    if settings.ledger_dropbox_path:
        creds = settings.dropbox
        if creds is None:
            raise RuntimeError("Missing required configuration: Dropbox credentials")
        auth = DropboxAuth(
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            refresh_token=creds.refresh_token,
        )
        dropbox = DropboxClient(auth)
        dropbox.verify_connection()
        cache = ContentCache(dropbox, settings.cache_dir)
        path = settings.ledger_dropbox_path
        return lambda: cache.get(path)

    fetcher = RemoteFetcher()
    url = settings.ledger_url or ""
    return lambda: fetcher.get_bytes(url)


def build_service(settings: Settings) -> PollingService:
    tz = ZoneInfo(settings.timezone)
    client = TelegramClient(settings.telegram_bot_token)
    channel = TelegramChannel(client)
    store = S3UserStore(bucket=settings.state_bucket, prefix=settings.state_prefix, fernet_key=settings.fernet_key)

    workbook = WorkbookCache(_ledger_loader(settings), ttl=settings.workbook_ttl)
    directory = StudentDirectory(
        workbook,
        columns=LedgerColumns.from_json(settings.ledger_columns_json),
        sheet_name=settings.ledger_sheet,
        sheet_index=settings.ledger_sheet_index,
        header_rows=settings.ledger_header_rows,
    )
    admins = AdminPolicy(settings.admin_ids)
    if not admins:
        LOGGER.warning("config no_admins")

    runner = ConversationRunner(
        channel=channel,
        store=store,
        directory=directory,
        broadcaster=Broadcaster(channel, store.guardians),
        is_admin=admins,
        school=settings.school,
        clock=lambda: datetime.now(tz),
        currency=settings.currency,
        reply_delay=settings.reply_delay,
    )
    return PollingService(client, runner, workers=settings.workers)


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level, fmt=settings.log_format)
    service = build_service(settings)
    stop = threading.Event()
    try:
        service.run_forever(stop)
    except KeyboardInterrupt:
        LOGGER.info("bot interrupted")


if __name__ == "__main__":
    main()
