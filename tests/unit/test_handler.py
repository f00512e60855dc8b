from __future__ import annotations

import threading
from typing import Any, Dict, List

import pytest

from bot.handler import PollingService, TelegramChannel, _ledger_loader, _next_offset, update_to_inbound
from bot.messages import (
    AudioContent,
    DocumentContent,
    ImageContent,
    StickerContent,
    TextContent,
    VideoContent,
)
from common.config import Settings
from common.telegram import TelegramApiError, TelegramError


def _update(update_id: int, **message: Any) -> Dict[str, Any]:
    base = {"message_id": 1, "chat": {"id": 1001, "type": "private"}, "from": {"id": 1001, "is_bot": False}}
    base.update(message)
    return {"update_id": update_id, "message": base}


@pytest.mark.parametrize(
    "message, expected",
    [
        ({"text": " 2 "}, TextContent(" 2 ")),
        (
            {"photo": [{"file_id": "small"}, {"file_id": "large"}], "caption": "Trip"},
            ImageContent("large", caption="Trip"),
        ),
        ({"video": {"file_id": "v1"}}, VideoContent("v1")),
        ({"voice": {"file_id": "a1", "mime_type": "audio/ogg"}}, AudioContent("a1", mimetype="audio/ogg")),
        (
            {"document": {"file_id": "d1", "file_name": "fees.pdf", "mime_type": "application/pdf"}},
            DocumentContent("d1", filename="fees.pdf", mimetype="application/pdf"),
        ),
        ({"sticker": {"file_id": "s1"}}, StickerContent("s1")),
    ],
)
def test_update_to_inbound_content_kinds(message, expected):
    inbound = update_to_inbound(_update(1, **message))
    assert inbound is not None
    assert inbound.sender_id == "1001"
    assert inbound.content == expected


def test_update_to_inbound_skips_irrelevant_updates():
    assert update_to_inbound({"update_id": 1, "edited_message": {"text": "x"}}) is None
    assert update_to_inbound(_update(2, text="x", **{"from": {"id": 9, "is_bot": True}})) is None
    assert update_to_inbound(_update(3, chat={})) is None
    assert update_to_inbound(_update(4, location={"latitude": 0})) is None


def test_next_offset_moves_past_highest_update():
    assert _next_offset([{"update_id": 4}, {"update_id": 9}, {"update_id": "bad"}], None) == 10
    assert _next_offset([], 7) == 7


class _FakeTG:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.markdown_fails = False

    def send_message(self, chat_id, text, *, parse_mode=None):
        self.calls.append(("message", chat_id, text, parse_mode))
        if parse_mode and self.markdown_fails:
            raise TelegramApiError("can't parse entities")
        return {}

    def send_photo(self, chat_id, photo, *, caption=""):
        self.calls.append(("photo", chat_id, photo, caption))

    def send_video(self, chat_id, video, *, caption=""):
        self.calls.append(("video", chat_id, video, caption))

    def send_audio(self, chat_id, audio, *, mimetype="audio/mpeg"):
        self.calls.append(("audio", chat_id, audio, mimetype))

    def send_document(self, chat_id, document, *, filename="document", mimetype="application/octet-stream"):
        self.calls.append(("document", chat_id, document, filename, mimetype))

    def send_sticker(self, chat_id, sticker):
        self.calls.append(("sticker", chat_id, sticker))


def test_channel_sends_markdown_text():
    tg = _FakeTG()
    TelegramChannel(tg).send("1", TextContent("*MENU*"))
    assert tg.calls == [("message", "1", "*MENU*", "Markdown")]


def test_channel_falls_back_to_plain_text_when_markdown_is_rejected():
    tg = _FakeTG()
    tg.markdown_fails = True
    TelegramChannel(tg).send("1", TextContent("O'Brien_x"))
    assert tg.calls[-1] == ("message", "1", "O'Brien_x", None)


def test_channel_dispatches_media_kinds():
    tg = _FakeTG()
    channel = TelegramChannel(tg)
    channel.send("1", ImageContent(b"\x89PNG", caption="c"))
    channel.send("1", DocumentContent("d1", filename="a.pdf", mimetype="application/pdf"))
    channel.send("1", StickerContent("s1"))
    assert [c[0] for c in tg.calls] == ["photo", "document", "sticker"]
    assert tg.calls[0][2] == b"\x89PNG"


class _PollTG:
    def __init__(self, batches: List[List[Dict[str, Any]]], stop: threading.Event) -> None:
        self._batches = batches
        self._stop = stop
        self.offsets: List[Any] = []

    def get_updates(self, *, offset=None, limit=100, timeout=0, allowed_updates=None):
        self.offsets.append(offset)
        if not self._batches:
            self._stop.set()
            return []
        batch = self._batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class _Runner:
    def __init__(self) -> None:
        self.handled: List[Any] = []
        self.shut = False
        self._lock = threading.Lock()

    def handle(self, inbound) -> None:
        with self._lock:
            self.handled.append(inbound)

    def shutdown(self) -> None:
        self.shut = True


def test_polling_dispatches_messages_and_advances_offset():
    stop = threading.Event()
    tg = _PollTG(
        [
            [_update(10, text="hi"), {"update_id": 11, "edited_message": {}}],
            [_update(12, text="2")],
        ],
        stop,
    )
    runner = _Runner()
    service = PollingService(tg, runner, workers=2, poll_timeout=0)

    service.run_forever(stop)

    assert tg.offsets == [None, 12, 13]
    assert sorted(i.text for i in runner.handled) == ["2", "hi"]
    assert runner.shut is True


def test_poll_once_reports_dispatched_count():
    stop = threading.Event()
    tg = _PollTG([[_update(1, text="a"), _update(2, video={"file_id": "v"})]], stop)
    runner = _Runner()
    service = PollingService(tg, runner, workers=1)
    assert service.poll_once() == 2
    stop.set()
    service.run_forever(stop)
    assert len(runner.handled) == 2


def test_polling_survives_telegram_errors(monkeypatch):
    stop = threading.Event()
    tg = _PollTG([TelegramError("down"), [_update(5, text="x")]], stop)
    runner = _Runner()
    service = PollingService(tg, runner, workers=1)
    monkeypatch.setattr(stop, "wait", lambda _t: False)

    service.run_forever(stop)

    assert len(runner.handled) == 1


def test_dropbox_ledger_without_credentials_fails_with_configuration_error():
    settings = Settings.model_construct(ledger_dropbox_path="/Finance/ledger.xlsx", dropbox=None)
    with pytest.raises(RuntimeError, match="Dropbox credentials"):
        _ledger_loader(settings)
