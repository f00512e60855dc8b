from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import structlog


LOGGER = structlog.get_logger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"

ChatId = Union[int, str]
# Raw bytes to upload, or a Telegram file_id to re-send without uploading
InputFile = Union[bytes, str]


class TelegramError(RuntimeError):
    """Base error for Telegram client."""


class TelegramApiError(TelegramError):
    """API returned an error payload or unexpected structure."""


class TelegramClient:
    """
    Minimal Telegram Bot API client for a long-polling chat bot.

    Notes
    - Text and file_id requests use JSON bodies; byte uploads use multipart.
    - Retries transport errors, 5xx and 429 with backoff, honoring `retry_after`.
    - `get_updates` long-polls; its HTTP timeout is stretched past the poll timeout.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        base_url = f"{self._api_base}/bot{self._token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=self._timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def get_updates(
        self,
        *,
        offset: Optional[int] = None,
        limit: int = 100,
        timeout: int = 0,
        allowed_updates: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"limit": limit, "timeout": timeout}
        if offset is not None:
            payload["offset"] = offset
        if allowed_updates is not None:
            payload["allowed_updates"] = allowed_updates
        result = self._call("getUpdates", payload, http_timeout=self._timeout + timeout)
        if not isinstance(result, list):
            raise TelegramApiError("getUpdates returned a non-list result")
        return result

    def send_message(self, chat_id: ChatId, text: str, *, parse_mode: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        return self._call("sendMessage", payload)

    def send_photo(self, chat_id: ChatId, photo: InputFile, *, caption: str = "") -> Dict[str, Any]:
        return self._send_file("sendPhoto", "photo", chat_id, photo, ("photo.jpg", "image/jpeg"), caption=caption)

    def send_video(self, chat_id: ChatId, video: InputFile, *, caption: str = "") -> Dict[str, Any]:
        return self._send_file("sendVideo", "video", chat_id, video, ("video.mp4", "video/mp4"), caption=caption)

    def send_audio(self, chat_id: ChatId, audio: InputFile, *, mimetype: str = "audio/mpeg") -> Dict[str, Any]:
        return self._send_file("sendAudio", "audio", chat_id, audio, ("audio", mimetype))

    def send_document(
        self,
        chat_id: ChatId,
        document: InputFile,
        *,
        filename: str = "document",
        mimetype: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        return self._send_file("sendDocument", "document", chat_id, document, (filename, mimetype))

    def send_sticker(self, chat_id: ChatId, sticker: InputFile) -> Dict[str, Any]:
        return self._send_file("sendSticker", "sticker", chat_id, sticker, ("sticker.webp", "image/webp"))

    # --------------- Internal ---------------
    def _send_file(
        self,
        method: str,
        field: str,
        chat_id: ChatId,
        media: InputFile,
        upload: Tuple[str, str],
        *,
        caption: str = "",
    ) -> Dict[str, Any]:
        if isinstance(media, str):
            payload: Dict[str, Any] = {"chat_id": chat_id, field: media}
            if caption:
                payload["caption"] = caption
            return self._call(method, payload)
        form = {"chat_id": str(chat_id)}
        if caption:
            form["caption"] = caption
        filename, mimetype = upload
        return self._call(method, form=form, files={field: (filename, media, mimetype)})

    def _call(
        self,
        method: str,
        json_body: Optional[Dict[str, Any]] = None,
        *,
        form: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
        http_timeout: Optional[float] = None,
    ) -> Any:
        data = self._request(method, json_body, form=form, files=files, http_timeout=http_timeout)
        # Expect Telegram's envelope: { ok: bool, result?: ..., description?: str }
        if not isinstance(data, dict) or "ok" not in data:
            raise TelegramApiError("Malformed response from Telegram Bot API")
        if data.get("ok") is True and "result" in data:
            return data["result"]
        desc = data.get("description") or "Telegram API error"
        code = data.get("error_code")
        raise TelegramApiError(f"{desc} (code={code})")

    def _request(
        self,
        method: str,
        json_body: Optional[Dict[str, Any]],
        *,
        form: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
        http_timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        timeout = http_timeout if http_timeout is not None else self._timeout
        while attempt < 5:
            try:
                if files is not None:
                    resp = self._client.post(f"/{method}", data=form, files=files, timeout=timeout)
                else:
                    resp = self._client.post(f"/{method}", json=json_body, timeout=timeout)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise TelegramApiError("Failed to parse JSON from Telegram API") from exc

                if resp.status_code in (429, 500, 502, 503, 504):
                    retry_after = _retry_after(resp)
                    delay = retry_after if retry_after is not None else backoff
                    LOGGER.warning("telegram throttled", method=method, status=resp.status_code, delay=delay)
                    self._sleep(min(delay, 30.0))
                    backoff = min(backoff * 2, 8.0)
                    attempt += 1
                    last_exc = TelegramApiError(f"HTTP {resp.status_code} from Telegram")
                    continue

                raise TelegramApiError(
                    f"HTTP {resp.status_code} from Telegram: {resp.text[:200]}"
                )

            # Transport error path
            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise TelegramError("Failed request after retries") from last_exc
        raise TelegramError("Failed request after retries (unknown error)")


def _retry_after(resp: httpx.Response) -> Optional[float]:
    # Telegram 429 includes { ok:false, error_code:429, parameters: { retry_after: N } }
    try:
        body = resp.json()
    except ValueError:
        return None
    params = body.get("parameters") if isinstance(body, dict) else None
    if isinstance(params, dict):
        ra = params.get("retry_after")
        if isinstance(ra, (int, float)):
            return float(ra)
    return None


__all__ = [
    "TelegramClient",
    "TelegramError",
    "TelegramApiError",
]
