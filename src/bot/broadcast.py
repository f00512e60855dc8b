from __future__ import annotations

import random
import time
from typing import Callable, Iterable, Optional, Protocol

import structlog

from .messages import Content


LOGGER = structlog.get_logger(__name__)


class Channel(Protocol):
    def send(self, recipient_id: str, content: Content) -> None: ...


class Broadcaster:
    """
    Sequential fan-out of one content item to every guardian.

    - Sends one recipient at a time, waiting a random `min_delay`..`max_delay`
      seconds between sends to stay under upstream rate limits.
    - A failed send is logged and skipped; it does not stop the fan-out.
    - Returns the number of recipients the channel accepted.
    """

    def __init__(
        self,
        channel: Channel,
        recipients: Callable[[], Iterable[str]],
        *,
        min_delay: float = 1.0,
        max_delay: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("require 0 <= min_delay <= max_delay")
        self._channel = channel
        self._recipients = recipients
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    def send(self, content: Content) -> int:
        targets = list(self._recipients())
        LOGGER.info("broadcast started", recipients=len(targets), kind=type(content).__name__)
        delivered = 0
        for i, recipient in enumerate(targets):
            try:
                self._channel.send(recipient, content)
            except Exception:
                LOGGER.exception("broadcast send_failed", recipient=recipient)
            else:
                delivered += 1
            if i < len(targets) - 1:
                self._sleep(self._rng.uniform(self._min_delay, self._max_delay))
        LOGGER.info("broadcast finished", delivered=delivered, recipients=len(targets))
        return delivered


__all__ = ["Broadcaster", "Channel"]
