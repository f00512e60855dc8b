from __future__ import annotations

import random
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

import structlog

from common.config import SchoolInfo
from state.models import ConversationStateName as S
from state.models import UserRecord

from . import messages as msg
from .broadcast import Broadcaster, Channel
from .machine import (
    Broadcast,
    Context,
    Directory,
    LinkStudent,
    RenderMenu,
    Reply,
    ScheduleMenu,
    StampGreeting,
    UnlinkStudent,
    transition,
)
from .messages import Inbound, TextContent


LOGGER = structlog.get_logger(__name__)


class UserStore(Protocol):
    def load(self, user_id: str) -> UserRecord: ...

    def save(self, record: UserRecord) -> None: ...


class ConversationRunner:
    """
    Executes the conversation automaton for inbound messages.

    Each `handle()` call is an isolated unit of work: any failure is logged and
    swallowed so other users and the process keep running. Records are read at
    the start of a message and written once after the transition (last write
    wins when the same user sends messages concurrently).

    Delayed menu renders are `threading.Timer`s owned per user; a newer inbound
    message from the same user cancels the pending one.
    """

    def __init__(
        self,
        *,
        channel: Channel,
        store: UserStore,
        directory: Directory,
        broadcaster: Broadcaster,
        is_admin: Callable[[str], bool],
        school: SchoolInfo,
        clock: Callable[[], datetime],
        currency: str = "L.",
        reply_delay: Tuple[float, float] = (0.0, 0.0),
        sleep: Callable[[float], None] = time.sleep,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._channel = channel
        self._store = store
        self._directory = directory
        self._broadcaster = broadcaster
        self._is_admin = is_admin
        self._school = school
        self._clock = clock
        self._currency = currency
        self._reply_delay = reply_delay
        self._sleep = sleep
        self._timer_factory = timer_factory
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._pending: Dict[str, Tuple[object, threading.Timer]] = {}

    def handle(self, inbound: Inbound) -> None:
        self.cancel_pending(inbound.sender_id)
        log = LOGGER.bind(user_id=inbound.sender_id)
        try:
            self._handle(inbound, log)
        except Exception:
            log.exception("conversation handling_failed")

    def cancel_pending(self, user_id: str) -> None:
        with self._lock:
            entry = self._pending.pop(user_id, None)
        if entry is not None:
            entry[1].cancel()

    def shutdown(self) -> None:
        with self._lock:
            timers = [timer for _, timer in self._pending.values()]
            self._pending.clear()
        for timer in timers:
            timer.cancel()

    # --------------- Internal ---------------
    def _handle(self, inbound: Inbound, log) -> None:
        user_id = inbound.sender_id
        record = self._store.load(user_id)
        admin = self._is_admin(user_id)
        ctx = Context(
            now=self._clock(),
            is_admin=admin,
            directory=self._directory,
            school=self._school,
            currency=self._currency,
        )
        previous = record.state
        outcome = transition(record, inbound, ctx)
        # A forwarded broadcast keeps the sender in ADMIN_BROADCAST until the fan-out ends
        holding = previous is S.ADMIN_BROADCAST and any(isinstance(a, Broadcast) for a in outcome.actions)

        record.state = previous if holding else outcome.state
        record.data = dict(outcome.data)
        for action in outcome.actions:
            if isinstance(action, StampGreeting):
                record.last_greeting = action.day
            elif isinstance(action, LinkStudent):
                record.link(action.student_id)
                log.info("guardian linked", student_id=action.student_id)
            elif isinstance(action, UnlinkStudent):
                record.unlink(action.student_id)
                log.info("guardian unlinked", student_id=action.student_id)
        self._store.save(record)
        if previous is not record.state:
            log.info("conversation transition", src=previous.value, dst=record.state.value)

        for action in outcome.actions:
            if isinstance(action, Reply):
                self._reply(user_id, action)
            elif isinstance(action, RenderMenu):
                self._send_menu(record, admin)
            elif isinstance(action, ScheduleMenu):
                self._schedule_menu(user_id, action.delay)
            elif isinstance(action, Broadcast):
                delivered = self._broadcaster.send(action.content)
                log.info("broadcast reported", delivered=delivered)
                if holding:
                    record.state = outcome.state
                    self._store.save(record)
                    log.info("conversation transition", src=previous.value, dst=record.state.value)
                self._channel.send(user_id, TextContent(msg.broadcast_report(delivered)))

    def _reply(self, user_id: str, action: Reply) -> None:
        low, high = self._reply_delay
        if high > 0:
            self._sleep(self._rng.uniform(low, high))
        self._channel.send(user_id, action.content)

    def _send_menu(self, record: UserRecord, admin: bool) -> None:
        self._channel.send(record.user_id, TextContent(msg.main_menu(len(record.students), is_admin=admin)))

    def _schedule_menu(self, user_id: str, delay: float) -> None:
        token = object()
        timer = self._timer_factory(delay, self._render_scheduled_menu, args=(user_id, token))
        timer.daemon = True
        with self._lock:
            stale = self._pending.pop(user_id, None)
            self._pending[user_id] = (token, timer)
        if stale is not None:
            stale[1].cancel()
        timer.start()

    def _render_scheduled_menu(self, user_id: str, token: object) -> None:
        with self._lock:
            entry = self._pending.get(user_id)
            if entry is None or entry[0] is not token:
                return
            del self._pending[user_id]
        try:
            record = self._store.load(user_id)
            self._send_menu(record, self._is_admin(user_id))
        except Exception:
            LOGGER.exception("conversation scheduled_menu_failed", user_id=user_id)


__all__ = ["ConversationRunner", "UserStore"]
