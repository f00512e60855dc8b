"""Per-user conversation automaton.

`transition(record, inbound, ctx)` is a pure function of the stored record, the
inbound message and a read-only context. It returns the next state, the next
auxiliary payload and the actions the runner must carry out. Student lookups
go through `ctx.directory`, which only reads the cached ledger.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from common.config import SchoolInfo
from ledger.debt import calculate_debt
from ledger.directory import LedgerUnavailable
from ledger.models import Student
from state.models import ConversationStateName as S
from state.models import UserRecord

from . import messages as msg
from .messages import Content, Inbound, TextContent


STUDENT_ID_RE = re.compile(r"^\d{13}$")
INDEX_RE = re.compile(r"^\d+$")
BROADCAST_PREFIXES = ("broadcast ", "bc ")

STATUS_MENU_DELAY = 15.0
FOLLOW_UP_MENU_DELAY = 1.5


# -------------------- Actions --------------------

@dataclass(frozen=True)
class Reply:
    content: Content


@dataclass(frozen=True)
class RenderMenu:
    """Send the main menu for the record as it stands after the transition."""


@dataclass(frozen=True)
class ScheduleMenu:
    delay: float


@dataclass(frozen=True)
class LinkStudent:
    student_id: str


@dataclass(frozen=True)
class UnlinkStudent:
    student_id: str


@dataclass(frozen=True)
class Broadcast:
    content: Content


@dataclass(frozen=True)
class StampGreeting:
    day: date


Action = Union[Reply, RenderMenu, ScheduleMenu, LinkStudent, UnlinkStudent, Broadcast, StampGreeting]


@dataclass(frozen=True)
class Outcome:
    state: S
    data: Dict[str, Any] = field(default_factory=dict)
    actions: Tuple[Action, ...] = ()


class Directory(Protocol):
    def lookup(self, student_id: str) -> Optional[Student]: ...

    def validate_pin(self, student_id: str, pin: str) -> bool: ...


@dataclass(frozen=True)
class Context:
    now: datetime
    is_admin: bool
    directory: Directory
    school: SchoolInfo
    currency: str = "L."

    @property
    def today(self) -> date:
        return self.now.date()


# -------------------- Helpers --------------------

def _say(text: str) -> Reply:
    return Reply(TextContent(text))


def _stay(record: UserRecord, *actions: Action) -> Outcome:
    return Outcome(record.state, dict(record.data), actions)


def _to_menu(*actions: Action) -> Outcome:
    return Outcome(S.MAIN_MENU, {}, actions + (RenderMenu(),))


def _after_then_menu(delay: float, *actions: Action) -> Outcome:
    return Outcome(S.MAIN_MENU, {}, actions + (ScheduleMenu(delay),))


def normalize_keyword(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text.strip())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def _broadcast_text(text: str) -> Optional[str]:
    lowered = text.lower()
    for prefix in BROADCAST_PREFIXES:
        if lowered.startswith(prefix):
            return text[len(prefix):].strip()
    return None


def _selected(record: UserRecord, text: str) -> Optional[str]:
    candidates: List[str] = list(record.data.get("candidates") or [])
    if not INDEX_RE.match(text):
        return None
    index = int(text) - 1
    if 0 <= index < len(candidates):
        return candidates[index]
    return None


def _status_reply(student: Student, ctx: Context) -> Reply:
    debt = calculate_debt(student, ctx.now)
    return _say(msg.payment_status(student, debt, ctx.now, currency=ctx.currency))


def _found_students(record: UserRecord, ctx: Context) -> List[Student]:
    found = []
    for student_id in record.students:
        student = ctx.directory.lookup(student_id)
        if student is not None:
            found.append(student)
    return found


# -------------------- State handlers --------------------

def _main_menu(record: UserRecord, text: str, ctx: Context) -> Outcome:
    if text == "1":
        return Outcome(S.AWAIT_ID, {}, (_say(msg.REGISTER_PROMPT),))

    if text == "2":
        if not record.students:
            return _to_menu(_say(msg.NO_STUDENTS))
        if len(record.students) == 1:
            student = ctx.directory.lookup(record.students[0])
            if student is None:
                return _to_menu(_say(msg.STUDENT_NOT_FOUND))
            return _after_then_menu(STATUS_MENU_DELAY, _status_reply(student, ctx))
        found = _found_students(record, ctx)
        if not found:
            return _to_menu(_say(msg.STUDENT_NOT_FOUND))
        listing = msg.student_list("👨‍👩‍👧‍👦 *SELECT A STUDENT*", found, msg.SELECT_FOOTER)
        return Outcome(S.SELECT_STUDENT, {"candidates": [s.id for s in found]}, (_say(listing),))

    if text == "3":
        return _stay(record, _say(msg.school_info(ctx.school)))

    if text == "4":
        return _stay(record, _say(msg.contact_info(ctx.school)))

    if text == "5" and record.students:
        found = _found_students(record, ctx)
        if not found:
            return _to_menu(_say(msg.STUDENT_NOT_FOUND))
        listing = msg.student_list("🗑️ *REMOVE A STUDENT*", found, msg.REMOVE_FOOTER)
        return Outcome(S.REMOVE_STUDENT, {"candidates": [s.id for s in found]}, (_say(listing),))
    if text == "5":
        return _to_menu(_say(msg.NO_STUDENTS_TO_REMOVE))

    if text == "6" and ctx.is_admin:
        return Outcome(S.ADMIN_BROADCAST, {}, (_say(msg.BROADCAST_PROMPT),))

    return _to_menu(_say(msg.INVALID_OPTION))


def _await_id(record: UserRecord, text: str, ctx: Context) -> Outcome:
    if not STUDENT_ID_RE.match(text):
        return _stay(record, _say(msg.ID_FORMAT_ERROR))
    student = ctx.directory.lookup(text)
    if student is None:
        return _stay(record, _say(msg.ID_NOT_FOUND))
    return Outcome(S.AWAIT_PIN, {"student_id": text}, (_say(msg.pin_prompt(student)),))


def _await_pin(record: UserRecord, text: str, ctx: Context) -> Outcome:
    student_id = record.data.get("student_id")
    if not isinstance(student_id, str) or not student_id:
        return _to_menu()
    if not ctx.directory.validate_pin(student_id, text):
        return _stay(record, _say(msg.PIN_INVALID))
    student = ctx.directory.lookup(student_id)
    name = student.name if student is not None else student_id
    return _after_then_menu(FOLLOW_UP_MENU_DELAY, LinkStudent(student_id), _say(msg.registered(name)))


def _select_student(record: UserRecord, text: str, ctx: Context) -> Outcome:
    student_id = _selected(record, text)
    if student_id is None:
        return _stay(record, _say(msg.INVALID_SELECTION))
    student = ctx.directory.lookup(student_id)
    if student is None:
        return _to_menu(_say(msg.STUDENT_NOT_FOUND))
    return _after_then_menu(FOLLOW_UP_MENU_DELAY, _status_reply(student, ctx))


def _remove_student(record: UserRecord, text: str, ctx: Context) -> Outcome:
    student_id = _selected(record, text)
    if student_id is None:
        return _stay(record, _say(msg.INVALID_SELECTION))
    if student_id not in record.students:
        return _after_then_menu(FOLLOW_UP_MENU_DELAY, _say(msg.REMOVE_FAILED))
    try:
        student = ctx.directory.lookup(student_id)
    except LedgerUnavailable:
        student = None
    name = student.name if student is not None else None
    return _after_then_menu(FOLLOW_UP_MENU_DELAY, UnlinkStudent(student_id), _say(msg.removed(name)))


def _admin_broadcast(inbound: Inbound, ctx: Context) -> Outcome:
    if not ctx.is_admin:
        return _to_menu(_say(msg.NO_PERMISSION))
    return _to_menu(Broadcast(inbound.content))


# -------------------- Entry point --------------------

def transition(record: UserRecord, inbound: Inbound, ctx: Context) -> Outcome:
    text = inbound.text
    # The day's first message only greets, so it never draws an invalid-option warning
    if record.last_greeting != ctx.today:
        return _to_menu(_say(msg.greeting(ctx.school)), StampGreeting(ctx.today))

    if normalize_keyword(text) == "menu":
        return _to_menu()

    broadcast_text = _broadcast_text(text)
    if broadcast_text is not None:
        if not ctx.is_admin:
            return _stay(record, _say(msg.NO_PERMISSION))
        return _stay(record, Broadcast(TextContent(broadcast_text)))

    try:
        if record.state is S.AWAIT_ID:
            return _await_id(record, text, ctx)
        if record.state is S.AWAIT_PIN:
            return _await_pin(record, text, ctx)
        if record.state is S.SELECT_STUDENT:
            return _select_student(record, text, ctx)
        if record.state is S.REMOVE_STUDENT:
            return _remove_student(record, text, ctx)
        if record.state is S.ADMIN_BROADCAST:
            return _admin_broadcast(inbound, ctx)
        return _main_menu(record, text, ctx)
    except LedgerUnavailable:
        return _stay(record, _say(msg.SERVICE_UNAVAILABLE))


__all__ = [
    "Action",
    "Broadcast",
    "Context",
    "Directory",
    "LinkStudent",
    "Outcome",
    "RenderMenu",
    "Reply",
    "ScheduleMenu",
    "StampGreeting",
    "UnlinkStudent",
    "normalize_keyword",
    "transition",
]
