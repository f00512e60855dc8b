from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ConversationStateName(str, Enum):
    MAIN_MENU = "MAIN_MENU"
    AWAIT_ID = "AWAIT_ID"
    AWAIT_PIN = "AWAIT_PIN"
    SELECT_STUDENT = "SELECT_STUDENT"
    REMOVE_STUDENT = "REMOVE_STUDENT"
    ADMIN_BROADCAST = "ADMIN_BROADCAST"


class UserRecord(BaseModel):
    """
    Persistent per-user record serialized to JSON and encrypted at rest.

    Fields
    - user_id: channel identity of the user (chat id).
    - state: current dialogue state; unknown stored values load as MAIN_MENU.
    - data: payload owned by the current state, e.g. {"student_id": "..."} while
      waiting for a PIN, or {"candidates": [...]} while choosing a student.
    - last_greeting: calendar date of the last daily greeting.
    - students: linked student ids, in registration order.
    """

    user_id: str
    state: ConversationStateName = ConversationStateName.MAIN_MENU
    data: Dict[str, Any] = Field(default_factory=dict)
    last_greeting: Optional[date] = None
    students: List[str] = Field(default_factory=list)

    @field_validator("state", mode="before")
    @classmethod
    def _collapse_unknown_state(cls, v: Any) -> Any:
        if isinstance(v, ConversationStateName):
            return v
        try:
            return ConversationStateName(v)
        except ValueError:
            return ConversationStateName.MAIN_MENU

    @classmethod
    def new(cls, user_id: str) -> "UserRecord":
        return cls(user_id=user_id)

    @property
    def is_guardian(self) -> bool:
        return bool(self.students)

    def link(self, student_id: str) -> bool:
        if student_id in self.students:
            return False
        self.students.append(student_id)
        return True

    def unlink(self, student_id: str) -> bool:
        if student_id not in self.students:
            return False
        self.students = [s for s in self.students if s != student_id]
        return True
