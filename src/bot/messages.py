from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Union

from common.config import SchoolInfo
from ledger.debt import DebtSummary, is_blank
from ledger.models import MONTHS, Student
from ledger.parser import parse_amount


# Raw bytes to upload, or a channel file reference that can be re-sent as is.
Media = Union[bytes, str]


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ImageContent:
    media: Media
    caption: str = ""


@dataclass(frozen=True)
class VideoContent:
    media: Media
    caption: str = ""


@dataclass(frozen=True)
class AudioContent:
    media: Media
    mimetype: str = "audio/mpeg"


@dataclass(frozen=True)
class DocumentContent:
    media: Media
    filename: str = "document"
    mimetype: str = "application/octet-stream"


@dataclass(frozen=True)
class StickerContent:
    media: Media


Content = Union[TextContent, ImageContent, VideoContent, AudioContent, DocumentContent, StickerContent]


@dataclass(frozen=True)
class Inbound:
    """One message received from a user, already resolved to a content kind."""

    sender_id: str
    content: Content

    @property
    def text(self) -> str:
        if isinstance(self.content, TextContent):
            return self.content.text.strip()
        caption = getattr(self.content, "caption", "")
        return caption.strip() if isinstance(caption, str) else ""


def _money(value: float, currency: str) -> str:
    return f"{currency}{value:.2f}"


def greeting(school: SchoolInfo) -> str:
    return (
        f"🐺 Hello! I'm {school.assistant_name}, the virtual assistant of {school.name}.\n"
        "I'm here to help. How can I assist you today? 📚✨"
    )


def main_menu(student_count: int, *, is_admin: bool) -> str:
    lines = ["🏫 *WELCOME TO THE SCHOOL SYSTEM*", ""]
    if student_count > 0:
        lines += [f"👨‍👩‍👧‍👦 You have {student_count} registered student(s)", ""]
    lines += [
        "Choose an option:",
        "",
        "1️⃣ *Register* a new student",
        "2️⃣ *Check* payment status",
        "3️⃣ School *information*",
        "4️⃣ *Contact* administration",
    ]
    if student_count > 0:
        lines.append("5️⃣ *Remove* a student from my account")
    if is_admin:
        lines.append("6️⃣ *Admin broadcast*")
    lines += ["", "Reply with the number of the option you want."]
    return "\n".join(lines)


def school_info(school: SchoolInfo) -> str:
    return "\n".join(
        [
            "📚 *SCHOOL INFORMATION*",
            "",
            f"*{school.name}*",
            "",
            f"📍 *Address:* {school.address}",
            f"📞 *Phone:* {school.phone}",
            f"📧 *Email:* {school.email}",
            f"⏰ *Hours:* {school.hours}",
            f"🌐 *Website:* {school.website}",
            "",
            "Type *menu* to return to the main menu.",
        ]
    )


def contact_info(school: SchoolInfo) -> str:
    return "\n".join(
        [
            "📞 *CONTACT ADMINISTRATION*",
            "",
            "For administrative questions you can reach us at:",
            f"📱 *Phone:* {school.phone}",
            f"📧 *Email:* {school.email}",
            "",
            "⏰ *Office hours:*",
            school.hours,
            "",
            "Type *menu* to return to the main menu.",
        ]
    )


def student_list(title: str, students: Sequence[Student], footer: str) -> str:
    lines = [title, ""]
    lines += [f"{i}. {s.name} - {s.grade}" for i, s in enumerate(students, start=1)]
    lines += ["", footer]
    return "\n".join(lines)


def payment_status(student: Student, debt: DebtSummary, now: datetime, *, currency: str) -> str:
    lines = [f"📊 *PAYMENT STATUS - {student.name.upper()}*", f"🏫 Grade: {student.grade}", ""]
    for period in range(student.plan.first_period, now.month + 1):
        cell = student.cell(period)
        if is_blank(cell):
            status = "❌ Pending"
        else:
            status = f"{_money(parse_amount(cell), currency)} ✅ Paid"
        lines.append(f"▫️ {MONTHS[period - 1].capitalize()}: {status}")

    lines += ["", f"💵 Monthly fee: {_money(debt.monthly_amount, currency)}"]
    lines.append(f"📅 Pending months: {len(debt.pending_periods)}")
    if debt.is_current:
        lines += ["", "✅ *UP TO DATE WITH PAYMENTS*"]
    else:
        lines += [
            "",
            f"❌ *TUITION OWED: {_money(debt.total_pending_amount, currency)}*",
            f"❌ *LATE FEES: {_money(debt.total_late_fee, currency)}*",
            f"❌ *TOTAL OWED: {_money(debt.total_due, currency)}*",
        ]
    return "\n".join(lines)


REGISTER_PROMPT = "📝 *STUDENT REGISTRATION*\n\nPlease enter the student's identity number (13 digits):"
ID_FORMAT_ERROR = (
    "❌ Wrong format. The identity number must have 13 digits.\n\n"
    "Try again or type *menu* to return to the main menu."
)
ID_NOT_FOUND = "❌ That identity number is not registered in the system. Check it and try again."
PIN_INVALID = "❌ Wrong PIN. Check it and try again or type *menu* to return to the main menu."
INVALID_OPTION = "❓ Invalid option. Please choose an option from the menu."
INVALID_SELECTION = "❌ Invalid option. Please choose a number from the list."
NO_STUDENTS = "❌ You have no registered students. Choose option 1️⃣ to register a student."
NO_STUDENTS_TO_REMOVE = "❌ You have no registered students to remove."
STUDENT_NOT_FOUND = "❌ No information was found for the student. Please contact administration."
NO_PERMISSION = "❌ You are not allowed to send broadcast messages."
REMOVE_FAILED = "❌ Could not remove the student. Please contact administration."
SERVICE_UNAVAILABLE = "⚠️ We could not reach the payment records right now. Please try again later."
BROADCAST_PROMPT = (
    "📢 *ADMIN BROADCAST*\n\n"
    "Send any message (text, photo, video, etc.) to forward it to every guardian.\n"
    "Type *menu* to return to the main menu."
)
SELECT_FOOTER = "Reply with the student's number to see the payment status."
REMOVE_FOOTER = "Reply with the number of the student you want to remove from your account."


def pin_prompt(student: Student) -> str:
    return f"✅ *Student found:* {student.name}\n\nNow enter the authorization PIN:"


def registered(student_name: str) -> str:
    return (
        "✅ *REGISTRATION SUCCESSFUL*\n\n"
        f"Student *{student_name}* is now linked to your account.\n\n"
        "You can check the payment status from the main menu."
    )


def removed(student_name: Optional[str]) -> str:
    who = f"*{student_name}*" if student_name else "The student"
    return f"✅ {who} has been removed from your account."


def broadcast_report(delivered: int) -> str:
    return f"✅ Message delivered to {delivered} guardian(s)."
