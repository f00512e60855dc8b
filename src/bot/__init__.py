"""
Conversation layer of the tuition bot.

Modules:
- messages: outbound/inbound content kinds and user-facing texts
- machine: pure per-user transition function
- broadcast: sequential fan-out to every guardian
- runner: executes transitions, persistence and scheduled menu renders
- handler: Telegram polling service entry point
"""

__all__ = [
    "broadcast",
    "handler",
    "machine",
    "messages",
    "runner",
]
