"""
Per-user conversation records and their encrypted persistence.

A record holds the dialogue state, its auxiliary payload, the last greeting
date and the student ids linked to the user (the guardian links).
"""

from .models import ConversationStateName, UserRecord

__all__ = ["ConversationStateName", "UserRecord"]
