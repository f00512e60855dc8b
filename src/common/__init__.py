"""
Common utilities for schoolpay-bot.

Modules:
- fetcher: HTTP downloads with bounded retries
- dropbox: Dropbox OAuth2 token holder and file API client
- content_cache: revision-validated on-disk cache of remote files
- telegram: Telegram Bot API client
- admins: broadcast privilege policy
- config: runtime settings from environment and SSM
- log: structlog setup
"""

__all__ = [
    "admins",
    "config",
    "content_cache",
    "dropbox",
    "fetcher",
    "log",
    "telegram",
]
