"""Exception types shared across BookWatcher components."""

from __future__ import annotations


class BookWatcherError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(BookWatcherError):
    """Required settings are missing or malformed; the process must not start."""


class TransientScanError(BookWatcherError):
    """Navigation, timeout or page-shape failure while reading a snapshot."""


class StateStoreError(BookWatcherError):
    """Persistence failure while reading or writing tracked state."""


class TelegramAPIError(BookWatcherError):
    """The Bot API rejected a request for a reason other than recipient access."""

    def __init__(self, description: str, status_code: int | None = None):
        super().__init__(description)
        self.description = description
        self.status_code = status_code


class RecipientUnreachable(TelegramAPIError):
    """The recipient blocked the bot or the chat no longer exists."""

    def __init__(self, chat_id: str, description: str, status_code: int | None = None):
        super().__init__(description, status_code)
        self.chat_id = chat_id
