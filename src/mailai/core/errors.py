"""Exception hierarchy shared across MailAI components."""

from __future__ import annotations


class MailAIError(RuntimeError):
    """Base class for all errors raised by MailAI."""


class ConfigError(MailAIError):
    """Raised when configuration is missing or invalid. Fatal at startup."""


class PersistenceError(MailAIError):
    """Raised when the counters file cannot be read or written."""


class CompletionError(MailAIError):
    """Raised when the completion provider fails, times out, or returns nothing."""


class DeliveryError(MailAIError):
    """Raised when a reply could not be handed to the outbound transport.

    ``marked`` tells whether the durable mailbox marker was already applied,
    in which case the message will not be picked up again automatically.
    """

    def __init__(self, message: str, *, marked: bool = False) -> None:
        super().__init__(message)
        self.marked = marked


class MailboxConnectionError(MailAIError):
    """Raised when the mailbox connection fails or is lost."""


class MarkingError(MailAIError):
    """Raised when the server refuses the durable marker for one message.

    The message stays unmarked and is offered again by a later search.
    """


__all__ = [
    "CompletionError",
    "ConfigError",
    "DeliveryError",
    "MailAIError",
    "MailboxConnectionError",
    "MarkingError",
    "PersistenceError",
]
