"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol

from .models import (
    Counters,
    EmailStats,
    MailMessage,
    MarkingStrategy,
    OutgoingMessage,
    PromptMessage,
)


class MailboxPoller(Protocol):
    """Abstraction over one persona's mailbox, such as IMAP."""

    mailbox: str

    def connect(self) -> None:
        """Open the connection and select the mailbox."""
        raise NotImplementedError

    def search(self, criteria: Sequence[str]) -> list[int]:
        """Return UIDs matching the IMAP search ``criteria``."""
        raise NotImplementedError

    def fetch(self, uids: Sequence[int]) -> Iterable[MailMessage]:
        """Yield parsed messages for ``uids`` without altering their flags."""
        raise NotImplementedError

    def mark_durable(self, uid: int, strategy: MarkingStrategy) -> None:
        """Write the durable answered marker for ``uid``."""
        raise NotImplementedError

    def poll_new_mail(self) -> int:
        """Return the number of messages that arrived since the last call."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class CompletionProvider(Protocol):
    """Backend producing reply text for a prompt."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def complete(self, messages: Sequence[PromptMessage]) -> str:
        """Return generated text for ``messages`` or raise."""
        raise NotImplementedError


class MailSender(Protocol):
    """Outbound mail transport."""

    def send(self, message: OutgoingMessage) -> None:
        """Deliver ``message``; raise when the transport does not accept it."""
        raise NotImplementedError


class CounterStore(Protocol):
    """Durable storage for quota counters and aggregate stats."""

    def load(self) -> Counters:
        """Return persisted counters, falling back to defaults."""
        raise NotImplementedError

    def load_stats(self) -> EmailStats:
        """Return persisted aggregate stats, falling back to zeros."""
        raise NotImplementedError

    def save(self, counters: Counters, stats: EmailStats | None = None) -> bool:
        """Persist counters (and stats); return ``False`` on failure."""
        raise NotImplementedError


__all__ = [
    "CompletionProvider",
    "CounterStore",
    "MailSender",
    "MailboxPoller",
]
