"""Core domain models used across the application."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

CUSTOM_FLAG = "$Mailai"
SEEN_FLAG = "\\Seen"


class MarkingStrategy(str, Enum):
    """How a persona records that a message has been answered."""

    FLAG = "flag"
    SEEN = "seen"

    @property
    def marker(self) -> str:
        """Return the IMAP flag written for this strategy."""
        return CUSTOM_FLAG if self is MarkingStrategy.FLAG else SEEN_FLAG


class RunMode(str, Enum):
    """Operating mode of the whole process."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    DRY_RUN = "dry_run"


class AdmissionReason(str, Enum):
    """Outcome code of an admission check."""

    ALLOWED = "allowed"
    DAILY_LIMIT = "daily_limit"
    COOLDOWN = "cooldown"
    SELF_CC_LOOP = "self_cc_loop"
    DUPLICATE = "duplicate"
    ALREADY_MARKED = "already_marked"
    NO_SENDER = "no_sender"


class ProcessingState(str, Enum):
    """Lifecycle states a fetched message moves through."""

    FETCHED = "fetched"
    ADMITTED = "admitted"
    COMPLETING = "completing"
    MARKING = "marking"
    SENDING = "sending"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(slots=True)
class Counters:
    """Durable quota counters shared by every persona.

    Timestamps are epoch milliseconds; ``last_reset`` is always a local
    midnight.
    """

    daily_count: int
    last_reset: int
    sender_history: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class EmailStats:
    """Aggregate processing statistics exposed to operators."""

    processed: int = 0
    skipped: int = 0
    answered: int = 0
    bcc_copied: int = 0
    errors: int = 0
    started_at: float = field(default_factory=time.time)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MailMessage:
    """One fetched message, valid for a single polling cycle."""

    uid: int
    persona_id: str
    sender: str | None
    subject: str | None
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    body: str = ""
    message_id: str | None = None
    references: str | None = None
    date: str | None = None

    @property
    def identity(self) -> tuple[str, int]:
        """UIDs are per mailbox; pairing with the persona makes them global."""
        return (self.persona_id, self.uid)

    def has_marker(self, strategy: MarkingStrategy) -> bool:
        """Return ``True`` when the durable answered marker is present."""
        marker = strategy.marker.lower()
        return any(flag.lower() == marker for flag in (*self.flags, *self.keywords))


@dataclass(frozen=True, slots=True)
class Decision:
    """Result of an admission check."""

    allow: bool
    reason: AdmissionReason

    @classmethod
    def allowed(cls) -> Decision:
        return cls(allow=True, reason=AdmissionReason.ALLOWED)

    @classmethod
    def rejected(cls, reason: AdmissionReason) -> Decision:
        return cls(allow=False, reason=reason)


@dataclass(frozen=True, slots=True)
class PromptMessage:
    """Single chat message handed to a completion provider."""

    role: str
    content: str


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """Reply handed to the outbound transport."""

    to: str
    subject: str
    body: str
    in_reply_to: str | None = None
    references: str | None = None
    bcc: tuple[str, ...] = ()
    headers: tuple[tuple[str, str], ...] = ()


@dataclass(slots=True)
class ProcessingOutcome:
    """Final state reached by a message in the lifecycle controller."""

    identity: tuple[str, int]
    state: ProcessingState
    reason: AdmissionReason | None = None
    reply: str | None = None


__all__ = [
    "CUSTOM_FLAG",
    "SEEN_FLAG",
    "AdmissionReason",
    "Counters",
    "Decision",
    "EmailStats",
    "MailMessage",
    "MarkingStrategy",
    "OutgoingMessage",
    "ProcessingOutcome",
    "ProcessingState",
    "PromptMessage",
    "RunMode",
]
