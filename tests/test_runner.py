"""Tests for the per-persona polling loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime

from mailai.core.config import AppSettings, build_settings
from mailai.core.context import AppContext
from mailai.core.errors import MailboxConnectionError, MarkingError
from mailai.core.models import (
    Counters,
    EmailStats,
    MailMessage,
    MarkingStrategy,
    OutgoingMessage,
    PromptMessage,
)
from mailai.processing import MessageLifecycleController, PersonaRunner
from mailai.transport import ImapError

NOW = datetime(2025, 1, 6, 9, 0).astimezone()


class MemoryStore:
    def load(self) -> Counters:
        return Counters(daily_count=0, last_reset=0)

    def load_stats(self) -> EmailStats:
        return EmailStats()

    def save(self, counters: Counters, stats: EmailStats | None = None) -> bool:
        return True


class ScriptedProvider:
    """Fails for configured senders, answers everyone else."""

    def __init__(self, failing: Sequence[str] = ()) -> None:
        self.failing = set(failing)

    @property
    def provider_id(self) -> str:
        return "scripted"

    def complete(self, messages: Sequence[PromptMessage]) -> str:
        if any(sender in messages[-1].content for sender in self.failing):
            raise RuntimeError("provider down")
        return "ok"


class NullSender:
    def __init__(self) -> None:
        self.sent: list[OutgoingMessage] = []

    def send(self, message: OutgoingMessage) -> None:
        self.sent.append(message)


class StoppingSender(NullSender):
    """Requests a stop from the worker thread after the first reply."""

    def __init__(self, loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> None:
        super().__init__()
        self.loop = loop
        self.stop = stop

    def send(self, message: OutgoingMessage) -> None:
        super().send(message)
        self.loop.call_soon_threadsafe(self.stop.set)


class FakeMailbox:
    """In-memory mailbox honouring durable markers and the search criteria."""

    mailbox = "INBOX"

    def __init__(
        self,
        messages: Sequence[MailMessage],
        *,
        connect_error: Exception | None = None,
        on_poll: Callable[[], None] | None = None,
    ) -> None:
        self.messages = {message.uid: message for message in messages}
        self.connect_error = connect_error
        self.on_poll = on_poll
        self.criteria: list[list[str]] = []
        self.fetched: list[list[int]] = []
        self.polls = 0
        self.closed = False
        self.rejected_marks: set[int] = set()

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    def search(self, criteria: Sequence[str]) -> list[int]:
        self.criteria.append(list(criteria))
        return sorted(
            uid
            for uid, message in self.messages.items()
            if not message.has_marker(MarkingStrategy.FLAG)
        )

    def fetch(self, uids: Sequence[int]) -> list[MailMessage]:
        self.fetched.append(list(uids))
        return [self.messages[uid] for uid in uids]

    def mark_durable(self, uid: int, strategy: MarkingStrategy) -> None:
        if uid in self.rejected_marks:
            raise ImapError(f"STORE refused for {uid}")
        message = self.messages[uid]
        message.keywords = (*message.keywords, strategy.marker)

    def poll_new_mail(self) -> int:
        self.polls += 1
        if self.on_poll is not None:
            self.on_poll()
        return 0

    def close(self) -> None:
        self.closed = True


def _settings(mode: str = "production", **overrides: str) -> AppSettings:
    values = {
        "MAILAI_PERSONA_SUPPORT": "Support",
        "MAILAI_SUPPORT_email_user": "support@company.test",
        "MAILAI_SUPPORT_email_password": "supersecret",
        "MAILAI_SUPPORT_email_imap": "imap.company.test",
        "MAILAI_MODE": mode,
        "MAILAI_COOLDOWN_PERIOD": "0",
        "MAILAI_MAX_EMAILS_PER_DAY": "100",
        "MAILAI_POLL_INTERVAL": "0.01",
        "MAILAI_RECONNECT_DELAY": "0",
    }
    values.update(overrides)
    return build_settings(values)


def _message(uid: int, sender: str) -> MailMessage:
    return MailMessage(uid=uid, persona_id="SUPPORT", sender=sender, subject="Hi")


def _runner(
    settings: AppSettings,
    mailboxes: Sequence[FakeMailbox],
    *,
    provider: ScriptedProvider | None = None,
    failures: list[BaseException] | None = None,
    sender: NullSender | None = None,
) -> tuple[PersonaRunner, AppContext, NullSender]:
    context = AppContext.create(settings, MemoryStore(), clock=lambda: NOW)
    persona = settings.personas["SUPPORT"]
    sender = sender if sender is not None else NullSender()
    controller = MessageLifecycleController(
        context, persona, provider or ScriptedProvider(), sender
    )
    queue = list(mailboxes)
    runner = PersonaRunner(
        context,
        persona,
        controller,
        lambda: queue.pop(0),
        on_failure=failures.append if failures is not None else None,
    )
    return runner, context, sender


def test_drain_answers_every_unmarked_message() -> None:
    mailbox = FakeMailbox([_message(1, "a@x.com"), _message(2, "b@x.com")])
    runner, context, sender = _runner(_settings(), [mailbox])

    answered = asyncio.run(runner.drain(mailbox))

    assert answered == 2
    assert [reply.to for reply in sender.sent] == ["a@x.com", "b@x.com"]
    assert context.counters.daily_count == 2
    assert mailbox.criteria[0][:2] == ["UNKEYWORD", "$Mailai"]
    assert "SINCE" in mailbox.criteria[0]

    assert asyncio.run(runner.drain(mailbox)) == 0


def test_drain_caps_messages_per_batch() -> None:
    mailbox = FakeMailbox([_message(uid, f"s{uid}@x.com") for uid in range(1, 6)])
    runner, _, _ = _runner(_settings(MAILAI_MAX_EMAILS_PER_BATCH="3"), [mailbox])

    asyncio.run(runner.drain(mailbox))

    assert mailbox.fetched == [[1, 2, 3]]


def test_production_mode_continues_after_failure() -> None:
    mailbox = FakeMailbox([_message(1, "bad@x.com"), _message(2, "good@x.com")])
    failures: list[BaseException] = []
    runner, context, sender = _runner(
        _settings("production"),
        [mailbox],
        provider=ScriptedProvider(["bad@x.com"]),
        failures=failures,
    )

    answered = asyncio.run(runner.drain(mailbox))

    assert answered == 1
    assert [reply.to for reply in sender.sent] == ["good@x.com"]
    assert failures == []
    assert context.stats.errors == 1
    assert not runner.halted


def test_development_mode_requests_shutdown_on_failure() -> None:
    mailbox = FakeMailbox([_message(1, "bad@x.com"), _message(2, "good@x.com")])
    failures: list[BaseException] = []
    runner, _, sender = _runner(
        _settings("development"),
        [mailbox],
        provider=ScriptedProvider(["bad@x.com"]),
        failures=failures,
    )

    asyncio.run(runner.drain(mailbox))

    assert len(failures) == 1
    assert runner.halted
    assert sender.sent == []


def test_run_reconnects_after_connection_error() -> None:
    async def scenario() -> tuple[FakeMailbox, FakeMailbox, NullSender]:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        broken = FakeMailbox([], connect_error=MailboxConnectionError("refused"))
        healthy = FakeMailbox(
            [_message(1, "a@x.com")],
            on_poll=lambda: loop.call_soon_threadsafe(stop.set),
        )
        runner, _, sender = _runner(_settings(), [broken, healthy])
        await asyncio.wait_for(runner.run(stop), timeout=5)
        return broken, healthy, sender

    broken, healthy, sender = asyncio.run(scenario())

    assert broken.closed
    assert healthy.closed
    assert healthy.polls >= 1
    assert [reply.to for reply in sender.sent] == ["a@x.com"]


def test_run_returns_immediately_when_stopped() -> None:
    async def scenario() -> FakeMailbox:
        stop = asyncio.Event()
        mailbox = FakeMailbox([])
        runner, _, _ = _runner(_settings(), [mailbox])
        stop.set()
        await runner.run(stop)
        return mailbox

    mailbox = asyncio.run(scenario())

    assert mailbox.criteria == []


def test_refused_mark_continues_with_next_message_in_production() -> None:
    mailbox = FakeMailbox([_message(1, "a@x.com"), _message(2, "b@x.com")])
    mailbox.rejected_marks.add(1)
    failures: list[BaseException] = []
    runner, context, sender = _runner(
        _settings("production"), [mailbox], failures=failures
    )

    answered = asyncio.run(runner.drain(mailbox))

    assert answered == 1
    assert [reply.to for reply in sender.sent] == ["b@x.com"]
    assert context.stats.errors == 1
    assert context.counters.daily_count == 1
    assert failures == []
    assert not runner.halted


def test_refused_mark_requests_shutdown_in_development() -> None:
    mailbox = FakeMailbox([_message(1, "a@x.com"), _message(2, "b@x.com")])
    mailbox.rejected_marks.add(1)
    failures: list[BaseException] = []
    runner, _, sender = _runner(
        _settings("development"), [mailbox], failures=failures
    )

    asyncio.run(runner.drain(mailbox))

    assert len(failures) == 1
    assert isinstance(failures[0], MarkingError)
    assert runner.halted
    assert sender.sent == []


def test_stop_during_drain_leaves_remaining_messages() -> None:
    async def scenario() -> tuple[FakeMailbox, NullSender, AppContext]:
        stop = asyncio.Event()
        sender = StoppingSender(asyncio.get_running_loop(), stop)
        mailbox = FakeMailbox(
            [_message(uid, f"s{uid}@x.com") for uid in range(1, 4)]
        )
        runner, context, _ = _runner(_settings(), [mailbox], sender=sender)
        await asyncio.wait_for(runner.run(stop), timeout=5)
        return mailbox, sender, context

    mailbox, sender, context = asyncio.run(scenario())

    assert [reply.to for reply in sender.sent] == ["s1@x.com"]
    assert context.counters.daily_count == 1
    assert mailbox.closed
    assert not mailbox.messages[2].has_marker(MarkingStrategy.FLAG)
