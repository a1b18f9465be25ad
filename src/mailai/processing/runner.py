"""Per-persona polling loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..core.config import Persona
from ..core.context import AppContext
from ..core.errors import MailboxConnectionError
from ..core.interfaces import MailboxPoller
from ..core.models import MailMessage, ProcessingState, RunMode
from ..transport.imap_client import build_search_criteria
from .controller import MessageLifecycleController

LOGGER = logging.getLogger(__name__)

FailureHandler = Callable[[BaseException], None]


class PersonaRunner:
    """Keep one persona's mailbox connected and drain it of unanswered mail.

    The loop connects, drains what is already waiting, then alternates
    between polling for new mail and draining until ``stop`` is set. A lost
    connection is logged and retried after ``reconnect_delay`` forever.
    """

    def __init__(
        self,
        context: AppContext,
        persona: Persona,
        controller: MessageLifecycleController,
        mailbox_factory: Callable[[], MailboxPoller],
        *,
        on_failure: FailureHandler | None = None,
    ) -> None:
        self._context = context
        self._persona = persona
        self._controller = controller
        self._mailbox_factory = mailbox_factory
        self._on_failure = on_failure
        self._drain_lock = asyncio.Lock()
        self._halted = False

    @property
    def persona(self) -> Persona:
        return self._persona

    @property
    def halted(self) -> bool:
        """``True`` once a message failure stopped this runner outside production."""
        return self._halted

    async def run(self, stop: asyncio.Event) -> None:
        polling = self._context.settings.polling
        LOGGER.info("Starting runner for persona '%s'", self._persona.id)
        while not stop.is_set() and not self._halted:
            mailbox = self._mailbox_factory()
            try:
                await asyncio.to_thread(mailbox.connect)
                await self.drain(mailbox, stop)
                while not stop.is_set() and not self._halted:
                    if await _wait(stop, polling.poll_interval):
                        break
                    arrived = await asyncio.to_thread(mailbox.poll_new_mail)
                    if arrived:
                        await self.drain(mailbox, stop)
            except MailboxConnectionError as exc:
                LOGGER.error(
                    "Mailbox connection for persona '%s' failed: %s",
                    self._persona.id,
                    exc,
                )
            finally:
                await asyncio.to_thread(mailbox.close)

            if stop.is_set() or self._halted:
                break
            LOGGER.info(
                "Reconnecting persona '%s' in %s seconds",
                self._persona.id,
                polling.reconnect_delay,
            )
            if await _wait(stop, polling.reconnect_delay):
                break
        LOGGER.info("Runner for persona '%s' stopped", self._persona.id)

    async def drain(
        self, mailbox: MailboxPoller, stop: asyncio.Event | None = None
    ) -> int:
        """Process unanswered mail in the search window; return the answered count.

        Once ``stop`` is set no further message is started; the one in flight
        finishes so its reply and its quota commit stay together.
        """
        async with self._drain_lock:
            messages = await asyncio.to_thread(self._collect, mailbox)
            answered = 0
            for message in messages:
                if self._halted or (stop is not None and stop.is_set()):
                    break
                if await self._process(message, mailbox):
                    answered += 1
            if messages:
                LOGGER.info(
                    "Persona '%s': answered %s of %s message(s)",
                    self._persona.id,
                    answered,
                    len(messages),
                )
            return answered

    # Internal helpers ---------------------------------------------------------
    def _collect(self, mailbox: MailboxPoller) -> list[MailMessage]:
        limits = self._context.settings.limits
        criteria = build_search_criteria(
            self._persona.marking,
            min_days=limits.min_days,
            max_days=limits.max_days,
            today=self._context.clock().date(),
        )
        uids = mailbox.search(criteria)
        if len(uids) > limits.max_emails_per_batch:
            LOGGER.info(
                "Found %s messages; processing the first %s",
                len(uids),
                limits.max_emails_per_batch,
            )
            uids = uids[: limits.max_emails_per_batch]
        LOGGER.debug(
            "Persona '%s': %s candidate message(s)", self._persona.id, len(uids)
        )
        return list(mailbox.fetch(uids))

    async def _process(self, message: MailMessage, mailbox: MailboxPoller) -> bool:
        try:
            outcome = await self._controller.process(message, mailbox)
        except MailboxConnectionError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            self._handle_failure(message, exc)
            return False
        return outcome.state is ProcessingState.DONE

    def _handle_failure(self, message: MailMessage, error: Exception) -> None:
        if self._context.mode is RunMode.PRODUCTION:
            LOGGER.warning(
                "Continuing after failure on message %s of persona '%s'",
                message.uid,
                self._persona.id,
            )
            return
        LOGGER.error(
            "Stopping after failure on message %s of persona '%s' (%s mode): %s",
            message.uid,
            self._persona.id,
            self._context.mode.value,
            error,
        )
        self._halted = True
        if self._on_failure is not None:
            self._on_failure(error)


async def _wait(stop: asyncio.Event, delay: float) -> bool:
    """Sleep up to ``delay`` seconds; return ``True`` if ``stop`` was set."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except TimeoutError:
        return stop.is_set()
    return True


__all__ = ["FailureHandler", "PersonaRunner"]
