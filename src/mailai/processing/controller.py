"""Per-message lifecycle: admission, completion, marking, delivery, commit."""

from __future__ import annotations

import asyncio
import logging

from ..core.config import Persona
from ..core.context import AppContext
from ..core.errors import (
    CompletionError,
    DeliveryError,
    MailAIError,
    MarkingError,
)
from ..core.interfaces import CompletionProvider, MailboxPoller, MailSender
from ..core.models import (
    AdmissionReason,
    Decision,
    MailMessage,
    OutgoingMessage,
    ProcessingOutcome,
    ProcessingState,
    RunMode,
)
from ..intelligence.plugins import PluginRegistry
from ..intelligence.prompts import build_prompt_messages

LOGGER = logging.getLogger(__name__)


class MessageLifecycleController:
    """Drive one persona's messages through the processing state machine.

    ``FETCHED -> ADMITTED -> COMPLETING -> MARKING -> SENDING -> DONE``, with
    ``REJECTED`` returned as a normal outcome and ``FAILED`` raised as a
    :class:`MailAIError`. The durable marker is written before the reply is
    sent: a crash between the two leaves a marked but unanswered message,
    never a duplicate reply.
    """

    def __init__(
        self,
        context: AppContext,
        persona: Persona,
        provider: CompletionProvider,
        sender: MailSender,
        *,
        plugins: PluginRegistry | None = None,
        custom_prompt: str = "",
    ) -> None:
        # pylint: disable=too-many-arguments
        self._context = context
        self._persona = persona
        self._provider = provider
        self._sender = sender
        self._plugins = plugins if plugins is not None else PluginRegistry()
        self._custom_prompt = custom_prompt

    @property
    def persona(self) -> Persona:
        return self._persona

    async def process(
        self, message: MailMessage, mailbox: MailboxPoller
    ) -> ProcessingOutcome:
        """Run ``message`` to ``DONE`` or ``REJECTED``; raise on ``FAILED``."""
        identity = message.identity
        self._trace(message, ProcessingState.FETCHED)
        LOGGER.info(
            "%sProcessing email from %s: %s",
            self._log_prefix,
            message.sender,
            message.subject,
        )

        decision = self._admission(message)
        if not decision.allow:
            self._context.stats.skipped += 1
            self._trace(message, ProcessingState.REJECTED)
            LOGGER.info(
                'Email "%s" from %s was not processed (%s)',
                message.subject,
                message.sender,
                decision.reason.value,
            )
            return ProcessingOutcome(
                identity=identity,
                state=ProcessingState.REJECTED,
                reason=decision.reason,
            )
        self._trace(message, ProcessingState.ADMITTED)

        try:
            self._trace(message, ProcessingState.COMPLETING)
            reply = await self._complete(message)
            outgoing = self._build_reply(message, reply)

            self._trace(message, ProcessingState.MARKING)
            await self._mark(message, mailbox)

            self._trace(message, ProcessingState.SENDING)
            await self._send(message, outgoing)
        except MailAIError as exc:
            self._fail(message, exc)
            raise

        await self._finish(message)
        self._trace(message, ProcessingState.DONE)
        return ProcessingOutcome(
            identity=identity,
            state=ProcessingState.DONE,
            reason=AdmissionReason.ALLOWED,
            reply=outgoing.body,
        )

    # State handlers -----------------------------------------------------------
    def _admission(self, message: MailMessage) -> Decision:
        context = self._context
        if context.tracker.seen(*message.identity):
            return Decision.rejected(AdmissionReason.DUPLICATE)
        if message.has_marker(self._persona.marking):
            return Decision.rejected(AdmissionReason.ALREADY_MARKED)
        if not message.sender:
            return Decision.rejected(AdmissionReason.NO_SENDER)
        return context.limiter.admit(context.counters, message)

    async def _complete(self, message: MailMessage) -> str:
        timeout = self._context.settings.polling.completion_timeout
        try:
            self._plugins.before_process(message)
            prompt = build_prompt_messages(
                self._persona, message, self._custom_prompt
            )
            reply = await asyncio.wait_for(
                asyncio.to_thread(self._provider.complete, prompt), timeout=timeout
            )
        except TimeoutError as exc:
            raise CompletionError(
                f"Completion provider {self._provider.provider_id} timed out "
                f"after {timeout}s"
            ) from exc
        except CompletionError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise CompletionError(
                f"Completion provider {self._provider.provider_id} failed: {exc}"
            ) from exc

        if not reply or not reply.strip():
            raise CompletionError("No response received from AI service")
        LOGGER.info("Got response from %s", self._provider.provider_id)
        try:
            return self._plugins.after_process(message, reply)
        except Exception as exc:  # pylint: disable=broad-except
            raise CompletionError(f"after_process hook failed: {exc}") from exc

    def _build_reply(self, message: MailMessage, reply: str) -> OutgoingMessage:
        testing = self._context.mode is RunMode.TESTING
        subject = message.subject or ""
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}".rstrip()
        if testing:
            subject = f"[TEST] {subject}"

        references = " ".join(
            part for part in (message.references, message.message_id) if part
        )
        headers: list[tuple[str, str]] = [("Auto-Submitted", "auto-replied")]
        if testing:
            headers.append(("X-MailAI-Mode", "testing"))

        outgoing = OutgoingMessage(
            to=message.sender or "",
            subject=subject,
            body=reply.strip(),
            in_reply_to=message.message_id,
            references=references or None,
            bcc=self._context.settings.bcc_emails,
            headers=tuple(headers),
        )
        try:
            return self._plugins.before_send(outgoing)
        except Exception as exc:  # pylint: disable=broad-except
            raise CompletionError(f"before_send hook failed: {exc}") from exc

    async def _mark(self, message: MailMessage, mailbox: MailboxPoller) -> None:
        marking = self._persona.marking
        if self._context.dry_run:
            LOGGER.info(
                "[dry-run] Would mark message %s with %s",
                message.uid,
                marking.marker,
            )
            return
        LOGGER.info(
            "Marking email %s as processed using: %s", message.uid, marking.value
        )
        try:
            await asyncio.to_thread(mailbox.mark_durable, message.uid, marking)
        except Exception as exc:  # pylint: disable=broad-except
            raise MarkingError(
                f"Failed to mark message {message.uid}: {exc}"
            ) from exc

    async def _send(self, message: MailMessage, outgoing: OutgoingMessage) -> None:
        if self._context.dry_run:
            LOGGER.info(
                "[dry-run] Would send response to %s: %s",
                outgoing.to,
                outgoing.subject,
            )
            LOGGER.info("[dry-run] Response content: %s", outgoing.body)
            return
        try:
            await asyncio.to_thread(self._sender.send, outgoing)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Message %s of persona '%s' is marked as answered but the reply "
                "to %s was not sent; resolve manually",
                message.uid,
                self._persona.id,
                outgoing.to,
            )
            raise DeliveryError(
                f"Failed to send response to {outgoing.to}: {exc}", marked=True
            ) from exc
        LOGGER.info("Sent response to: %s", outgoing.to)

    async def _finish(self, message: MailMessage) -> None:
        context = self._context
        context.tracker.mark_seen(*message.identity)
        if context.dry_run:
            LOGGER.info(
                "[dry-run] Would count reply to %s against the daily quota",
                message.sender,
            )
            return
        context.limiter.commit(context.counters, message)
        context.stats.processed += 1
        context.stats.answered += 1
        if context.settings.bcc_emails:
            context.stats.bcc_copied += 1
        await context.persist_async()

    def _fail(self, message: MailMessage, error: MailAIError) -> None:
        self._context.stats.errors += 1
        self._trace(message, ProcessingState.FAILED)
        LOGGER.error(
            "Failed to process email %s of persona '%s': %s",
            message.uid,
            self._persona.id,
            error,
        )
        self._plugins.on_error(error, message)

    # Helpers ------------------------------------------------------------------
    @property
    def _log_prefix(self) -> str:
        mode = self._context.mode
        if mode is RunMode.DRY_RUN:
            return "[dry-run] "
        if mode is RunMode.TESTING:
            return "[test] "
        return ""

    def _trace(self, message: MailMessage, state: ProcessingState) -> None:
        LOGGER.debug("Message %s -> %s", message.identity, state.value)


__all__ = ["MessageLifecycleController"]
