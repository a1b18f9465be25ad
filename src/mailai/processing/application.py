"""Application supervisor: wires components, runs tasks, shuts down or restarts."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from ..core.config import AppSettings, Persona
from ..core.context import AppContext
from ..core.datetime_utils import local_now
from ..core.interfaces import (
    CompletionProvider,
    CounterStore,
    MailboxPoller,
    MailSender,
)
from ..intelligence.plugins import PluginRegistry
from ..intelligence.prompts import load_custom_prompt
from ..intelligence.providers import build_provider
from ..storage.counters import PersistentCounterStore
from ..storage.watcher import ConfigWatcher, Snapshot
from ..transport.imap_client import ImapMailbox
from ..transport.smtp_client import SmtpMailSender
from .controller import MessageLifecycleController
from .runner import PersonaRunner

LOGGER = logging.getLogger(__name__)

MailboxFactory = Callable[[Persona], MailboxPoller]
SenderFactory = Callable[[Persona], MailSender]
ProviderFactory = Callable[[Persona], CompletionProvider]

SHUTDOWN_GRACE_SECONDS = 10.0


class MailAIApplication:
    """Own the context, one runner per persona and the configuration watcher."""

    # pylint: disable=too-many-instance-attributes
    def __init__(
        self,
        settings: AppSettings,
        *,
        env_file: Path | str | None = None,
        store: CounterStore | None = None,
        provider_factory: ProviderFactory = build_provider,
        mailbox_factory: MailboxFactory | None = None,
        sender_factory: SenderFactory | None = None,
        plugins: Iterable[object] = (),
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        # pylint: disable=too-many-arguments
        self.settings = settings
        self.env_file = Path(env_file) if env_file else None
        self._provider_factory = provider_factory
        self._mailbox_factory = mailbox_factory or self._default_mailbox
        self._sender_factory = sender_factory or self._default_sender
        self._plugins = PluginRegistry(plugins)

        self.watcher: ConfigWatcher | None = None
        if self.env_file is not None and self.env_file.is_file():
            self.watcher = ConfigWatcher(
                self.env_file,
                self._on_config_change,
                interval=settings.polling.watch_interval,
            )
        if store is None:
            store = PersistentCounterStore(settings.state_file, clock=clock)
        if isinstance(store, PersistentCounterStore):
            store.attach_watcher(self.watcher)

        self.context = AppContext.create(settings, store, clock=clock)
        self.runners = [
            self._build_runner(persona) for persona in settings.personas.values()
        ]

        self._stop: asyncio.Event | None = None
        self._error: BaseException | None = None
        self.restart_requested = False

    @property
    def exit_code(self) -> int:
        return 1 if self._error is not None else 0

    @property
    def error(self) -> BaseException | None:
        return self._error

    # Lifecycle ----------------------------------------------------------------
    async def run(self) -> int:
        """Run until a signal, a fatal error or a configuration change."""
        self._stop = asyncio.Event()
        self._install_signal_handlers()
        LOGGER.info(
            "Starting MailAI in %s mode with %s persona(s)",
            self.settings.mode.value,
            len(self.runners),
        )

        tasks: list[asyncio.Task[None]] = []
        for runner in self.runners:
            task = asyncio.create_task(
                runner.run(self._stop), name=f"persona-{runner.persona.id}"
            )
            task.add_done_callback(self._on_task_done)
            tasks.append(task)
        if self.watcher is not None:
            task = asyncio.create_task(self.watcher.run(self._stop), name="watcher")
            task.add_done_callback(self._on_task_done)
            tasks.append(task)

        await self._stop.wait()
        await self._shutdown(tasks)
        return self.exit_code

    def request_shutdown(self, error: BaseException | None = None) -> None:
        """Stop every task; an ``error`` makes the process exit non-zero."""
        if error is not None and self._error is None:
            self._error = error
        if self._stop is not None and not self._stop.is_set():
            if error is not None:
                LOGGER.error("Shutting down due to error: %s", error)
            else:
                LOGGER.info("Shutdown requested")
            self._stop.set()

    def request_restart(self) -> None:
        self.restart_requested = True
        self.request_shutdown()

    async def _shutdown(self, tasks: list[asyncio.Task[None]]) -> None:
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                LOGGER.warning("Cancelling task %s", task.get_name())
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._remove_signal_handlers()

        await self.context.persist_async()
        stats = self.context.stats
        LOGGER.info(
            "Final stats: processed=%s, answered=%s, skipped=%s, errors=%s, bcc=%s",
            stats.processed,
            stats.answered,
            stats.skipped,
            stats.errors,
            stats.bcc_copied,
        )

    # Wiring -------------------------------------------------------------------
    def _build_runner(self, persona: Persona) -> PersonaRunner:
        base_dir = self.env_file.parent if self.env_file is not None else None
        custom_prompt = load_custom_prompt(persona.prompt, base_dir=base_dir)
        provider = self._provider_factory(persona)
        LOGGER.info(
            "Persona '%s' (%s) uses provider %s with %s marking",
            persona.id,
            persona.email_user,
            provider.provider_id,
            persona.marking.value,
        )
        controller = MessageLifecycleController(
            self.context,
            persona,
            provider,
            self._sender_factory(persona),
            plugins=self._plugins,
            custom_prompt=custom_prompt,
        )
        return PersonaRunner(
            self.context,
            persona,
            controller,
            lambda: self._mailbox_factory(persona),
            on_failure=self.request_shutdown,
        )

    def _default_mailbox(self, persona: Persona) -> MailboxPoller:
        return ImapMailbox(
            persona,
            self.settings.polling,
            batch_size=self.settings.limits.batch_size,
            readonly=self.settings.dry_run,
        )

    def _default_sender(self, persona: Persona) -> MailSender:
        return SmtpMailSender(persona)

    # Callbacks ----------------------------------------------------------------
    def _on_config_change(self, previous: Snapshot, current: Snapshot) -> None:
        del previous, current
        self.request_restart()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            LOGGER.error("Task %s crashed", task.get_name(), exc_info=error)
            self.request_shutdown(error)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                LOGGER.debug("Signal handlers are not supported on this platform")
                return

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                return


def run_application(
    settings: AppSettings, *, env_file: Path | str | None = None
) -> int:
    """Run the application; re-exec the process when the configuration changed."""
    application = MailAIApplication(settings, env_file=env_file)
    exit_code = asyncio.run(application.run())
    if application.restart_requested and application.error is None:
        LOGGER.info("Restarting to apply the new configuration")
        logging.shutdown()
        os.execv(sys.executable, [sys.executable, *sys.argv])
    return exit_code


__all__ = ["MailAIApplication", "run_application"]
