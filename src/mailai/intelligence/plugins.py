"""Typed plugin hooks around message processing."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from ..core.models import MailMessage, OutgoingMessage

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class BeforeProcess(Protocol):
    """Observe or veto a message before the completion request."""

    def before_process(self, message: MailMessage) -> None:
        raise NotImplementedError


@runtime_checkable
class AfterProcess(Protocol):
    """Rewrite the generated reply text."""

    def after_process(self, message: MailMessage, reply: str) -> str:
        raise NotImplementedError


@runtime_checkable
class BeforeSend(Protocol):
    """Rewrite the outgoing message before it is handed to the transport."""

    def before_send(self, outgoing: OutgoingMessage) -> OutgoingMessage:
        raise NotImplementedError


@runtime_checkable
class OnError(Protocol):
    """Observe per-message failures."""

    def on_error(self, error: Exception, message: MailMessage) -> None:
        raise NotImplementedError


class PluginRegistry:
    """Dispatch each hook to the registered plugins implementing it, in order."""

    def __init__(self, plugins: Iterable[object] = ()) -> None:
        self._plugins: list[object] = []
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: object) -> None:
        if not isinstance(plugin, (BeforeProcess, AfterProcess, BeforeSend, OnError)):
            raise TypeError(
                f"{type(plugin).__name__} implements none of the plugin hooks"
            )
        self._plugins.append(plugin)
        LOGGER.info("Registered plugin %s", type(plugin).__name__)

    def __len__(self) -> int:
        return len(self._plugins)

    def before_process(self, message: MailMessage) -> None:
        for plugin in self._plugins:
            if isinstance(plugin, BeforeProcess):
                plugin.before_process(message)

    def after_process(self, message: MailMessage, reply: str) -> str:
        for plugin in self._plugins:
            if isinstance(plugin, AfterProcess):
                reply = plugin.after_process(message, reply)
        return reply

    def before_send(self, outgoing: OutgoingMessage) -> OutgoingMessage:
        for plugin in self._plugins:
            if isinstance(plugin, BeforeSend):
                outgoing = plugin.before_send(outgoing)
        return outgoing

    def on_error(self, error: Exception, message: MailMessage) -> None:
        """Notify error hooks; a failing hook is logged and never masks ``error``."""
        for plugin in self._plugins:
            if not isinstance(plugin, OnError):
                continue
            try:
                plugin.on_error(error, message)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception(
                    "Plugin %s failed in on_error", type(plugin).__name__
                )


__all__ = [
    "AfterProcess",
    "BeforeProcess",
    "BeforeSend",
    "OnError",
    "PluginRegistry",
]
