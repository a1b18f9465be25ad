"""Tests for the plugin registry."""

from __future__ import annotations

import dataclasses

import pytest

from mailai.core.models import MailMessage, OutgoingMessage
from mailai.intelligence.plugins import PluginRegistry

MESSAGE = MailMessage(uid=1, persona_id="SUPPORT", sender="a@x.com", subject="Hi")


class Uppercase:
    def after_process(self, message: MailMessage, reply: str) -> str:
        return reply.upper()


class Exclaim:
    def after_process(self, message: MailMessage, reply: str) -> str:
        return reply + "!"


class ExtraHeader:
    def before_send(self, outgoing: OutgoingMessage) -> OutgoingMessage:
        return dataclasses.replace(
            outgoing, headers=(*outgoing.headers, ("X-Plugin", "yes"))
        )


class Veto:
    def before_process(self, message: MailMessage) -> None:
        raise ValueError(f"refusing {message.sender}")


class BrokenObserver:
    def on_error(self, error: Exception, message: MailMessage) -> None:
        raise RuntimeError("observer failed")


def test_hooks_are_chained_in_registration_order() -> None:
    registry = PluginRegistry([Uppercase(), Exclaim()])

    assert registry.after_process(MESSAGE, "done") == "DONE!"
    assert len(registry) == 2


def test_before_send_can_rewrite_message() -> None:
    registry = PluginRegistry([ExtraHeader()])
    outgoing = OutgoingMessage(to="a@x.com", subject="Re: Hi", body="ok")

    rewritten = registry.before_send(outgoing)

    assert ("X-Plugin", "yes") in rewritten.headers


def test_before_process_errors_propagate() -> None:
    registry = PluginRegistry([Veto()])

    with pytest.raises(ValueError, match="a@x.com"):
        registry.before_process(MESSAGE)


def test_failing_error_hook_is_contained() -> None:
    registry = PluginRegistry([BrokenObserver()])

    registry.on_error(RuntimeError("original"), MESSAGE)


def test_objects_without_hooks_are_rejected() -> None:
    with pytest.raises(TypeError):
        PluginRegistry([object()])
