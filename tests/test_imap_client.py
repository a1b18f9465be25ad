"""Tests for the IMAP transport adapter."""

# pylint: disable=protected-access

from __future__ import annotations

import imaplib
from datetime import date
from unittest.mock import MagicMock

import pytest

from mailai.core.config import Persona, PollingSettings
from mailai.core.models import MarkingStrategy
from mailai.transport import ImapError, ImapMailbox
from mailai.transport.imap_client import build_search_criteria

RAW = b"From: Jane <jane@example.com>\r\nSubject: Hello\r\n\r\nBody text\r\n"


def _persona() -> Persona:
    return Persona(
        id="SUPPORT",
        name="Support",
        email_user="support@company.test",
        email_password="supersecret",
        imap_host="imap.company.test",
        use_ssl=False,
    )


def _client(connection: MagicMock, **kwargs) -> ImapMailbox:
    client = ImapMailbox(_persona(), PollingSettings(), **kwargs)
    client._connection = connection  # type: ignore[assignment]
    return client


def test_search_returns_sorted_uids() -> None:
    connection = MagicMock()
    connection.uid.return_value = ("OK", [b"12 3 7"])
    client = _client(connection)

    assert client.search(["UNKEYWORD", "$Mailai"]) == [3, 7, 12]
    connection.uid.assert_called_once_with("SEARCH", None, "UNKEYWORD", "$Mailai")


def test_fetch_uses_peek_and_parses_flags() -> None:
    connection = MagicMock()

    def uid(command, *args):
        if command == "FETCH":
            uid_set = args[0]
            meta = f"{uid_set} (UID {uid_set} FLAGS (\\Seen) BODY[] {{42}}"
            return "OK", [(meta.encode(), RAW), b")"]
        raise AssertionError("Unexpected IMAP command")

    connection.uid.side_effect = uid
    client = _client(connection, batch_size=1)

    messages = list(client.fetch([101, 102]))

    assert [message.uid for message in messages] == [101, 102]
    assert messages[0].sender == "jane@example.com"
    assert messages[0].flags == ("\\Seen",)
    assert messages[0].persona_id == "SUPPORT"
    connection.uid.assert_any_call("FETCH", "101", "(UID FLAGS BODY.PEEK[])")
    connection.uid.assert_any_call("FETCH", "102", "(UID FLAGS BODY.PEEK[])")


def test_fetch_reads_flags_from_trailer() -> None:
    connection = MagicMock()
    connection.uid.return_value = (
        "OK",
        [(b"1 (UID 9 BODY[] {42}", RAW), b" FLAGS ($Mailai))"],
    )
    client = _client(connection)

    [message] = list(client.fetch([9]))

    assert message.uid == 9
    assert message.has_marker(MarkingStrategy.FLAG)


def test_mark_durable_stores_strategy_flag() -> None:
    connection = MagicMock()
    connection.uid.return_value = ("OK", [None])
    client = _client(connection)

    client.mark_durable(5, MarkingStrategy.FLAG)
    client.mark_durable(6, MarkingStrategy.SEEN)

    connection.uid.assert_any_call("STORE", "5", "+FLAGS.SILENT", "($Mailai)")
    connection.uid.assert_any_call("STORE", "6", "+FLAGS.SILENT", "(\\Seen)")


def test_imap_errors_are_wrapped() -> None:
    connection = MagicMock()
    connection.uid.side_effect = imaplib.IMAP4.abort("socket closed")
    client = _client(connection)

    with pytest.raises(ImapError):
        client.mark_durable(1, MarkingStrategy.FLAG)


def test_poll_new_mail_reports_delta() -> None:
    connection = MagicMock()
    connection.noop.return_value = ("OK", [b""])
    connection.response.side_effect = [("EXISTS", [b"4"]), ("EXISTS", [None])]
    client = _client(connection)
    client._exists = 2

    assert client.poll_new_mail() == 2
    assert client.poll_new_mail() == 0


def test_operations_require_connection() -> None:
    client = ImapMailbox(_persona(), PollingSettings())

    with pytest.raises(ImapError):
        client.search(["ALL"])


def test_close_logs_out_and_forgets_connection() -> None:
    connection = MagicMock()
    client = _client(connection)

    client.close()

    connection.logout.assert_called_once()
    assert not client.connected


def test_search_criteria_for_flag_strategy() -> None:
    criteria = build_search_criteria(
        MarkingStrategy.FLAG, min_days=0, max_days=7, today=date(2025, 1, 10)
    )

    assert criteria == ["UNKEYWORD", "$Mailai", "SINCE", "03-Jan-2025"]


def test_search_criteria_for_seen_strategy_with_window() -> None:
    criteria = build_search_criteria(
        MarkingStrategy.SEEN, min_days=2, max_days=30, today=date(2025, 3, 1)
    )

    assert criteria == ["UNSEEN", "SINCE", "30-Jan-2025", "BEFORE", "28-Feb-2025"]
