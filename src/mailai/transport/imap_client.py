"""IMAP transport adapter providing mailbox access for one persona."""

from __future__ import annotations

import imaplib
import logging
import re
import ssl
from collections.abc import Iterable, Iterator, Sequence
from datetime import date, timedelta
from types import TracebackType

from ..core.config import Persona, PollingSettings
from ..core.errors import MailboxConnectionError
from ..core.interfaces import MailboxPoller
from ..core.models import MailMessage, MarkingStrategy
from ..ingestion.parser import EmailParser

LOGGER = logging.getLogger(__name__)

_UID_RE = re.compile(rb"UID (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


class ImapError(MailboxConnectionError):
    """Wrap low level IMAP errors with additional context."""


class ImapMailbox(MailboxPoller):
    """Thin wrapper around ``imaplib`` offering typed mailbox operations."""

    def __init__(
        self,
        persona: Persona,
        polling: PollingSettings,
        *,
        parser: EmailParser | None = None,
        batch_size: int = 10,
        readonly: bool = False,
    ) -> None:
        """Initialise the client for ``persona``; no connection is made yet."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._persona = persona
        self._polling = polling
        self._parser = parser or EmailParser()
        self._batch_size = batch_size
        self._readonly = readonly
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._exists = 0
        self.mailbox = persona.mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapMailbox:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Public API ---------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Establish IMAP connection, authenticate and select the mailbox."""
        if self._connection is not None:
            return

        persona = self._persona
        _warn_about_password(persona)
        try:
            if persona.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL",
                    persona.imap_host,
                    persona.imap_port,
                )
                connection: imaplib.IMAP4 | imaplib.IMAP4_SSL = imaplib.IMAP4_SSL(
                    persona.imap_host,
                    persona.imap_port,
                    ssl_context=_ssl_context(persona.verify_tls),
                    timeout=self._polling.connect_timeout,
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    persona.imap_host,
                    persona.imap_port,
                )
                connection = imaplib.IMAP4(
                    persona.imap_host,
                    persona.imap_port,
                    timeout=self._polling.connect_timeout,
                )

            LOGGER.debug("Authenticating as %s", persona.email_user)
            connection.sock.settimeout(self._polling.auth_timeout)
            connection.login(persona.email_user, persona.password)
            connection.sock.settimeout(self._polling.connect_timeout)

            status, data = connection.select(self.mailbox, readonly=self._readonly)
            if status != "OK":
                raise ImapError(f"Unable to select mailbox '{self.mailbox}'")
            self._exists = _first_int(data)
            self._connection = connection
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(
                f"Failed to connect to IMAP server for persona '{persona.id}'"
            ) from exc
        LOGGER.info(
            "IMAP connection ready for '%s' (%s messages in %s)",
            persona.id,
            self._exists,
            self.mailbox,
        )

    def search(self, criteria: Sequence[str]) -> list[int]:
        """Return UIDs matching ``criteria`` in ascending order."""
        connection = self._require_connection()
        LOGGER.debug("Searching %s with criteria %s", self.mailbox, list(criteria))
        try:
            status, data = connection.uid("SEARCH", None, *criteria)  # type: ignore[arg-type]
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while searching") from exc
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")
        raw_ids = data[0].split() if data and data[0] else []
        return sorted(int(raw) for raw in raw_ids)

    def fetch(self, uids: Sequence[int]) -> Iterable[MailMessage]:
        """Yield parsed messages; ``BODY.PEEK`` leaves the ``\\Seen`` flag untouched."""
        connection = self._require_connection()
        if not uids:
            return []
        persona_id = self._persona.id

        def generator() -> Iterator[MailMessage]:
            for chunk in _chunked(uids, self._batch_size):
                uid_set = ",".join(str(uid) for uid in chunk)
                LOGGER.debug("Fetching UIDs %s", uid_set)
                try:
                    status, data = connection.uid(
                        "FETCH", uid_set, "(UID FLAGS BODY.PEEK[])"
                    )
                except (imaplib.IMAP4.error, OSError) as exc:
                    raise ImapError(f"IMAP error while fetching {uid_set}") from exc
                if status != "OK":
                    raise ImapError(f"Failed to fetch message UIDs {uid_set}")
                for uid, flags, payload in _iter_fetch_response(data):
                    message = self._parser.parse(uid, payload, persona_id, flags)
                    LOGGER.info(
                        'Message #%s: From: %s, Subject: "%s", Date: %s, Flags: %s',
                        uid,
                        message.sender,
                        message.subject,
                        message.date,
                        " ".join(message.flags) or "-",
                    )
                    yield message

        return generator()

    def mark_durable(self, uid: int, strategy: MarkingStrategy) -> None:
        """Add the strategy's marker flag to ``uid``."""
        connection = self._require_connection()
        uid_str = str(uid)
        LOGGER.debug("Marking UID %s with %s", uid_str, strategy.marker)
        try:
            status, _ = connection.uid(
                "STORE", uid_str, "+FLAGS.SILENT", f"({strategy.marker})"
            )
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(f"IMAP error while marking UID {uid_str}") from exc
        if status != "OK":
            raise ImapError(f"Failed to mark message UID {uid_str}")

    def poll_new_mail(self) -> int:
        """Issue a NOOP and return how many messages arrived since the last poll."""
        connection = self._require_connection()
        try:
            status, _ = connection.noop()
            _, data = connection.response("EXISTS")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError("IMAP error while polling for new mail") from exc
        if status != "OK":
            raise ImapError("IMAP NOOP failed")
        counts = [int(item) for item in data or [] if item is not None]
        if not counts:
            return 0
        latest = counts[-1]
        arrived = max(0, latest - self._exists)
        self._exists = latest
        if arrived:
            LOGGER.info(
                "Received %s new message(s) for '%s'", arrived, self._persona.id
            )
        return arrived

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Closing IMAP connection")
            self._connection.close()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - depends on server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except (imaplib.IMAP4.error, OSError):  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None
            LOGGER.info("IMAP connection ended for '%s'", self._persona.id)

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection


def build_search_criteria(
    strategy: MarkingStrategy, *, min_days: int, max_days: int, today: date
) -> list[str]:
    """Return IMAP SEARCH keys for unanswered mail inside the day window."""
    if strategy is MarkingStrategy.SEEN:
        criteria = ["UNSEEN"]
    else:
        criteria = ["UNKEYWORD", strategy.marker]
    criteria += ["SINCE", _imap_date(today - timedelta(days=max_days))]
    if min_days > 0:
        # BEFORE is exclusive, so mail from exactly min_days ago stays included.
        criteria += ["BEFORE", _imap_date(today - timedelta(days=min_days - 1))]
    return criteria


def _imap_date(value: date) -> str:
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def _ssl_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _warn_about_password(persona: Persona) -> None:
    password = persona.password
    if len(password) < 8:
        LOGGER.warning(
            "Password for %s seems too short (less than 8 characters)",
            persona.email_user,
        )
    if "gmail.com" in persona.email_user and len(password) != 16:
        LOGGER.warning(
            "Gmail account %s detected but password length is not 16 characters; "
            "make sure an App Password is used",
            persona.email_user,
        )


def _first_int(data: Sequence[bytes | None] | None) -> int:
    if not data or data[0] is None:
        return 0
    try:
        return int(data[0])
    except ValueError:
        return 0


def _chunked(items: Sequence[int], size: int) -> Iterator[list[int]]:
    """Yield successive lists of ``size`` elements."""
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def _iter_fetch_response(
    fetch_data: Sequence[tuple[bytes, bytes] | bytes | None],
) -> Iterator[tuple[int, tuple[str, ...], bytes]]:
    """Extract ``(uid, flags, payload)`` from ``imaplib`` FETCH responses.

    Servers may send ``FLAGS`` after the literal, in the trailing bytes item.
    """
    entries = list(fetch_data)
    for index, entry in enumerate(entries):
        if not (isinstance(entry, tuple) and len(entry) == 2):
            continue
        meta, payload = entry
        trailer = entries[index + 1] if index + 1 < len(entries) else None
        trailer = trailer if isinstance(trailer, bytes) else b""

        uid_match = _UID_RE.search(meta) or _UID_RE.search(trailer)
        if uid_match is None:
            LOGGER.warning("FETCH response without UID skipped: %r", meta[:80])
            continue
        flags_match = _FLAGS_RE.search(meta) or _FLAGS_RE.search(trailer)
        flags = tuple(flags_match.group(1).decode().split()) if flags_match else ()
        yield int(uid_match.group(1)), flags, payload


__all__ = [
    "ImapError",
    "ImapMailbox",
    "build_search_criteria",
]
