"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

from collections.abc import Iterable
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses

from ..core.models import MailMessage


class EmailParser:
    """Convert raw email payloads into :class:`MailMessage` instances."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self,
        uid: int,
        payload: bytes,
        persona_id: str,
        flags: Iterable[str] = (),
    ) -> MailMessage:
        """Parse raw RFC822 bytes plus IMAP flags into a :class:`MailMessage`."""
        message = self._parser.parsebytes(payload)
        keywords = tuple(_split_keywords(message.get_all("Keywords", [])))

        return MailMessage(
            uid=uid,
            persona_id=persona_id,
            sender=_take_first_address(message.get("From")),
            subject=_header_text(message.get("Subject")),
            to=tuple(_extract_addresses(message.get_all("To", []))),
            cc=tuple(_extract_addresses(message.get_all("Cc", []))),
            flags=tuple(flags),
            keywords=keywords,
            body=_extract_text(message),
            message_id=_header_text(message.get("Message-ID")),
            references=_header_text(message.get("References")),
            date=_header_text(message.get("Date")),
        )


def _header_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = list(_extract_addresses([header_value]))
    return addresses[0] if addresses else None


def _split_keywords(headers: Iterable[str]) -> Iterable[str]:
    for header in headers:
        for keyword in str(header).replace(",", " ").split():
            yield keyword


def _extract_text(message: EmailMessage) -> str:
    """Return the plain text body, falling back to HTML parts."""
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if not content:
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    if plain_chunks:
        return "\n\n".join(plain_chunks)
    return "\n".join(html_chunks)


__all__ = ["EmailParser"]
