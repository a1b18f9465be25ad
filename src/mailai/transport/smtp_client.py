"""SMTP client for sending replies with proper error handling and security."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid

from ..core.config import Persona
from ..core.interfaces import MailSender
from ..core.models import OutgoingMessage

LOGGER = logging.getLogger(__name__)


class SmtpError(Exception):
    """Base exception for SMTP operations.

    Raised when SMTP connection, authentication, or sending fails.
    """


class SmtpClient:
    """SMTP client bound to one persona's outbound account.

    Provides context manager interface for automatic connection management.
    Supports both STARTTLS and implicit SSL connections.

    Example:
        >>> with SmtpClient(persona) as client:
        ...     client.send(OutgoingMessage(to="user@example.com", ...))
    """

    def __init__(self, persona: Persona, *, timeout: float = 30.0) -> None:
        """Initialize SMTP client with the persona's account settings.

        Args:
            persona: Persona whose SMTP account sends the replies
            timeout: Socket timeout in seconds
        """
        self._persona = persona
        self._timeout = timeout
        self._connection: smtplib.SMTP | None = None

    def __enter__(self) -> SmtpClient:
        """Enter context manager, establishing connection."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Exit context manager, closing connection."""
        self.disconnect()

    def connect(self) -> None:
        """Establish SMTP connection and authenticate.

        Raises:
            SmtpError: If connection or authentication fails
        """
        host = self._persona.resolved_smtp_host
        port = self._persona.smtp_port
        context = ssl.create_default_context()
        if not self._persona.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        LOGGER.info(
            "Creating email transport for persona '%s' (%s:%d)",
            self._persona.id,
            host,
            port,
        )

        try:
            if self._persona.smtp_starttls:
                LOGGER.debug("Using STARTTLS for SMTP connection")
                self._connection = smtplib.SMTP(host, port, timeout=self._timeout)
                self._connection.starttls(context=context)
            else:
                LOGGER.debug("Using SSL for SMTP connection")
                self._connection = smtplib.SMTP_SSL(
                    host, port, timeout=self._timeout, context=context
                )

            LOGGER.debug("Authenticating as %s", self._persona.email_user)
            self._connection.login(self._persona.email_user, self._persona.password)
            LOGGER.debug("Connected to SMTP server: %s", host)

        except smtplib.SMTPAuthenticationError as exc:
            LOGGER.error("SMTP authentication failed: %s", exc)
            raise SmtpError(f"SMTP authentication failed: {exc}") from exc
        except smtplib.SMTPConnectError as exc:
            LOGGER.error("SMTP connection failed: %s", exc)
            raise SmtpError(f"Failed to connect to SMTP server: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("SMTP error: %s", exc)
            raise SmtpError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error connecting to SMTP server: %s", exc)
            raise SmtpError(f"Network error: {exc}") from exc

    def disconnect(self) -> None:
        """Close SMTP connection gracefully."""
        if self._connection:
            try:
                self._connection.quit()
                LOGGER.debug("SMTP connection closed")
            except (smtplib.SMTPException, OSError) as exc:
                LOGGER.warning("Error closing SMTP connection: %s", exc)
            finally:
                self._connection = None

    def send(self, message: OutgoingMessage) -> None:
        """Send a reply; BCC recipients receive it without appearing in headers.

        Raises:
            SmtpError: If sending fails, any recipient is refused, or not connected
        """
        if not self._connection:
            raise SmtpError("Not connected to SMTP server")

        LOGGER.info(
            "Sending email from '%s' to %s: %s",
            self._persona.id,
            message.to,
            message.subject,
        )

        mime_message = self.build_mime_message(message)
        recipients = [message.to, *message.bcc]
        LOGGER.debug("Email headers: %s", dict(mime_message.items()))

        try:
            refused = self._connection.send_message(
                mime_message, to_addrs=recipients
            )
        except smtplib.SMTPRecipientsRefused as exc:
            LOGGER.error("All recipients refused: %s", exc)
            raise SmtpError(f"All recipients refused: {exc}") from exc
        except smtplib.SMTPSenderRefused as exc:
            LOGGER.error("Sender refused: %s", exc)
            raise SmtpError(f"Sender refused: {exc}") from exc
        except smtplib.SMTPDataError as exc:
            LOGGER.error("SMTP data error: %s", exc)
            raise SmtpError(f"SMTP data error: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("Failed to send email: %s", exc)
            raise SmtpError(f"Failed to send email: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error while sending email: %s", exc)
            raise SmtpError(f"Network error: {exc}") from exc

        if refused:
            LOGGER.warning("Some recipients were refused: %s", refused)
            raise SmtpError(f"Some recipients were refused: {refused}")

        LOGGER.info("Email sent successfully from '%s'", self._persona.id)

    def build_mime_message(self, message: OutgoingMessage) -> MIMEMultipart:
        """Build the MIME message for ``message``."""
        mime_msg = MIMEMultipart("alternative")
        mime_msg["From"] = formataddr((self._persona.name, self._persona.email_user))
        mime_msg["To"] = message.to
        mime_msg["Subject"] = message.subject
        mime_msg["Message-ID"] = make_msgid(
            domain=self._persona.email_user.partition("@")[2] or None
        )

        # Thread headers for proper email threading
        if message.in_reply_to:
            mime_msg["In-Reply-To"] = message.in_reply_to
        if message.references:
            mime_msg["References"] = message.references
        for name, value in message.headers:
            mime_msg[name] = value

        mime_msg.attach(MIMEText(message.body, "plain", "utf-8"))
        return mime_msg


class SmtpMailSender(MailSender):
    """:class:`MailSender` opening a short-lived SMTP session per reply."""

    def __init__(self, persona: Persona, *, timeout: float = 30.0) -> None:
        self._persona = persona
        self._timeout = timeout

    def send(self, message: OutgoingMessage) -> None:
        with SmtpClient(self._persona, timeout=self._timeout) as client:
            client.send(message)


__all__ = ["SmtpClient", "SmtpError", "SmtpMailSender"]
