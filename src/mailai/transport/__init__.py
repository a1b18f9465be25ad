"""Transport adapters for mailbox access and outbound mail."""

from .imap_client import ImapError, ImapMailbox
from .smtp_client import SmtpClient, SmtpError, SmtpMailSender

__all__ = ["ImapError", "ImapMailbox", "SmtpClient", "SmtpError", "SmtpMailSender"]
