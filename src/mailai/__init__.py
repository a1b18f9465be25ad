"""MailAI: persona-based IMAP auto-responder with durable rate limiting."""

__all__ = ["__version__"]

__version__ = "0.1.0"
