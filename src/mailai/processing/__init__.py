"""Message lifecycle, per-persona runners and the application supervisor."""

from .application import MailAIApplication, run_application
from .controller import MessageLifecycleController
from .runner import PersonaRunner

__all__ = [
    "MailAIApplication",
    "MessageLifecycleController",
    "PersonaRunner",
    "run_application",
]
