"""Process-wide logging for the bot and its RQ workers.

``setup_logging(role)`` runs once at startup. The session service sets
``user_id_var`` and ``conversation_id_var`` per unit of work, and every
record carries them as a ``[Role][User x][Conv y]`` prefix.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

user_id_var: ContextVar[str] = ContextVar("user_id_var", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")

LOG_FORMAT = "%(asctime)s %(context)s[%(levelname)s] %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "_memobot_stream"
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "telegram", "urllib3")


def context_prefix(role: str) -> str:
    parts = [f"[{role}]"] if role else []
    if user_id := user_id_var.get():
        parts.append(f"[User {user_id}]")
    if conversation_id := conversation_id_var.get():
        parts.append(f"[Conv {conversation_id}]")
    return "".join(parts)


class ContextFilter(logging.Filter):
    """Stamps ``record.context`` with the process role and current ids."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = context_prefix(self.role)  # type: ignore[attr-defined]
        return True


def setup_logging(role: str) -> None:
    """Send records to stderr tagged with *role* (``"Bot"``, ``"Worker-1234"``).

    Calling it again is a no-op.
    """
    from memobot.config import settings

    root = logging.getLogger()
    if any(h.name == _HANDLER_NAME for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.name = _HANDLER_NAME
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
