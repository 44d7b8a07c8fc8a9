"""SQLAlchemy models, re-exported."""

from memobot.models.user import TelegramUser  # noqa: F401
from memobot.models.conversation import (  # noqa: F401
    Conversation,
    ConversationSummary,
    Message,
    MessageRole,
)
