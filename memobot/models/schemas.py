"""Pydantic schemas and outcome values passed between services."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel

from memobot.models.conversation import MessageRole

T = TypeVar("T")


class Turn(BaseModel):
    """One role-tagged unit of dialogue sent to the model."""

    role: MessageRole
    content: str

    def as_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class UserIdentity(BaseModel):
    """Identity and advisory profile fields supplied by the transport."""

    telegram_id: int | None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    language_code: str | None = None


class InboundMessage(BaseModel):
    """Chat text received from the transport."""

    identity: UserIdentity
    text: str


class Completion(BaseModel):
    """Model reply and the estimated token cost of the exchange."""

    content: str
    reply_tokens: int
    total_tokens: int


class ChatReply(BaseModel):
    """Result of one successfully processed user turn."""

    content: str
    conversation_id: int
    total_tokens: int
    compaction_due: bool = False


class UsageCheck(BaseModel):
    """Quota gate decision with the remaining quota snapshot."""

    allowed: bool
    reason: str | None = None
    daily_tokens_remaining: int | None = None
    monthly_tokens_remaining: int | None = None
    daily_messages_remaining: int | None = None


class UsageStats(BaseModel):
    daily_tokens_used: int
    daily_tokens_limit: int
    monthly_tokens_used: int
    monthly_tokens_limit: int
    daily_messages_count: int
    daily_messages_limit: int


class ConversationStats(BaseModel):
    """Conversation statistics."""

    conversation_id: int
    message_count: int
    total_tokens: int
    summary_count: int
    created_at: datetime | None
    updated_at: datetime | None


# ── Outcomes ───────────────────────────────────────────────────────────────


class ErrorKind(str, enum.Enum):
    IDENTITY_MISSING = "identity_missing"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_CALL_FAILED = "model_call_failed"
    ROLLBACK_FAILED = "rollback_failed"
    SUMMARIZATION_FAILED = "summarization_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    BUSY = "busy"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """A named error kind, the text shown to the user, and internal detail for logs."""

    kind: ErrorKind
    message: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return False
