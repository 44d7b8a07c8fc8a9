"""Data access layer for conversations, messages, summaries, and users."""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Generator

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from memobot.models.conversation import (
    Conversation,
    ConversationSummary,
    Message,
    MessageRole,
)
from memobot.models.database import utcnow
from memobot.models.schemas import UserIdentity
from memobot.models.user import TelegramUser

logger = logging.getLogger(__name__)


class _Repository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        """Yield a session whose work commits together or not at all."""
        with self._session_factory() as db, db.begin():
            yield db


class ConversationRepository(_Repository):
    """Repository for conversation data operations.

    Every public method runs in its own transaction. Callers serialize
    operations against one conversation with a ``conversation:<id>`` lock.
    """

    def get_active(self, user_id: int) -> Conversation | None:
        """Most recently created active conversation for a user."""
        with self._transaction() as db:
            return db.scalars(
                select(Conversation)
                .where(Conversation.user_id == user_id, Conversation.is_active.is_(True))
                .order_by(Conversation.created_at.desc(), Conversation.id.desc())
                .limit(1)
            ).first()

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        with self._transaction() as db:
            return db.get(Conversation, conversation_id)

    def create_conversation(self, user_id: int) -> Conversation:
        """Deactivate every active conversation of the user, then start a new one."""
        with self._transaction() as db:
            db.execute(
                update(Conversation)
                .where(Conversation.user_id == user_id, Conversation.is_active.is_(True))
                .values(is_active=False, updated_at=utcnow())
            )
            conversation = Conversation(
                user_id=user_id,
                is_active=True,
                message_count=0,
                total_tokens=0,
            )
            db.add(conversation)
            db.flush()
        logger.info(f"Created conversation {conversation.id} for user {user_id}")
        return conversation

    def append_message(
        self,
        conversation_id: int,
        role: MessageRole,
        content: str,
        tokens: int,
    ) -> Message:
        """Insert a message and bump the conversation aggregates atomically."""
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        with self._transaction() as db:
            latest = db.scalar(
                select(func.max(Message.created_at)).where(
                    Message.conversation_id == conversation_id
                )
            )
            now = utcnow()
            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                tokens=tokens,
                created_at=max(now, latest) if latest else now,
            )
            db.add(message)
            result = db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(
                    message_count=Conversation.message_count + 1,
                    total_tokens=Conversation.total_tokens + tokens,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise LookupError(f"Conversation {conversation_id} not found")
            db.flush()
        return message

    def recent_messages(self, conversation_id: int, limit: int) -> list[Message]:
        """Newest-first, at most ``limit`` messages."""
        with self._transaction() as db:
            return list(
                db.scalars(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.desc(), Message.id.desc())
                    .limit(limit)
                )
            )

    def all_messages(self, conversation_id: int) -> list[Message]:
        """Oldest-first."""
        with self._transaction() as db:
            return list(
                db.scalars(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at, Message.id)
                )
            )

    def messages_since(
        self, conversation_id: int, since: datetime | None
    ) -> list[Message]:
        """Oldest-first messages created strictly after ``since`` (all when None)."""
        query = select(Message).where(Message.conversation_id == conversation_id)
        if since is not None:
            query = query.where(Message.created_at > since)
        with self._transaction() as db:
            return list(db.scalars(query.order_by(Message.created_at, Message.id)))

    def delete_message(self, message_id: int) -> None:
        """Hard delete; aggregates are left untouched."""
        with self._transaction() as db:
            db.execute(delete(Message).where(Message.id == message_id))
        logger.info(f"Deleted message {message_id}")

    def rollback_message(self, message_id: int) -> bool:
        """Delete a message and reverse its contribution to the aggregates.

        Returns False when the message no longer exists.
        """
        with self._transaction() as db:
            message = db.get(Message, message_id)
            if message is None:
                return False
            self._reverse_aggregates(db, message.conversation_id, [message])
            db.delete(message)
        logger.info(f"Rolled back message {message_id}")
        return True

    def prune_older_than(self, conversation_id: int, keep_count: int) -> int:
        """Delete all but the newest ``keep_count`` messages. Returns the number deleted."""
        with self._transaction() as db:
            keep_ids = (
                select(Message.id)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(keep_count)
            )
            result = db.execute(
                delete(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.id.not_in(keep_ids),
                )
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info(
                f"Deleted {deleted} old messages from conversation {conversation_id}"
            )
        return deleted

    def cleanup_consecutive_user_messages(self, conversation_id: int) -> int:
        """Delete every user turn that directly follows another user turn.

        The first turn of each run survives. Returns the number deleted.
        Conversation aggregates are not decremented.
        """
        with self._transaction() as db:
            messages = db.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
            ).all()

            orphans: list[Message] = []
            last_role: MessageRole | None = None
            for message in messages:
                if message.role == MessageRole.USER and last_role == MessageRole.USER:
                    orphans.append(message)
                last_role = message.role

            if orphans:
                db.execute(delete(Message).where(Message.id.in_([m.id for m in orphans])))

        if orphans:
            logger.info(
                f"Cleaned up {len(orphans)} consecutive user messages "
                f"from conversation {conversation_id}"
            )
        return len(orphans)

    def summaries(self, conversation_id: int) -> list[ConversationSummary]:
        """Oldest-first."""
        with self._transaction() as db:
            return list(
                db.scalars(
                    select(ConversationSummary)
                    .where(ConversationSummary.conversation_id == conversation_id)
                    .order_by(ConversationSummary.created_at, ConversationSummary.id)
                )
            )

    def last_summary(self, conversation_id: int) -> ConversationSummary | None:
        with self._transaction() as db:
            return db.scalars(
                select(ConversationSummary)
                .where(ConversationSummary.conversation_id == conversation_id)
                .order_by(
                    ConversationSummary.created_at.desc(), ConversationSummary.id.desc()
                )
                .limit(1)
            ).first()

    def add_summary(self, conversation_id: int, text: str, tokens: int) -> ConversationSummary:
        """Store a summary snapshotting the conversation's current message count."""
        with self._transaction() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise LookupError(f"Conversation {conversation_id} not found")
            summary = ConversationSummary(
                conversation_id=conversation_id,
                summary=text,
                message_count_at_summary=conversation.message_count,
                tokens=tokens,
            )
            db.add(summary)
            db.flush()
        logger.info(
            f"Created summary for conversation {conversation_id} "
            f"at {summary.message_count_at_summary} messages"
        )
        return summary

    @staticmethod
    def _reverse_aggregates(
        db: Session, conversation_id: int, messages: list[Message]
    ) -> None:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            return
        conversation.message_count = max(conversation.message_count - len(messages), 0)
        conversation.total_tokens = max(
            conversation.total_tokens - sum(m.tokens for m in messages), 0
        )


class UserRepository(_Repository):
    """Resolves transport identities to stored users."""

    _PROFILE_FIELDS = ("username", "first_name", "last_name", "language_code")

    def get(self, user_id: int) -> TelegramUser | None:
        with self._transaction() as db:
            return db.get(TelegramUser, user_id)

    def find_or_create(self, identity: UserIdentity) -> TelegramUser:
        """Find a user by Telegram id, creating it or refreshing profile fields.

        Two first messages from the same user can race to insert the row.
        The loser's insert violates the unique ``telegram_id`` and is
        retried once as a plain lookup.
        """
        if identity.telegram_id is None:
            raise ValueError("identity has no telegram_id")
        try:
            return self._find_or_create(identity)
        except IntegrityError:
            logger.info(
                f"User {identity.telegram_id} was created concurrently, reloading"
            )
            return self._find_or_create(identity)

    def _find_or_create(self, identity: UserIdentity) -> TelegramUser:
        with self._transaction() as db:
            user = self._lookup(db, identity.telegram_id)

            if user is None:
                user = TelegramUser(
                    telegram_id=identity.telegram_id,
                    **{f: getattr(identity, f) for f in self._PROFILE_FIELDS},
                )
                db.add(user)
                db.flush()
                logger.info(
                    f"Created new user: {identity.telegram_id} ({identity.username})"
                )
                return user

            changed = False
            for field in self._PROFILE_FIELDS:
                value = getattr(identity, field)
                if getattr(user, field) != value:
                    setattr(user, field, value)
                    changed = True
            if changed:
                logger.info(f"Updated user info: {identity.telegram_id}")
        return user

    @staticmethod
    def _lookup(db: Session, telegram_id: int) -> TelegramUser | None:
        return db.scalars(
            select(TelegramUser).where(TelegramUser.telegram_id == telegram_id)
        ).first()
