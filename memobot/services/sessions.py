"""Session orchestration: one inbound user turn from quota check to reply."""
import logging
from typing import Callable

from rq.timeouts import JobTimeoutException
from sqlalchemy.exc import SQLAlchemyError

from memobot.engine import EngineContext
from memobot.logging_config import conversation_id_var, user_id_var
from memobot.models.conversation import Conversation, ConversationSummary, MessageRole
from memobot.models.schemas import (
    ChatReply,
    ConversationStats,
    ErrorKind,
    Failure,
    InboundMessage,
    Ok,
    UsageStats,
    UserIdentity,
)
from memobot.models.user import TelegramUser
from memobot.services.llm import GENERIC_FAILURE_TEXT, strip_thinking_tags
from memobot.services.locks import LockTimeout, conversation_key, user_key

logger = logging.getLogger(__name__)

IDENTITY_MISSING_TEXT = "Cannot identify user."
BUSY_TEXT = "Still working on your previous message. Please try again in a moment."


class SessionService:
    """Session management service for processing chat messages.

    ``process_message`` runs one exchange under the ``user:<id>`` lock (quota)
    and the ``conversation:<id>`` lock (message log). The user turn is stored
    before the model is called; if the exchange fails before the reply is
    stored, the user turn is rolled back.
    """

    def __init__(self, engine: EngineContext):
        self.engine = engine
        self.conversations = engine.conversations
        self.users = engine.users
        self.locks = engine.locks

    # ── Chat ───────────────────────────────────────────────────────────────

    def process_message(
        self,
        inbound: InboundMessage,
        on_processing: Callable[[], None] | None = None,
    ) -> Ok[ChatReply] | Failure:
        """
        Process a user message with session management.

        ``on_processing`` fires right before the model call, e.g. to show a
        typing indicator. Compaction is not run here; ``ChatReply.compaction_due``
        tells the caller whether to schedule ``maybe_compact``.
        """
        user = self._resolve_user(inbound.identity)
        if isinstance(user, Failure):
            return user

        token = user_id_var.set(str(user.id))
        try:
            with self.locks.hold(user_key(user.id)):
                return self._process_for_user(user.id, inbound.text, on_processing)
        except LockTimeout as e:
            logger.warning(str(e))
            return Failure(ErrorKind.BUSY, BUSY_TEXT, str(e))
        finally:
            user_id_var.reset(token)

    def _process_for_user(
        self,
        user_id: int,
        text: str,
        on_processing: Callable[[], None] | None,
    ) -> Ok[ChatReply] | Failure:
        check = self.engine.usage.check(user_id)
        if isinstance(check, Failure):
            return check
        if not check.value.allowed:
            return Failure(ErrorKind.QUOTA_EXCEEDED, check.value.reason or "Usage limit reached.")

        try:
            conversation = self._active_or_new(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to resolve conversation for user {user_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))

        token = conversation_id_var.set(str(conversation.id))
        try:
            with self.locks.hold(conversation_key(conversation.id)):
                return self._exchange(user_id, conversation.id, text, on_processing)
        finally:
            conversation_id_var.reset(token)

    def _exchange(
        self,
        user_id: int,
        conversation_id: int,
        text: str,
        on_processing: Callable[[], None] | None,
    ) -> Ok[ChatReply] | Failure:
        try:
            user_message = self.conversations.append_message(
                conversation_id,
                MessageRole.USER,
                text,
                self.engine.budgeter.estimate(text),
            )
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Failed to save user message: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))
        logger.debug(f"User message saved with ID {user_message.id} ({user_message.tokens} tokens)")

        if on_processing is not None:
            try:
                on_processing()
            except Exception as e:
                logger.warning(f"Failed to send processing indicator: {e}")

        try:
            turns = self.engine.assembler.build(conversation_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to build context: {e}")
            return self._rollback(
                user_message.id,
                Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e)),
            )
        logger.debug(f"Context built with {len(turns)} turns")

        try:
            outcome = self.engine.client.complete(turns)
        except JobTimeoutException:
            logger.error(f"Job timed out, rolling back user message {user_message.id}")
            self._rollback(
                user_message.id,
                Failure(ErrorKind.MODEL_CALL_FAILED, GENERIC_FAILURE_TEXT, "job timed out"),
            )
            raise
        if isinstance(outcome, Failure):
            logger.error(f"Failed to process message, rolling back user message {user_message.id}: {outcome.detail}")
            return self._rollback(user_message.id, outcome)
        completion = outcome.value

        try:
            self.conversations.append_message(
                conversation_id,
                MessageRole.ASSISTANT,
                completion.content,
                completion.reply_tokens,
            )
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Failed to save assistant message: {e}")
            return self._rollback(
                user_message.id,
                Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e)),
            )

        committed = self.engine.usage.commit(user_id, completion.total_tokens)
        if isinstance(committed, Failure):
            # Reply is already stored; the exchange stands without usage recorded
            logger.error(f"Usage not recorded for user {user_id}: {committed.detail}")

        try:
            compaction_due = self.engine.summarizer.is_due(conversation_id)
        except SQLAlchemyError as e:
            logger.error(f"Could not evaluate summarization threshold: {e}")
            compaction_due = False

        logger.info(f"Message processed successfully for user {user_id}")
        return Ok(
            ChatReply(
                content=strip_thinking_tags(completion.content),
                conversation_id=conversation_id,
                total_tokens=completion.total_tokens,
                compaction_due=compaction_due,
            )
        )

    def _rollback(self, message_id: int, failure: Failure) -> Failure:
        """Remove the user turn of a failed exchange, best effort."""
        try:
            if self.conversations.rollback_message(message_id):
                logger.info(f"Rolled back user message {message_id}")
            return failure
        except SQLAlchemyError as e:
            logger.error(f"Failed to rollback message {message_id}: {e}")
            return Failure(
                ErrorKind.ROLLBACK_FAILED,
                failure.message,
                f"{failure.detail}; rollback of message {message_id} failed: {e}",
            )

    def maybe_compact(self, conversation_id: int) -> Ok[ConversationSummary | None] | Failure:
        """Summarize the conversation if it crossed the threshold.

        Errors come back as a Failure; only an rq job timeout propagates.
        """
        token = conversation_id_var.set(str(conversation_id))
        try:
            with self.locks.hold(conversation_key(conversation_id)):
                if not self.engine.summarizer.is_due(conversation_id):
                    return Ok(None)
                outcome = self.engine.summarizer.compact(conversation_id)
        except LockTimeout as e:
            outcome = Failure(ErrorKind.BUSY, BUSY_TEXT, str(e))
        except JobTimeoutException:
            raise
        except Exception as e:
            logger.exception("Error creating summary")
            return Failure(ErrorKind.SUMMARIZATION_FAILED, "Summarization failed.", str(e))
        finally:
            conversation_id_var.reset(token)

        if isinstance(outcome, Failure):
            logger.error(f"Error creating summary: {outcome.detail}")
        elif outcome.value is not None:
            logger.info(f"Summary created successfully for {conversation_id}")
        return outcome

    # ── Commands ───────────────────────────────────────────────────────────

    def start_session(self, identity: UserIdentity) -> Ok[TelegramUser] | Failure:
        user = self._resolve_user(identity)
        if isinstance(user, Failure):
            return user
        return Ok(user)

    def new_conversation(self, identity: UserIdentity) -> Ok[Conversation] | Failure:
        """Start a fresh conversation, deactivating the current one."""
        user = self._resolve_user(identity)
        if isinstance(user, Failure):
            return user
        try:
            with self.locks.hold(user_key(user.id)):
                return Ok(self.conversations.create_conversation(user.id))
        except LockTimeout as e:
            return Failure(ErrorKind.BUSY, BUSY_TEXT, str(e))
        except SQLAlchemyError as e:
            logger.error(f"Failed to create conversation for user {user.id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))

    def cleanup(self, identity: UserIdentity) -> Ok[int] | Failure:
        """Delete orphaned consecutive user turns from the active conversation."""
        user = self._resolve_user(identity)
        if isinstance(user, Failure):
            return user
        try:
            with self.locks.hold(user_key(user.id)):
                conversation = self.conversations.get_active(user.id)
                if conversation is None:
                    return Ok(0)
                with self.locks.hold(conversation_key(conversation.id)):
                    return Ok(
                        self.conversations.cleanup_consecutive_user_messages(conversation.id)
                    )
        except LockTimeout as e:
            return Failure(ErrorKind.BUSY, BUSY_TEXT, str(e))
        except SQLAlchemyError as e:
            logger.error(f"Error during cleanup for user {user.id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))

    def usage_stats(self, identity: UserIdentity) -> Ok[UsageStats] | Failure:
        user = self._resolve_user(identity)
        if isinstance(user, Failure):
            return user
        try:
            with self.locks.hold(user_key(user.id)):
                return self.engine.usage.stats(user.id)
        except LockTimeout as e:
            return Failure(ErrorKind.BUSY, BUSY_TEXT, str(e))

    def conversation_stats(
        self, identity: UserIdentity
    ) -> Ok[ConversationStats | None] | Failure:
        """Aggregates of the active conversation, ``Ok(None)`` when there is none."""
        user = self._resolve_user(identity)
        if isinstance(user, Failure):
            return user
        try:
            conversation = self.conversations.get_active(user.id)
            if conversation is None:
                return Ok(None)
            summaries = self.conversations.summaries(conversation.id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read conversation stats for user {user.id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))
        return Ok(
            ConversationStats(
                conversation_id=conversation.id,
                message_count=conversation.message_count,
                total_tokens=conversation.total_tokens,
                summary_count=len(summaries),
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
            )
        )

    # ── Helpers ────────────────────────────────────────────────────────────

    def _resolve_user(self, identity: UserIdentity) -> TelegramUser | Failure:
        if identity.telegram_id is None:
            return Failure(ErrorKind.IDENTITY_MISSING, IDENTITY_MISSING_TEXT)
        try:
            return self.users.find_or_create(identity)
        except SQLAlchemyError as e:
            logger.error(f"Failed to resolve user {identity.telegram_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, GENERIC_FAILURE_TEXT, str(e))

    def _active_or_new(self, user_id: int) -> Conversation:
        conversation = self.conversations.get_active(user_id)
        if conversation is None:
            conversation = self.conversations.create_conversation(user_id)
        return conversation
