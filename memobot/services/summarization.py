"""Rolling summarization of long conversations."""
import logging

from sqlalchemy.exc import SQLAlchemyError

from memobot.db.repository import ConversationRepository
from memobot.models.conversation import Conversation, ConversationSummary
from memobot.models.schemas import ErrorKind, Failure, Ok, Turn
from memobot.services.llm import CompletionClient

logger = logging.getLogger(__name__)


class SummarizationPolicy:
    """Decides when to compact a conversation and performs the compaction.

    Compaction summarizes every message newer than the latest summary,
    stores the summary, then prunes raw history to the newest
    ``keep_after_summary`` messages.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        client: CompletionClient,
        threshold: int = 20,
        keep_after_summary: int = 10,
    ):
        self.repository = repository
        self.client = client
        self.threshold = threshold
        self.keep_after_summary = keep_after_summary

    def should_compact(
        self,
        conversation: Conversation,
        last_summary: ConversationSummary | None = None,
    ) -> bool:
        snapshot = last_summary.message_count_at_summary if last_summary else 0
        return conversation.message_count - snapshot >= self.threshold

    def is_due(self, conversation_id: int) -> bool:
        conversation = self.repository.get_conversation(conversation_id)
        if conversation is None:
            return False
        return self.should_compact(conversation, self.repository.last_summary(conversation_id))

    def compact(self, conversation_id: int) -> Ok[ConversationSummary | None] | Failure:
        """Summarize and prune. ``Ok(None)`` when there was nothing to summarize."""
        try:
            last_summary = self.repository.last_summary(conversation_id)
            since = last_summary.created_at if last_summary else None
            messages = self.repository.messages_since(conversation_id, since)
            if not messages:
                return Ok(None)

            logger.info(
                f"Creating summary for conversation {conversation_id} "
                f"from {len(messages)} messages"
            )
            outcome = self.client.summarize(
                [Turn(role=m.role, content=m.content) for m in messages]
            )
            if isinstance(outcome, Failure):
                return outcome

            summary = self.repository.add_summary(
                conversation_id, outcome.value.content, outcome.value.reply_tokens
            )
            self.repository.prune_older_than(conversation_id, self.keep_after_summary)
        except (SQLAlchemyError, LookupError) as e:
            return Failure(
                ErrorKind.SUMMARIZATION_FAILED,
                "Summarization failed.",
                f"Storage error while compacting conversation {conversation_id}: {e}",
            )

        return Ok(summary)
