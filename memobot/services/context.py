"""Builds the turn sequence sent to the model for a conversation."""
import logging
from typing import Sequence

from memobot.db.repository import ConversationRepository
from memobot.models.conversation import ConversationSummary, Message, MessageRole
from memobot.models.schemas import Turn
from memobot.services.tokens import TokenBudgeter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful, friendly and knowledgeable assistant.\n\n"
    "Guidelines:\n"
    "- Answer the user's latest message directly and accurately.\n"
    "- Reply in the same language the user writes in.\n"
    "- Be concise but informative.\n"
    "- The conversation history and any summaries of earlier parts of the "
    "conversation are provided to you. Use them when the user refers to "
    "something said before.\n"
    "- Never claim that you cannot remember or recall earlier messages when "
    "the information is present in the provided history or summaries.\n"
    "- If earlier replies in the history were wrong or off-topic, do not "
    "repeat them; answer the current question correctly."
)


def format_summaries(summaries: Sequence[ConversationSummary]) -> str:
    body = "\n\n".join(
        f"Summary {i}: {s.summary}" for i, s in enumerate(summaries, start=1)
    )
    return f"Previous conversation context:\n{body}"


def drop_consecutive_user_turns(turns: Sequence[Turn]) -> list[Turn]:
    """Keep only the first user turn of each run of adjacent user turns."""
    kept: list[Turn] = []
    last_role: MessageRole | None = None
    for turn in turns:
        if turn.role == MessageRole.USER and last_role == MessageRole.USER:
            continue
        kept.append(turn)
        last_role = turn.role
    return kept


class ContextAssembler:
    """Assembles system preamble, summaries and recent history for a model call."""

    def __init__(
        self,
        repository: ConversationRepository,
        budgeter: TokenBudgeter,
        max_context_tokens: int = 4000,
        recent_window: int = 20,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.repository = repository
        self.budgeter = budgeter
        self.max_context_tokens = max_context_tokens
        self.recent_window = recent_window
        self.system_prompt = system_prompt

    def build(self, conversation_id: int) -> list[Turn]:
        """Read a snapshot of the conversation and assemble its context."""
        summaries = self.repository.summaries(conversation_id)
        recent = self.repository.recent_messages(conversation_id, self.recent_window)
        return self.assemble(summaries, recent)

    def assemble(
        self,
        summaries: Sequence[ConversationSummary],
        recent_newest_first: Sequence[Message],
    ) -> list[Turn]:
        """Pure assembly from summaries (oldest-first) and recent messages (newest-first)."""
        turns = [Turn(role=MessageRole.SYSTEM, content=self.system_prompt)]
        if summaries:
            turns.append(Turn(role=MessageRole.SYSTEM, content=format_summaries(summaries)))

        history = [
            Turn(role=m.role, content=m.content) for m in reversed(recent_newest_first)
        ]
        filtered = drop_consecutive_user_turns(history)
        skipped = len(history) - len(filtered)
        if skipped:
            logger.warning(
                f"Skipped {skipped} consecutive user messages; "
                "/cleanup removes them from storage"
            )

        return self.budgeter.fit(turns + filtered, self.max_context_tokens)
