"""LangChain-backed completion client with bounded retry."""
import logging
import re
import time
from typing import Callable, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from rq.timeouts import JobTimeoutException

from memobot.config import Settings, settings as default_settings
from memobot.models.conversation import MessageRole
from memobot.models.schemas import Completion, ErrorKind, Failure, Ok, Turn
from memobot.services.tokens import TokenBudgeter

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = (
    "You are a helpful assistant that creates concise summaries of "
    "conversations. Summarize the key points and context from the following "
    "conversation in 2-3 sentences."
)

GENERIC_FAILURE_TEXT = (
    "Sorry, something went wrong while processing your message. "
    "Please try again later."
)


def _turn_to_langchain(turn: Turn):
    """Convert a turn to a LangChain message object."""
    if turn.role == MessageRole.SYSTEM:
        return SystemMessage(content=turn.content)
    elif turn.role == MessageRole.ASSISTANT:
        return AIMessage(content=turn.content)
    else:
        return HumanMessage(content=turn.content)


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> blocks from response."""
    cleaned = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def create_llm(cfg: Settings | None = None, **kwargs) -> BaseChatModel:
    """
    Create a LangChain chat model based on config.

    Retries are disabled on the client: CompletionClient owns the retry
    budget so every attempt is logged and counted.

    Args:
        cfg: Settings to read provider, model and limits from
        **kwargs: Additional kwargs passed to the LLM constructor
    """
    cfg = cfg or default_settings
    provider = cfg.LLM_PROVIDER.lower()
    common = dict(
        model=cfg.LLM_MODEL,
        temperature=cfg.LLM_TEMPERATURE,
        max_tokens=cfg.LLM_MAX_TOKENS,
        timeout=cfg.LLM_TIMEOUT,
        max_retries=0,
    )
    common.update(kwargs)

    if provider == "openai":
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(api_key=cfg.LLM_API_KEY, **common)

    elif provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        return ChatAnthropic(api_key=cfg.LLM_API_KEY, **common)

    elif provider == "openai_compatible":
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            api_key=cfg.LLM_API_KEY or "not-needed",
            base_url=cfg.LLM_BASE_URL,
            **common,
        )

    else:
        raise ValueError(f"Unknown LLM provider: {provider}")


class CompletionClient:
    """Chat completions with context fitting and linear-backoff retries."""

    def __init__(
        self,
        budgeter: TokenBudgeter,
        llm: BaseChatModel | None = None,
        max_context_tokens: int = 4000,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.budgeter = budgeter
        self.llm = llm or create_llm()
        self.max_context_tokens = max_context_tokens
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def complete(self, turns: Sequence[Turn]) -> Ok[Completion] | Failure:
        """Fit ``turns`` to the budget and request a reply.

        ``total_tokens`` is the estimated cost of the fitted input plus the
        estimated cost of the reply, not the provider's billed count.
        An rq ``JobTimeoutException`` is never retried and propagates.
        """
        fitted = self.budgeter.fit(turns, self.max_context_tokens)
        lc_messages = [_turn_to_langchain(t) for t in fitted]

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(f"Attempt {attempt}/{self.max_retries} to generate response")
                response = self.llm.invoke(lc_messages)
                content = response.content if isinstance(response.content, str) else str(response.content)
            except JobTimeoutException:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    self._sleep(self.retry_delay * attempt)
                continue

            reply_tokens = self.budgeter.estimate(content)
            total_tokens = self.budgeter.estimate_turns(fitted) + reply_tokens
            logger.info(
                f"Generated response with {reply_tokens} tokens (total: {total_tokens})"
            )
            return Ok(
                Completion(
                    content=content,
                    reply_tokens=reply_tokens,
                    total_tokens=total_tokens,
                )
            )

        logger.error(f"All {self.max_retries} attempts failed: {last_error}")
        return Failure(
            kind=ErrorKind.MODEL_CALL_FAILED,
            message=GENERIC_FAILURE_TEXT,
            detail=(
                f"Failed to generate response after {self.max_retries} attempts: "
                f"{last_error}"
            ),
        )

    def summarize(self, turns: Sequence[Turn]) -> Ok[Completion] | Failure:
        """Condense ``turns`` into a short summary using the same retry path.

        The transcript is a single user turn, so it is trimmed to its newest
        lines first; otherwise an oversized transcript would be dropped whole.
        """
        def build_prompt(selected: Sequence[Turn]) -> list[Turn]:
            transcript = "\n".join(f"{t.role.value}: {t.content}" for t in selected)
            return [
                Turn(role=MessageRole.SYSTEM, content=SUMMARY_INSTRUCTION),
                Turn(
                    role=MessageRole.USER,
                    content=f"Please summarize this conversation:\n\n{transcript}",
                ),
            ]

        overhead = self.budgeter.estimate_turns(build_prompt([]))
        selected = self.budgeter.fit(
            [t for t in turns if t.role != MessageRole.SYSTEM],
            self.max_context_tokens - overhead,
        )
        outcome = self.complete(build_prompt(selected))
        if isinstance(outcome, Failure):
            return Failure(
                kind=ErrorKind.SUMMARIZATION_FAILED,
                message=outcome.message,
                detail=outcome.detail,
            )
        return outcome
