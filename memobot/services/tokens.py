"""Token counting and context-window budgeting."""
import logging
import math
from typing import Sequence

import tiktoken

from memobot.models.conversation import MessageRole
from memobot.models.schemas import Turn

logger = logging.getLogger(__name__)

# cl100k_base works for most modern models
DEFAULT_ENCODING = "cl100k_base"

# Accounting convention of OpenAI chat models
TOKENS_PER_TURN = 4
TOKENS_PER_SEQUENCE = 3


def heuristic_tokens(text: str) -> int:
    """Length/4 estimate used when no encoder is available."""
    return math.ceil(len(text) / 4)


class TokenBudgeter:
    """Estimates token cost of text and trims turn lists to a budget.

    When the tiktoken encoding cannot be loaded the budgeter runs in
    degraded mode (``precise`` is False) and every estimate is
    ``ceil(len(text) / 4)``. Degraded estimates differ materially from
    encoder counts, which changes both trimming and quota accounting.
    """

    def __init__(self, encoding_name: str | None = DEFAULT_ENCODING):
        self._encoding = None
        if encoding_name:
            try:
                self._encoding = tiktoken.get_encoding(encoding_name)
            except Exception as e:
                logger.warning(
                    f"Failed to load tiktoken encoding {encoding_name!r} ({e}); "
                    "token estimates fall back to length/4 (degraded mode)"
                )
        else:
            logger.warning("No token encoding configured; using length/4 estimates (degraded mode)")

    @property
    def precise(self) -> bool:
        """True when estimates come from the tiktoken encoder."""
        return self._encoding is not None

    def estimate(self, text: str) -> int:
        """Count tokens in a text string."""
        if self._encoding is None:
            return heuristic_tokens(text)
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning(f"Token encoding failed ({e}); using length/4 estimate for this text")
            return heuristic_tokens(text)

    def estimate_turn(self, turn: Turn) -> int:
        return self.estimate(turn.content) + TOKENS_PER_TURN

    def estimate_turns(self, turns: Sequence[Turn]) -> int:
        """Count tokens in a turn sequence, including per-turn and sequence overhead."""
        return sum(self.estimate_turn(t) for t in turns) + TOKENS_PER_SEQUENCE

    def fit(self, turns: Sequence[Turn], budget: int) -> list[Turn]:
        """Keep system turns plus the newest other turns that fit in ``budget``.

        Non-system turns are taken newest-to-oldest and the walk stops at the
        first turn that would overflow. System turns are never dropped, even
        when they alone exceed the budget. The result is system turns first,
        then the kept turns in their original order.
        """
        system = [t for t in turns if t.role == MessageRole.SYSTEM]
        others = [t for t in turns if t.role != MessageRole.SYSTEM]

        total = self.estimate_turns(system)
        kept: list[Turn] = []
        for turn in reversed(others):
            cost = self.estimate_turn(turn)
            if total + cost > budget:
                break
            kept.append(turn)
            total += cost

        kept.reverse()
        if len(kept) < len(others):
            logger.debug(
                f"Trimmed {len(others) - len(kept)} of {len(others)} turns "
                f"to fit {budget} tokens"
            )
        return system + kept
