"""Per-user daily and monthly usage quotas."""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from memobot.models.schemas import (
    ErrorKind,
    Failure,
    Ok,
    UsageCheck,
    UsageStats,
)
from memobot.models.user import TelegramUser

logger = logging.getLogger(__name__)

USAGE_READ_FAILURE_TEXT = "Could not read usage information. Please try again later."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageGovernor:
    """Gates requests against per-user quotas and records usage after success.

    Daily counters reset when the calendar day of ``last_daily_reset``
    differs from today's, and the monthly counter when the month or year
    differs, both evaluated in ``tz``. Elapsed time does not matter: 23:59
    and 00:01 are different days, 00:01 and 23:59 the same day are not.

    Resets are applied lazily by every operation. Callers serialize
    operations for one user with a ``user:<id>`` lock.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_daily_tokens: int = 50000,
        max_monthly_tokens: int = 500000,
        max_daily_messages: int = 100,
        tz: str = "UTC",
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._session_factory = session_factory
        self.max_daily_tokens = max_daily_tokens
        self.max_monthly_tokens = max_monthly_tokens
        self.max_daily_messages = max_daily_messages
        self.tz = ZoneInfo(tz)
        self._clock = clock

    # ── Calendar helpers ───────────────────────────────────────────────────

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _local_date(self, moment: datetime) -> date:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz).date()

    def should_reset_daily(self, last_reset: datetime | None, now: datetime) -> bool:
        return last_reset is None or self._local_date(last_reset) != self._local_date(now)

    def should_reset_monthly(self, last_reset: datetime | None, now: datetime) -> bool:
        if last_reset is None:
            return True
        last, current = self._local_date(last_reset), self._local_date(now)
        return (last.year, last.month) != (current.year, current.month)

    def _apply_resets(self, user: TelegramUser, now: datetime) -> None:
        stamp = now.astimezone(timezone.utc).replace(tzinfo=None)
        if self.should_reset_daily(user.last_daily_reset, now):
            user.daily_tokens_used = 0
            user.daily_messages_count = 0
            user.last_daily_reset = stamp
            logger.info(f"Reset daily counters for user {user.id}")
        if self.should_reset_monthly(user.last_monthly_reset, now):
            user.monthly_tokens_used = 0
            user.last_monthly_reset = stamp
            logger.info(f"Reset monthly counters for user {user.id}")

    def _load(self, db: Session, user_id: int) -> TelegramUser:
        user = db.get(TelegramUser, user_id, with_for_update=True)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        return user

    # ── Operations ─────────────────────────────────────────────────────────

    def check(self, user_id: int) -> Ok[UsageCheck] | Failure:
        """Decide whether the user may start a new exchange.

        Ceilings are evaluated in order: daily messages, daily tokens,
        monthly tokens. A denial is ``Ok`` with ``allowed=False``; only
        storage errors produce a ``Failure``.
        """
        try:
            with self._session_factory() as db, db.begin():
                user = self._load(db, user_id)
                self._apply_resets(user, self._now())
                result = self._evaluate(user)
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Usage check failed for user {user_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, USAGE_READ_FAILURE_TEXT, str(e))

        if not result.allowed:
            logger.info(f"User {user_id} denied: {result.reason}")
        return Ok(result)

    def _evaluate(self, user: TelegramUser) -> UsageCheck:
        if user.daily_messages_count >= self.max_daily_messages:
            return UsageCheck(
                allowed=False,
                reason=(
                    f"You have reached the limit of {self.max_daily_messages} "
                    "messages per day. Please try again tomorrow."
                ),
                daily_messages_remaining=0,
            )
        if user.daily_tokens_used >= self.max_daily_tokens:
            return UsageCheck(
                allowed=False,
                reason=(
                    f"You have used all {self.max_daily_tokens} tokens for today. "
                    "Please try again tomorrow."
                ),
                daily_tokens_remaining=0,
            )
        if user.monthly_tokens_used >= self.max_monthly_tokens:
            return UsageCheck(
                allowed=False,
                reason=(
                    f"You have used all {self.max_monthly_tokens} tokens for this month. "
                    "Please try again next month."
                ),
                monthly_tokens_remaining=0,
            )
        return UsageCheck(
            allowed=True,
            daily_tokens_remaining=self.max_daily_tokens - user.daily_tokens_used,
            monthly_tokens_remaining=self.max_monthly_tokens - user.monthly_tokens_used,
            daily_messages_remaining=self.max_daily_messages - user.daily_messages_count,
        )

    def commit(self, user_id: int, tokens_used: int) -> Ok[UsageStats] | Failure:
        """Record one successful exchange costing ``tokens_used`` tokens."""
        try:
            with self._session_factory() as db, db.begin():
                user = self._load(db, user_id)
                self._apply_resets(user, self._now())
                user.daily_tokens_used += tokens_used
                user.monthly_tokens_used += tokens_used
                user.daily_messages_count += 1
                stats = self._stats(user)
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Failed to record usage for user {user_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, USAGE_READ_FAILURE_TEXT, str(e))

        logger.info(
            f"User {user_id}: used {tokens_used} tokens. "
            f"Daily: {stats.daily_tokens_used}/{stats.daily_tokens_limit}, "
            f"Monthly: {stats.monthly_tokens_used}/{stats.monthly_tokens_limit}, "
            f"Messages: {stats.daily_messages_count}/{stats.daily_messages_limit}"
        )
        return Ok(stats)

    def stats(self, user_id: int) -> Ok[UsageStats] | Failure:
        """Current counters and limits, after applying pending resets."""
        try:
            with self._session_factory() as db, db.begin():
                user = self._load(db, user_id)
                self._apply_resets(user, self._now())
                return Ok(self._stats(user))
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Failed to read usage for user {user_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, USAGE_READ_FAILURE_TEXT, str(e))

    def reset_all(self, user_id: int) -> Ok[UsageStats] | Failure:
        """Administrative reset of all counters and both epochs."""
        try:
            with self._session_factory() as db, db.begin():
                user = self._load(db, user_id)
                stamp = self._now().astimezone(timezone.utc).replace(tzinfo=None)
                user.daily_tokens_used = 0
                user.monthly_tokens_used = 0
                user.daily_messages_count = 0
                user.last_daily_reset = stamp
                user.last_monthly_reset = stamp
                stats = self._stats(user)
        except (SQLAlchemyError, LookupError) as e:
            logger.error(f"Failed to reset limits for user {user_id}: {e}")
            return Failure(ErrorKind.PERSISTENCE_FAILED, USAGE_READ_FAILURE_TEXT, str(e))

        logger.info(f"Manually reset all limits for user {user_id}")
        return Ok(stats)

    def _stats(self, user: TelegramUser) -> UsageStats:
        return UsageStats(
            daily_tokens_used=user.daily_tokens_used,
            daily_tokens_limit=self.max_daily_tokens,
            monthly_tokens_used=user.monthly_tokens_used,
            monthly_tokens_limit=self.max_monthly_tokens,
            daily_messages_count=user.daily_messages_count,
            daily_messages_limit=self.max_daily_messages,
        )
