"""Tests for services/usage.py: quota gate, commit, calendar resets."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from memobot.models.schemas import ErrorKind, Failure, Ok
from memobot.services.usage import UsageGovernor

# Matches the shared clock fixture
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.replace(tzinfo=None)


@pytest.fixture
def governor(session_factory, clock):
    return UsageGovernor(
        session_factory,
        max_daily_tokens=50000,
        max_monthly_tokens=500000,
        max_daily_messages=100,
        clock=clock,
    )


def _fresh(set_usage, user_id, **values):
    """Counters stamped as reset today so no lazy reset interferes."""
    set_usage(user_id, last_daily_reset=TODAY, last_monthly_reset=TODAY, **values)


class TestCheck:
    def test_allows_fresh_user(self, governor, user):
        outcome = governor.check(user.id)
        assert isinstance(outcome, Ok)
        assert outcome.value.allowed
        assert outcome.value.daily_messages_remaining == 100
        assert outcome.value.daily_tokens_remaining == 50000
        assert outcome.value.monthly_tokens_remaining == 500000

    def test_daily_message_limit(self, governor, user, set_usage):
        _fresh(set_usage, user.id, daily_messages_count=100)
        outcome = governor.check(user.id)
        assert not outcome.value.allowed
        assert "100" in outcome.value.reason
        assert "messages" in outcome.value.reason

    def test_daily_token_limit(self, governor, user, set_usage):
        _fresh(set_usage, user.id, daily_tokens_used=50000)
        outcome = governor.check(user.id)
        assert not outcome.value.allowed
        assert "50000" in outcome.value.reason

    def test_monthly_token_limit(self, governor, user, set_usage):
        _fresh(set_usage, user.id, monthly_tokens_used=500000)
        outcome = governor.check(user.id)
        assert not outcome.value.allowed
        assert "500000" in outcome.value.reason

    def test_message_limit_reported_first(self, governor, user, set_usage):
        _fresh(
            set_usage,
            user.id,
            daily_messages_count=100,
            daily_tokens_used=50000,
            monthly_tokens_used=500000,
        )
        assert "messages per day" in governor.check(user.id).value.reason

    def test_missing_user_is_persistence_failure(self, governor):
        outcome = governor.check(987654)
        assert isinstance(outcome, Failure)
        assert outcome.kind == ErrorKind.PERSISTENCE_FAILED


class TestResets:
    def test_first_check_stamps_epochs(self, governor, user, load_user):
        governor.check(user.id)
        stored = load_user(user.id)
        assert stored.last_daily_reset == TODAY
        assert stored.last_monthly_reset == TODAY

    def test_new_day_resets_daily_counters(self, session_factory, user, set_usage, load_user):
        set_usage(
            user.id,
            daily_messages_count=100,
            daily_tokens_used=40000,
            monthly_tokens_used=40000,
            last_daily_reset=datetime(2026, 3, 14, 23, 59),
            last_monthly_reset=datetime(2026, 3, 1, 0, 0),
        )
        clock = MagicMock(return_value=datetime(2026, 3, 15, 0, 1, tzinfo=timezone.utc))
        governor = UsageGovernor(session_factory, clock=clock)

        outcome = governor.check(user.id)

        assert outcome.value.allowed
        stored = load_user(user.id)
        assert stored.daily_messages_count == 0
        assert stored.daily_tokens_used == 0
        # Same month: monthly counter survives
        assert stored.monthly_tokens_used == 40000

    def test_same_day_does_not_reset(self, session_factory, user, set_usage, load_user):
        set_usage(
            user.id,
            daily_messages_count=100,
            last_daily_reset=datetime(2026, 3, 15, 0, 1),
            last_monthly_reset=datetime(2026, 3, 15, 0, 1),
        )
        clock = MagicMock(return_value=datetime(2026, 3, 15, 23, 59, tzinfo=timezone.utc))
        governor = UsageGovernor(session_factory, clock=clock)

        assert not governor.check(user.id).value.allowed
        assert load_user(user.id).daily_messages_count == 100

    def test_new_month_resets_monthly_counter(self, session_factory, user, set_usage, load_user):
        set_usage(
            user.id,
            monthly_tokens_used=500000,
            last_daily_reset=datetime(2026, 3, 31, 22, 0),
            last_monthly_reset=datetime(2026, 3, 1, 0, 0),
        )
        clock = MagicMock(return_value=datetime(2026, 4, 1, 0, 30, tzinfo=timezone.utc))
        governor = UsageGovernor(session_factory, clock=clock)

        assert governor.check(user.id).value.allowed
        assert load_user(user.id).monthly_tokens_used == 0

    def test_same_month_number_next_year_resets(self, governor):
        assert governor.should_reset_monthly(
            datetime(2025, 3, 20), datetime(2026, 3, 20, tzinfo=timezone.utc)
        )

    def test_days_evaluated_in_configured_timezone(self, session_factory):
        governor = UsageGovernor(session_factory, tz="Asia/Ho_Chi_Minh")
        # 16:30 and 17:30 UTC straddle local midnight at UTC+7
        last = datetime(2026, 3, 15, 16, 30)
        now = datetime(2026, 3, 15, 17, 30, tzinfo=timezone.utc)
        assert governor.should_reset_daily(last, now)
        assert not UsageGovernor(session_factory).should_reset_daily(last, now)

    def test_never_reset_counts_as_due(self, governor):
        assert governor.should_reset_daily(None, NOW)
        assert governor.should_reset_monthly(None, NOW)


class TestCommit:
    def test_increments_all_counters(self, governor, user, set_usage):
        _fresh(set_usage, user.id)
        outcome = governor.commit(user.id, 120)
        assert isinstance(outcome, Ok)
        stats = outcome.value
        assert stats.daily_tokens_used == 120
        assert stats.monthly_tokens_used == 120
        assert stats.daily_messages_count == 1

    def test_accumulates(self, governor, user, set_usage, load_user):
        _fresh(set_usage, user.id, daily_tokens_used=10, monthly_tokens_used=1000, daily_messages_count=3)
        governor.commit(user.id, 5)
        stored = load_user(user.id)
        assert (stored.daily_tokens_used, stored.monthly_tokens_used, stored.daily_messages_count) == (
            15,
            1005,
            4,
        )

    def test_missing_user(self, governor):
        assert governor.commit(987654, 5).kind == ErrorKind.PERSISTENCE_FAILED


class TestStatsAndReset:
    def test_stats_report_limits(self, governor, user, set_usage):
        _fresh(set_usage, user.id, daily_tokens_used=7)
        stats = governor.stats(user.id).value
        assert stats.daily_tokens_used == 7
        assert stats.daily_tokens_limit == 50000
        assert stats.monthly_tokens_limit == 500000
        assert stats.daily_messages_limit == 100

    def test_reset_all_zeroes_counters(self, governor, user, set_usage, load_user):
        _fresh(set_usage, user.id, daily_tokens_used=7, monthly_tokens_used=70, daily_messages_count=2)
        stats = governor.reset_all(user.id).value
        assert (stats.daily_tokens_used, stats.monthly_tokens_used, stats.daily_messages_count) == (0, 0, 0)
        assert load_user(user.id).last_daily_reset == TODAY
