"""Root conftest: shared fixtures for all tests."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage
from sqlalchemy import create_engine, update
from sqlalchemy.pool import StaticPool

from memobot.config import Settings
from memobot.db.repository import ConversationRepository, UserRepository
from memobot.engine import build_engine
from memobot.models.database import Base, create_session_factory
import memobot.models  # noqa: F401 - register all models with Base
from memobot.models.schemas import UserIdentity
from memobot.models.user import TelegramUser
from memobot.services.locks import LocalKeyedLocks
from memobot.services.sessions import SessionService
from memobot.services.tokens import TokenBudgeter

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    """In-memory SQLite; StaticPool ensures all sessions share the same DB."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        TOKEN_ENCODING="",
        LOCK_BACKEND="local",
        LOCK_TIMEOUT=5,
        RETRY_DELAY_MS=1000,
    )


@pytest.fixture
def budgeter():
    """Degraded-mode budgeter: every estimate is ceil(len/4)."""
    return TokenBudgeter(None)


@pytest.fixture
def repo(session_factory):
    return ConversationRepository(session_factory)


@pytest.fixture
def users(session_factory):
    return UserRepository(session_factory)


@pytest.fixture
def identity():
    return UserIdentity(telegram_id=111222333, username="testuser", first_name="Test")


@pytest.fixture
def user(users, identity):
    return users.find_or_create(identity)


@pytest.fixture
def conversation(repo, user):
    return repo.create_conversation(user.id)


@pytest.fixture
def llm():
    model = MagicMock()
    model.invoke.return_value = AIMessage(content="Hi there!")
    return model


@pytest.fixture
def clock():
    return MagicMock(return_value=NOW)


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def engine_ctx(test_settings, session_factory, llm, clock, sleep):
    return build_engine(
        test_settings,
        session_factory=session_factory,
        llm=llm,
        locks=LocalKeyedLocks(timeout=5),
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def service(engine_ctx):
    return SessionService(engine_ctx)


@pytest.fixture
def set_usage(session_factory):
    """Overwrite a user's usage columns."""

    def _set(user_id: int, **values):
        with session_factory() as db, db.begin():
            db.execute(update(TelegramUser).where(TelegramUser.id == user_id).values(**values))

    return _set


@pytest.fixture
def load_user(session_factory):
    def _load(user_id: int) -> TelegramUser:
        with session_factory() as db:
            return db.get(TelegramUser, user_id)

    return _load
