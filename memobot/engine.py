"""Explicit bundle of the services one unit of work needs."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from langchain_core.language_models import BaseChatModel
from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from memobot.config import Settings, settings as default_settings
from memobot.db.repository import ConversationRepository, UserRepository
from memobot.models.database import create_db_engine, create_session_factory, init_db
from memobot.services.context import ContextAssembler
from memobot.services.llm import CompletionClient, create_llm
from memobot.services.locks import KeyedLocks, LocalKeyedLocks, RedisKeyedLocks
from memobot.services.summarization import SummarizationPolicy
from memobot.services.tokens import TokenBudgeter
from memobot.services.usage import UsageGovernor

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    settings: Settings
    conversations: ConversationRepository
    users: UserRepository
    budgeter: TokenBudgeter
    assembler: ContextAssembler
    client: CompletionClient
    summarizer: SummarizationPolicy
    usage: UsageGovernor
    locks: KeyedLocks


def create_locks(cfg: Settings, conn: Redis | None = None) -> KeyedLocks:
    """Build the lock table selected by ``LOCK_BACKEND``."""
    backend = cfg.LOCK_BACKEND.lower()
    if backend == "local":
        return LocalKeyedLocks(timeout=cfg.LOCK_TIMEOUT)
    elif backend == "redis":
        return RedisKeyedLocks(
            conn or Redis.from_url(cfg.redis_url),
            timeout=cfg.LOCK_TIMEOUT,
            lease=cfg.JOB_TIMEOUT * 2,
        )
    else:
        raise ValueError(f"Unknown lock backend: {backend}")


def build_engine(
    cfg: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    llm: BaseChatModel | None = None,
    locks: KeyedLocks | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> EngineContext:
    """Wire every service from settings; keyword overrides replace single parts."""
    cfg = cfg or default_settings

    if session_factory is None:
        engine = create_db_engine(cfg.DATABASE_URL)
        init_db(engine)
        session_factory = create_session_factory(engine)

    conversations = ConversationRepository(session_factory)
    budgeter = TokenBudgeter(cfg.TOKEN_ENCODING or None)

    client_kwargs = {"sleep": sleep} if sleep is not None else {}
    client = CompletionClient(
        budgeter,
        llm=llm or create_llm(cfg),
        max_context_tokens=cfg.MAX_CONTEXT_TOKENS,
        max_retries=cfg.MAX_RETRIES,
        retry_delay=cfg.retry_delay_seconds,
        **client_kwargs,
    )

    usage_kwargs = {"clock": clock} if clock is not None else {}
    usage = UsageGovernor(
        session_factory,
        max_daily_tokens=cfg.MAX_TOKENS_PER_USER_DAILY,
        max_monthly_tokens=cfg.MAX_TOKENS_PER_USER_MONTHLY,
        max_daily_messages=cfg.MAX_MESSAGES_PER_USER_DAILY,
        tz=cfg.QUOTA_TIMEZONE,
        **usage_kwargs,
    )

    return EngineContext(
        settings=cfg,
        conversations=conversations,
        users=UserRepository(session_factory),
        budgeter=budgeter,
        assembler=ContextAssembler(
            conversations,
            budgeter,
            max_context_tokens=cfg.MAX_CONTEXT_TOKENS,
            recent_window=cfg.RECENT_MESSAGE_WINDOW,
        ),
        client=client,
        summarizer=SummarizationPolicy(
            conversations,
            client,
            threshold=cfg.MESSAGES_BEFORE_SUMMARY,
            keep_after_summary=cfg.KEEP_MESSAGES_AFTER_SUMMARY,
        ),
        usage=usage,
        locks=locks or create_locks(cfg),
    )
