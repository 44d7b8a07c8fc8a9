"""Chat processing background tasks for RQ workers."""
import logging
import os

from rq.timeouts import JobTimeoutException

from memobot.config import settings
from memobot.engine import build_engine, create_locks
from memobot.logging_config import setup_logging
from memobot.models.schemas import Failure, InboundMessage, UserIdentity
from memobot.services.llm import GENERIC_FAILURE_TEXT
from memobot.services.sessions import SessionService
from memobot.services.telegram import TelegramService
from memobot.tasks.queues import get_queue, redis_conn

logger = logging.getLogger(__name__)


def _session_service() -> SessionService:
    return SessionService(build_engine(settings, locks=create_locks(settings, redis_conn)))


def process_chat_message(
    chat_id: int,
    message_id: int,
    identity: dict,
    message: str,
) -> dict:
    """
    RQ task for processing chat messages.

    Runs in worker process (sync). On success, schedules summarization on
    the low queue when the conversation crossed its threshold.
    """
    setup_logging(f"Worker-{os.getpid()}")
    telegram = TelegramService()
    try:
        return _run_chat(telegram, chat_id, message_id, identity, message)
    finally:
        telegram.close()


def _run_chat(
    telegram: TelegramService,
    chat_id: int,
    message_id: int,
    identity: dict,
    message: str,
) -> dict:
    def send_typing() -> None:
        telegram.send_chat_action(chat_id, "typing")

    try:
        service = _session_service()
        outcome = service.process_message(
            InboundMessage(identity=UserIdentity(**identity), text=message),
            on_processing=send_typing,
        )
    except JobTimeoutException:
        logger.error(f"Task timed out for chat {chat_id}")
        _reply_quietly(telegram, chat_id, GENERIC_FAILURE_TEXT, message_id)
        raise
    except Exception as e:
        logger.exception(f"Task failed for chat {chat_id}")
        _reply_quietly(telegram, chat_id, GENERIC_FAILURE_TEXT, message_id)
        return {"status": "error", "kind": "unexpected", "error": str(e)}

    if isinstance(outcome, Failure):
        _reply_quietly(telegram, chat_id, outcome.message, message_id)
        return {
            "status": "error",
            "kind": outcome.kind.value,
            "error": outcome.detail or outcome.message,
        }

    reply = outcome.value
    try:
        telegram.send_long_message(chat_id, reply.content, message_id)
    except Exception as e:
        logger.error(f"Failed to deliver reply to chat {chat_id}: {e}")

    if reply.compaction_due:
        job = get_queue("low").enqueue(
            compact_conversation_task,
            conversation_id=reply.conversation_id,
            job_timeout=settings.JOB_TIMEOUT,
        )
        logger.info(f"Enqueued summarization job {job.id} for conversation {reply.conversation_id}")

    return {
        "status": "success",
        "response_length": len(reply.content),
        "conversation_id": reply.conversation_id,
        "total_tokens": reply.total_tokens,
    }


def compact_conversation_task(conversation_id: int) -> dict:
    """
    RQ task for summarizing a conversation and pruning its history.

    Runs on the low priority queue; failures are logged only.
    """
    setup_logging(f"Worker-{os.getpid()}")
    outcome = _session_service().maybe_compact(conversation_id)
    if isinstance(outcome, Failure):
        return {"status": "error", "error": outcome.detail or outcome.message}
    if outcome.value is None:
        return {"status": "skipped"}
    return {
        "status": "success",
        "summary_id": outcome.value.id,
        "message_count_at_summary": outcome.value.message_count_at_summary,
    }


def _reply_quietly(
    telegram: TelegramService, chat_id: int, text: str, message_id: int | None
) -> None:
    try:
        telegram.send_message(chat_id, text, message_id)
    except Exception as e:
        logger.error(f"Failed to send error reply to chat {chat_id}: {e}")
