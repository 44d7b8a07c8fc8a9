"""Telegram command and message handlers."""

import asyncio
import logging
from typing import Awaitable, Callable

from telegram import Update
from telegram.ext import ContextTypes

from memobot.config import settings
from memobot.models.schemas import Failure, UserIdentity
from memobot.services.sessions import IDENTITY_MISSING_TEXT, SessionService
from memobot.tasks.chat import process_chat_message
from memobot.tasks.queues import default_queue

logger = logging.getLogger(__name__)

Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]

SESSION_SERVICE_KEY = "session_service"

HELP_TEXT = (
    "Commands:\n"
    "/new - Start a new conversation\n"
    "/cleanup - Repair conversation context after failed replies\n"
    "/usage - Show your usage and limits\n"
    "/stats - Show conversation statistics\n"
    "/help - Show this help\n\n"
    "Just send me a message to chat!"
)


def is_allowed(user_id: int) -> bool:
    """Check if user is whitelisted."""
    allowed = settings.allowed_user_ids_list
    if not allowed:
        return True
    return user_id in allowed


def identity_from_update(update: Update) -> UserIdentity:
    user = update.effective_user
    if user is None:
        return UserIdentity(telegram_id=None)
    return UserIdentity(
        telegram_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        language_code=user.language_code,
    )


def get_session_service(context: ContextTypes.DEFAULT_TYPE) -> SessionService:
    return context.application.bot_data[SESSION_SERVICE_KEY]


async def _admit(update: Update) -> UserIdentity | None:
    """Resolve the sender, replying and returning None when they may not proceed."""
    identity = identity_from_update(update)
    if identity.telegram_id is None:
        await update.message.reply_text(IDENTITY_MISSING_TEXT)
        return None
    if not is_allowed(identity.telegram_id):
        logger.warning(f"Unauthorized: {identity.telegram_id}")
        await update.message.reply_text("Access denied.")
        return None
    return identity


async def start_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    identity = await _admit(update)
    if identity is None:
        return

    outcome = await asyncio.to_thread(get_session_service(context).start_session, identity)
    if isinstance(outcome, Failure):
        await update.message.reply_text(outcome.message)
        return

    await update.message.reply_text(
        f"Hello {outcome.value.display_name}! I remember our conversation, "
        "summarizing older parts as it grows.\n\n" + HELP_TEXT
    )


async def help_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    if await _admit(update) is None:
        return
    await update.message.reply_text(HELP_TEXT)


async def new_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /new command - start a new conversation."""
    identity = await _admit(update)
    if identity is None:
        return

    outcome = await asyncio.to_thread(get_session_service(context).new_conversation, identity)
    if isinstance(outcome, Failure):
        await update.message.reply_text(outcome.message)
        return
    await update.message.reply_text(
        "Started a new conversation. Previous history will no longer be used as context."
    )


async def cleanup_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cleanup command - delete orphaned consecutive user messages."""
    identity = await _admit(update)
    if identity is None:
        return

    outcome = await asyncio.to_thread(get_session_service(context).cleanup, identity)
    if isinstance(outcome, Failure):
        await update.message.reply_text(
            "Cleanup failed. Use /new to start a fresh conversation."
        )
        return

    if outcome.value:
        await update.message.reply_text(
            f"Removed {outcome.value} orphaned messages from the conversation."
        )
    else:
        await update.message.reply_text("Nothing to clean up.")


async def usage_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /usage command - show quota usage."""
    identity = await _admit(update)
    if identity is None:
        return

    outcome = await asyncio.to_thread(get_session_service(context).usage_stats, identity)
    if isinstance(outcome, Failure):
        await update.message.reply_text(outcome.message)
        return

    stats = outcome.value
    text = (
        f"Usage:\n"
        f"- Messages today: {stats.daily_messages_count}/{stats.daily_messages_limit}\n"
        f"- Tokens today: {stats.daily_tokens_used:,}/{stats.daily_tokens_limit:,}\n"
        f"- Tokens this month: {stats.monthly_tokens_used:,}/{stats.monthly_tokens_limit:,}"
    )
    await update.message.reply_text(text)


async def stats_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats command - show conversation statistics."""
    identity = await _admit(update)
    if identity is None:
        return

    outcome = await asyncio.to_thread(
        get_session_service(context).conversation_stats, identity
    )
    if isinstance(outcome, Failure):
        await update.message.reply_text(outcome.message)
        return
    if outcome.value is None:
        await update.message.reply_text("No conversation history yet.")
        return

    stats = outcome.value
    text = (
        f"Conversation Statistics:\n"
        f"- Messages: {stats.message_count}\n"
        f"- Tokens: {stats.total_tokens:,}\n"
        f"- Summaries: {stats.summary_count}\n"
        f"- Started: {stats.created_at}\n"
        f"- Updated: {stats.updated_at}"
    )
    await update.message.reply_text(text)


async def message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle incoming text messages by enqueuing them for a worker."""
    identity = await _admit(update)
    if identity is None:
        return

    chat_id = update.effective_chat.id
    message_id = update.message.message_id
    logger.info(f"[{identity.telegram_id}] {update.message.text[:50]}...")

    job = default_queue.enqueue(
        process_chat_message,
        chat_id=chat_id,
        message_id=message_id,
        identity=identity.model_dump(),
        message=update.message.text,
        job_timeout=settings.JOB_TIMEOUT,
    )
    logger.info(f"Enqueued job {job.id} for user {identity.telegram_id}")


def build_command_table() -> dict[str, Handler]:
    """Map each bot command to its handler."""
    return {
        "start": start_handler,
        "help": help_handler,
        "new": new_handler,
        "cleanup": cleanup_handler,
        "usage": usage_handler,
        "stats": stats_handler,
    }
