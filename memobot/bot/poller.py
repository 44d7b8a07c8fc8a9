"""Telegram polling setup using python-telegram-bot."""
import logging

from telegram.ext import Application, CommandHandler, MessageHandler, filters

from memobot.bot.handlers import (
    SESSION_SERVICE_KEY,
    build_command_table,
    message_handler,
)
from memobot.config import settings
from memobot.engine import build_engine
from memobot.services.sessions import SessionService

logger = logging.getLogger(__name__)


async def on_startup(application: Application) -> None:
    """Wire the session service used by command handlers."""
    application.bot_data[SESSION_SERVICE_KEY] = SessionService(build_engine(settings))
    logger.info("Bot started with session management and RQ integration")


async def on_shutdown(application: Application) -> None:
    """Cleanup on shutdown."""
    application.bot_data.pop(SESSION_SERVICE_KEY, None)
    logger.info("Bot shutdown complete")


def create_application() -> Application:
    """Create and configure the Telegram application."""
    if not settings.TELEGRAM_BOT_TOKEN:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    app = Application.builder().token(settings.TELEGRAM_BOT_TOKEN).build()

    for command, handler in build_command_table().items():
        app.add_handler(CommandHandler(command, handler))

    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, message_handler))

    app.post_init = on_startup
    app.post_shutdown = on_shutdown

    return app


def run_polling() -> None:
    """Run the bot with polling."""
    logger.info("Starting Telegram bot with polling...")

    app = create_application()
    app.run_polling(allowed_updates=["message"], drop_pending_updates=True)
