"""
Main Telegram bot handler.

Uses python-telegram-bot with webhook mode (FastAPI, see main.py) or long
polling when run as a module:

    python -m storefront_bot.telegram_bot.bot

Handler groups:
    -2  message tracker (every update)
    -1  auth gate (stops propagation unless the sender is approved)
     0  commands, photos, text, locations, callbacks
"""

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    MessageHandler,
    TypeHandler,
    filters,
)

from storefront_bot.config import get_settings
from .auth import auth_gate
from .logging_config import bot_logger as logger
from .handlers import (
    handle_approve_command,
    handle_callback_query,
    handle_cancel_command,
    handle_error,
    handle_location_message,
    handle_photo_message,
    handle_reject_command,
    handle_start_command,
    handle_text_message,
    track_user_message,
)
from .telegram_api import get_telegram_api

TRACKER_GROUP = -2
AUTH_GROUP = -1


# Global application instance (initialized once)
_application: Application | None = None


def register_handlers(application: Application) -> None:
    application.add_handler(TypeHandler(Update, track_user_message), group=TRACKER_GROUP)
    application.add_handler(TypeHandler(Update, auth_gate), group=AUTH_GROUP)

    application.add_handler(CommandHandler("start", handle_start_command))
    application.add_handler(CommandHandler("cancel", handle_cancel_command))
    application.add_handler(CommandHandler("approve", handle_approve_command))
    application.add_handler(CommandHandler("reject", handle_reject_command))

    application.add_handler(MessageHandler(filters.PHOTO, handle_photo_message))
    application.add_handler(MessageHandler(filters.LOCATION, handle_location_message))
    application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text_message)
    )

    # Inline keyboard buttons
    application.add_handler(CallbackQueryHandler(handle_callback_query))

    application.add_error_handler(handle_error)


def get_bot_application() -> Application:
    """Get or create telegram bot application."""
    global _application

    if _application is None:
        settings = get_settings()

        # Concurrent updates so /cancel is handled while a photo analysis is awaiting
        _application = (
            Application.builder()
            .token(settings.telegram_bot_token)
            .concurrent_updates(True)
            .build()
        )
        register_handlers(_application)

        logger.info("Telegram bot application initialized")

    return _application


async def handle_telegram_update(update_data: dict) -> None:
    """
    Process incoming webhook update from Telegram.

    This is called by FastAPI webhook endpoint.
    """
    try:
        app = get_bot_application()

        # Convert dict to Update object
        update = Update.de_json(update_data, app.bot)

        if update:
            await app.process_update(update)
        else:
            logger.warning("Received invalid update data")

    except Exception as e:
        logger.error(f"Failed to process update: {e}", exc_info=True)


async def initialize_bot() -> None:
    """
    Initialize bot application (call on startup).
    """
    app = get_bot_application()
    await app.initialize()
    logger.info("Bot initialized successfully")


async def shutdown_bot() -> None:
    """
    Shutdown bot application (call on shutdown).
    """
    global _application
    if _application:
        await _application.shutdown()
        _application = None
        logger.info("Bot shut down")
    await get_telegram_api().close()


def main() -> None:
    """Run the bot with long polling."""
    app = get_bot_application()
    logger.info("Starting bot in polling mode")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
