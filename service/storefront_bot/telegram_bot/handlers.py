"""
Telegram bot message handlers.

Adapters from python-telegram-bot updates to RegistrationFlow and
AdminActions calls:
- /start: welcome + status notice (no auth gate)
- /cancel, /approve <id>, /reject <id>
- photos, text, locations
- inline keyboard callbacks
"""

import re
from typing import Optional

from telegram import Update
from telegram.ext import ContextTypes

from storefront_bot.agents.schemas import UserStatus
from storefront_bot.services import directory
from .admin import AdminActions
from .auth import ACCESS_DENIED, STILL_PENDING, authorize
from .context import get_session_store
from .logging_config import bot_logger as logger
from .registration import GENERIC_ERROR, RegistrationFlow
from .telegram_api import get_telegram_api

WELCOME_MESSAGE = (
    "¡Bienvenido al Bot de Gestión de Inmobiliarias! 📸\n\n"
    "Para registrar una nueva inmobiliaria, simplemente envía una foto del local.\n"
    "Te guiaré paso a paso en el proceso de registro."
)

ADMIN_CALLBACK_RE = re.compile(r"^(approve|reject|later)_(\d+)$")

# callback_data -> RegistrationFlow method
FLOW_CALLBACKS = {
    "photos_done": "on_photos_done",
    "manual_input": "on_manual_input",
    "confirm_info": "on_confirm_info",
    "confirm_name": "on_confirm_info",
    "reject_name": "on_reject_name",
    "has_qr": "on_has_qr",
    "no_qr": "on_no_qr",
    "cancel": "on_cancel",
}
FINAL_CONFIRM_CALLBACKS = {"final_confirm", "confirm"}


_flow: Optional[RegistrationFlow] = None
_admin: Optional[AdminActions] = None


def get_registration_flow() -> RegistrationFlow:
    global _flow
    if _flow is None:
        _flow = RegistrationFlow(store=get_session_store(), api=get_telegram_api())
    return _flow


def get_admin_actions() -> AdminActions:
    global _admin
    if _admin is None:
        _admin = AdminActions(api=get_telegram_api())
    return _admin


async def track_user_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Remember every incoming message id so a step change or cancel can clean the chat."""
    message = update.message
    chat = update.effective_chat
    if message is None or chat is None:
        return
    get_session_store().get(chat.id).track_user_message(message.message_id)


async def handle_start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start: welcome, then a notice matching the sender's status."""
    user = update.effective_user
    chat = update.effective_chat
    api = get_telegram_api()

    logger.info(f"/start from user_id={user.id}, username={user.username}")

    try:
        await api.send_message(chat.id, WELCOME_MESSAGE)

        record = directory.get_identity(str(user.id))
        if record is None:
            decision = await authorize(str(user.id), user.username, notifier=api)
            if decision.reply:
                await api.send_message(chat.id, decision.reply)
        elif record.status == UserStatus.PENDING:
            await api.send_message(chat.id, STILL_PENDING)
        elif record.status == UserStatus.REJECTED:
            await api.send_message(chat.id, ACCESS_DENIED)

    except Exception as e:
        logger.error(f"/start failed for user_id={user.id}: {e}", exc_info=True)
        await api.send_message(chat.id, GENERIC_ERROR)


async def handle_cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await get_registration_flow().on_cancel(update.effective_chat.id)


async def handle_approve_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _status_command(update, context, UserStatus.APPROVED)


async def handle_reject_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _status_command(update, context, UserStatus.REJECTED)


async def _status_command(update: Update, context: ContextTypes.DEFAULT_TYPE, status: UserStatus) -> None:
    chat = update.effective_chat
    try:
        await get_admin_actions().status_command(
            chat.id, str(update.effective_user.id), list(context.args or []), status
        )
    except Exception as e:
        logger.error(f"Admin command failed: {e}", exc_info=True)
        await get_telegram_api().send_message(chat.id, "Lo siento, ha ocurrido un error al procesar el comando.")


async def handle_photo_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    photo = message.photo[-1]  # largest size

    logger.info(f"Received photo from user_id={update.effective_user.id}, file_id={photo.file_id[:16]}...")
    await get_registration_flow().on_photo(update.effective_chat.id, message.message_id, photo.file_id)


async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    logger.info(f"Received text from user_id={update.effective_user.id}, text_len={len(message.text)}")
    await get_registration_flow().on_text(update.effective_chat.id, message.text)


async def handle_location_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    location = update.message.location
    logger.info(f"Received location from user_id={update.effective_user.id}")
    await get_registration_flow().on_location(
        update.effective_chat.id, location.latitude, location.longitude
    )


async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Route inline keyboard buttons."""
    query = update.callback_query
    data = query.data or ""
    chat_id = query.message.chat.id if query.message else update.effective_chat.id
    api = get_telegram_api()

    logger.info(f"Callback from user_id={query.from_user.id}: {data}")

    admin_match = ADMIN_CALLBACK_RE.match(data)
    if admin_match:
        action, target_id = admin_match.groups()
        try:
            await get_admin_actions().review_callback(
                callback_query_id=query.id,
                chat_id=chat_id,
                message_id=query.message.message_id,
                message_text=query.message.text or "",
                sender_id=str(query.from_user.id),
                action=action,
                target_id=target_id,
            )
        except Exception as e:
            logger.error(f"Admin callback {data} failed: {e}", exc_info=True)
            await api.send_message(chat_id, "Error al procesar la acción.")
        return

    await api.answer_callback_query(query.id)

    flow = get_registration_flow()
    if data in FINAL_CONFIRM_CALLBACKS:
        await flow.on_final_confirm(chat_id, str(query.from_user.id))
    elif data in FLOW_CALLBACKS:
        await getattr(flow, FLOW_CALLBACKS[data])(chat_id)
    else:
        logger.warning(f"Unknown callback data: {data}")


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Last-resort handler for errors that escaped the handlers."""
    logger.error(f"Bot error: {context.error}", exc_info=context.error)

    if isinstance(update, Update) and update.effective_chat:
        try:
            await get_telegram_api().send_message(update.effective_chat.id, GENERIC_ERROR)
        except Exception as e:
            logger.error(f"Failed to send error message: {e}")
