"""
Authorization gate between Telegram and the operator directory.

Every update except /start goes through auth_gate (handler group -1).
Unknown senders get a pending record and the admins are asked to review
them; only approved senders reach the registration handlers.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from supabase import Client
from telegram import Update
from telegram.ext import ApplicationHandlerStop, ContextTypes

from storefront_bot.agents.schemas import DirectoryRecord, UserStatus
from storefront_bot.services import directory
from .keyboards import admin_review_keyboard
from .logging_config import bot_logger as logger
from .telegram_api import get_telegram_api

WELCOME_PENDING = "¡Bienvenido! Tu solicitud de registro ha sido enviada a los administradores para aprobación."
STILL_PENDING = "Tu solicitud aún está pendiente de aprobación. Por favor, espera la confirmación de un administrador."
ACCESS_DENIED = "Lo siento, tu acceso ha sido denegado. Contacta a un administrador para más información."
AUTH_ERROR = "Lo siento, ha ocurrido un error. Por favor, intenta nuevamente más tarde."
UNKNOWN_SENDER = "Lo siento, no puedo identificarte."


class Notifier(Protocol):
    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> int:
        ...


@dataclass
class AuthDecision:
    allowed: bool
    record: DirectoryRecord
    created: bool = False
    reply: Optional[str] = None


def admin_review_text(record: DirectoryRecord) -> str:
    username = f"@{record.username}" if record.username and record.username != "unknown" else "sin username"
    return (
        "🆕 Nueva solicitud de acceso\n\n"
        f"Usuario: {username}\n"
        f"ID: {record.telegram_id}\n\n"
        "¿Deseas aprobar a este usuario?"
    )


async def notify_admins(record: DirectoryRecord, notifier: Notifier, supabase: Optional[Client] = None) -> int:
    """Send the review buttons to every admin. Returns how many were notified."""
    admins = directory.list_admins(supabase)
    notified = 0
    for admin in admins:
        try:
            await notifier.send_message(
                int(admin.telegram_id),
                admin_review_text(record),
                reply_markup=admin_review_keyboard(record.telegram_id),
            )
            notified += 1
        except Exception as e:
            logger.warning(f"Could not notify admin {admin.telegram_id} about {record.telegram_id}: {e}")

    logger.info(f"Notified {notified}/{len(admins)} admins about telegram_id={record.telegram_id}")
    return notified


async def authorize(
    telegram_id: str,
    username: Optional[str],
    notifier: Notifier,
    supabase: Optional[Client] = None,
) -> AuthDecision:
    """
    Decide whether a sender may use the bot.

    First contact creates a pending record and notifies the admins; a
    duplicate-key race resolves to the existing record without notifying
    twice.
    """
    record, created = directory.get_or_create_identity(telegram_id, username, supabase)

    if created:
        await notify_admins(record, notifier, supabase)
        return AuthDecision(allowed=False, record=record, created=True, reply=WELCOME_PENDING)

    if record.status == UserStatus.APPROVED:
        return AuthDecision(allowed=True, record=record)

    if record.status == UserStatus.REJECTED:
        return AuthDecision(allowed=False, record=record, reply=ACCESS_DENIED)

    return AuthDecision(allowed=False, record=record, reply=STILL_PENDING)


def is_start_command(update: Update) -> bool:
    message = update.effective_message
    text = message.text if message else None
    return bool(text) and text.split()[0].split("@")[0] == "/start"


async def auth_gate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Stop handler propagation for anyone who isn't approved."""
    if is_start_command(update):
        return

    user = update.effective_user
    chat = update.effective_chat
    api = get_telegram_api()

    if user is None:
        if chat is not None:
            await api.send_message(chat.id, UNKNOWN_SENDER)
        raise ApplicationHandlerStop

    try:
        decision = await authorize(str(user.id), user.username, notifier=api)
    except Exception as e:
        logger.error(f"Authorization failed for telegram_id={user.id}: {e}", exc_info=True)
        if chat is not None:
            await api.send_message(chat.id, AUTH_ERROR)
        raise ApplicationHandlerStop

    if decision.allowed:
        return

    logger.info(f"Blocked telegram_id={user.id} (status={decision.record.status.value})")
    if update.callback_query is not None:
        await api.answer_callback_query(update.callback_query.id)
    if chat is not None and decision.reply:
        await api.send_message(chat.id, decision.reply)
    raise ApplicationHandlerStop
