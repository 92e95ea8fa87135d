"""
Admin actions: approve or reject operators.

Reached through /approve <telegram_id>, /reject <telegram_id> and the
approve_/reject_/later_ buttons sent with each access request. Every
action re-checks that the caller is an admin.
"""

from typing import Optional

from supabase import Client

from storefront_bot.agents.schemas import UserStatus
from storefront_bot.services import directory
from .keyboards import EMPTY_INLINE_KEYBOARD
from .logging_config import bot_logger as logger
from .telegram_api import TelegramAPI

NO_PERMISSION_COMMAND = "No tienes permisos para ejecutar este comando."
NO_PERMISSION_ACTION = "No tienes permisos para ejecutar esta acción."

USER_APPROVED_MESSAGE = (
    "✅ ¡Tu solicitud ha sido aprobada!\n\n"
    "Ahora puedes comenzar a usar el bot:\n"
    "1. Envía una foto de una inmobiliaria para registrarla\n"
    "2. Sigue las instrucciones paso a paso\n"
    "3. ¡Listo!\n\n"
    "Si tienes dudas, no dudes en contactar con un administrador."
)
USER_REJECTED_MESSAGE = (
    "❌ Lo sentimos, tu solicitud ha sido rechazada.\n\n"
    "Si crees que se trata de un error, contacta con un administrador."
)

# status -> (verb for prompts, past participle, icon)
_WORDING = {
    UserStatus.APPROVED: ("aprobar", "aprobado", "✅"),
    UserStatus.REJECTED: ("rechazar", "rechazado", "❌"),
}


class AdminActions:
    def __init__(self, api: TelegramAPI, supabase: Optional[Client] = None):
        self.api = api
        self.supabase = supabase

    def is_admin(self, telegram_id: str) -> bool:
        record = directory.get_identity(str(telegram_id), self.supabase)
        return record is not None and record.is_admin

    async def _notify_user(self, target_id: str, status: UserStatus) -> bool:
        text = USER_APPROVED_MESSAGE if status == UserStatus.APPROVED else USER_REJECTED_MESSAGE
        try:
            await self.api.send_message(int(target_id), text)
            return True
        except Exception as e:
            logger.warning(f"Could not notify user {target_id} about {status.value}: {e}")
            return False

    async def status_command(
        self,
        chat_id: int,
        sender_id: str,
        args: list[str],
        status: UserStatus,
    ) -> None:
        """Handle /approve <id> and /reject <id>."""
        verb, done, icon = _WORDING[status]

        if not self.is_admin(sender_id):
            await self.api.send_message(chat_id, NO_PERMISSION_COMMAND)
            return

        if not args:
            await self.api.send_message(chat_id, f"Por favor, proporciona el ID del usuario a {verb}.")
            return

        target_id = args[0].strip()
        if not directory.set_status(target_id, status, self.supabase):
            await self.api.send_message(chat_id, f"Error al {verb} el usuario.")
            return

        logger.info(f"Admin {sender_id} set {target_id} to {status.value} via command")
        notified = await self._notify_user(target_id, status)
        suffix = "" if notified else " (no se pudo notificar al usuario)"
        await self.api.send_message(chat_id, f"{icon} Usuario {target_id} {done} correctamente.{suffix}")

    async def review_callback(
        self,
        callback_query_id: str,
        chat_id: int,
        message_id: int,
        message_text: str,
        sender_id: str,
        action: str,
        target_id: str,
    ) -> None:
        """Handle approve_<id>, reject_<id> and later_<id> buttons on an access request."""
        if not self.is_admin(sender_id):
            await self.api.answer_callback_query(callback_query_id)
            await self.api.send_message(chat_id, NO_PERMISSION_ACTION)
            return

        if action == "later":
            await self.api.answer_callback_query(callback_query_id, "⏳ Decisión pospuesta")
        else:
            status = UserStatus.APPROVED if action == "approve" else UserStatus.REJECTED
            verb, done, icon = _WORDING[status]
            await self.api.answer_callback_query(callback_query_id, f"{icon} Usuario {done}")

        if action == "later":
            await self.api.edit_message_text(
                chat_id, message_id, f"{message_text}\n\n⏳ Pendiente de revisión",
                reply_markup=EMPTY_INLINE_KEYBOARD,
            )
            return

        if not directory.set_status(target_id, status, self.supabase):
            await self.api.send_message(chat_id, f"Error al {verb} el usuario.")
            return

        logger.info(f"Admin {sender_id} set {target_id} to {status.value} via button")
        notified = await self._notify_user(target_id, status)
        outcome = f"{icon} Usuario {done} y notificado" if notified else f"{icon} Usuario {done} pero no se pudo notificar"
        await self.api.edit_message_text(
            chat_id, message_id, f"{message_text}\n\n{outcome}",
            reply_markup=EMPTY_INLINE_KEYBOARD,
        )
