"""
Registration dialog state machine.

    idle -> collecting_photos -> waiting_confirmation -> waiting_location
         -> waiting_final_confirm -> idle

with waiting_name as a detour when the operator types the name (manual
input or rejected name). `cancel` returns to idle from any step.

RegistrationFlow knows nothing about python-telegram-bot: handlers.py
translates updates into calls on it, and every outbound message goes
through the injected TelegramAPI so sent ids can be tracked.
"""

import asyncio
import functools
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from storefront_bot.agents.schemas import (
    ContactInfo,
    DirectoryRecord,
    Location,
    PhotoEntry,
    QRValidationResult,
    RegistrationDraft,
    Step,
    UrlValidationResult,
)
from storefront_bot.config import get_settings
from storefront_bot.errors import NoMainPhotoError, PersistenceError
from storefront_bot.services import directory
from storefront_bot.services.image_analysis import ImageAnalyzer, analyze_photos, get_image_analyzer
from storefront_bot.services.persistence import PersistenceOutcome, persist_registration
from storefront_bot.services.reconciliation import ReconciliationResult, reconcile, resolve_urls
from storefront_bot.services.url_resolution import validate_and_process_qr
from storefront_bot.services.url_validator import validate_real_estate_url
from . import keyboards
from .context import ChatSession, SessionStore
from .logging_config import bot_logger as logger
from .telegram_api import TelegramAPI

GENERIC_ERROR = "Lo siento, ha ocurrido un error. Por favor, intenta nuevamente."
FOLLOW_STEPS = "Por favor, sigue el proceso paso a paso. Envía una foto para comenzar."
FOLLOW_CURRENT_STEP = "Por favor, completa el paso actual o pulsa /cancel para empezar de nuevo."
STRAY_PHOTO = "⚠️ Por favor, completa el paso actual antes de enviar más fotos."
NEED_PHOTO = "Debes enviar al menos una foto."
NO_FACADE = (
    "No se detectó ninguna foto de la fachada del local. "
    "Por favor, asegúrate de incluir una foto del frente del local."
)
ANALYSIS_BUSY = "⏳ El análisis de las fotos sigue en curso..."
CANCELLED = "Proceso cancelado. Puedes empezar de nuevo enviando una foto."
SAVE_ERROR = "❌ Error al guardar los datos. Por favor, intenta nuevamente."

LOOKUP_ATTEMPTS = 3

# Tests swap this for tenacity.wait_none()
LOOKUP_RETRY_WAIT = wait_exponential(multiplier=2, min=2, max=8)

QRValidator = Callable[[str], Awaitable[QRValidationResult]]
UrlValidatorFn = Callable[[str, str], Awaitable[UrlValidationResult]]
Persister = Callable[..., Awaitable[PersistenceOutcome]]
UserLookup = Callable[[str], Optional[DirectoryRecord]]


def log_state(session: ChatSession, action: str) -> None:
    draft = session.draft
    summary = "none"
    if draft is not None:
        summary = (
            f"photos={len(draft.photos)} name={draft.name!r} qr={draft.qr!r} "
            f"web_url={draft.web_url!r} location={'yes' if draft.location else 'no'}"
        )
    logger.debug(f"[chat {session.chat_id}] {action}: step={session.step.value} draft={summary}")


def _format_validation(url: str, validation: Optional[UrlValidationResult]) -> str:
    if validation is None:
        return url

    summary = f"{url}{' ✅' if validation.is_valid else ' ❌'}"
    if not validation.is_valid:
        return f"{summary} - {validation.error or 'URL inválida'}"

    if validation.confidence:
        summary += f" ({round(validation.confidence * 100)}% match)\n"
        if validation.web_summary:
            summary += "📋 Verificado en web:\n"
            summary += f"- Negocio: {validation.web_summary.title}\n"
            summary += f"- Ubicación: {validation.web_summary.location}\n"
            summary += f"- Tipo: {validation.web_summary.type}\n"
        evidence = validation.validation_details.found_evidence if validation.validation_details else []
        if evidence:
            summary += "✨ Evidencias encontradas:\n"
            summary += "".join(f"- {item}\n" for item in evidence)
    return summary


def format_url_summary(urls: list[str], validations: dict[str, UrlValidationResult]) -> str:
    """One block per URL: ✅/❌, match percentage, what the site says about itself."""
    if not urls:
        return "No detectadas"
    if len(urls) == 1:
        return _format_validation(urls[0], validations.get(urls[0]))
    return "⚠️ Múltiples URLs detectadas:\n" + "\n\n".join(
        _format_validation(url, validations.get(url)) for url in urls
    )


def _joined(values: list[str], empty: str) -> str:
    return ", ".join(values) or empty


def transition(action: str):
    """
    Wrap a RegistrationFlow step handler.

    Logs the state around the call; any exception is logged and answered
    with an auto-deleted apology.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "RegistrationFlow", chat_id: int, *args, **kwargs):
            session = self.store.get(chat_id)
            log_state(session, f"before {action}")
            try:
                await func(self, session, *args, **kwargs)
            except Exception as e:
                logger.error(f"[chat {chat_id}] {action} failed: {e}", exc_info=True)
                await self.flash(chat_id, GENERIC_ERROR)
            log_state(session, f"after {action}")
        return wrapper
    return decorator


class RegistrationFlow:
    """
    Per-chat registration dialog.

    Args:
        store: Session store (one session per chat)
        api: Outbound Telegram client
        analyzer: Image analyzer (defaults to the shared one, built lazily)
        validate_qr: QR/URL resolver
        validate_url: Website classifier
        persist: Coroutine storing a confirmed draft
        lookup_user: Directory lookup by Telegram id
    """

    def __init__(
        self,
        store: SessionStore,
        api: TelegramAPI,
        analyzer: Optional[ImageAnalyzer] = None,
        validate_qr: QRValidator = validate_and_process_qr,
        validate_url: UrlValidatorFn = validate_real_estate_url,
        persist: Persister = persist_registration,
        lookup_user: UserLookup = directory.get_identity,
    ):
        self.store = store
        self.api = api
        self._analyzer = analyzer
        self.validate_qr = validate_qr
        self.validate_url = validate_url
        self.persist = persist
        self.lookup_user = lookup_user
        self.settings = get_settings()
        self._background: set[asyncio.Task] = set()
        self._analyzing: dict[int, RegistrationDraft] = {}
        self._reconciled: dict[int, ReconciliationResult] = {}

    @property
    def analyzer(self) -> ImageAnalyzer:
        if self._analyzer is None:
            self._analyzer = get_image_analyzer()
        return self._analyzer

    # Messaging helpers

    async def reply(self, session: ChatSession, text: str, reply_markup: Optional[dict] = None) -> int:
        message_id = await self.api.send_message(session.chat_id, text, reply_markup=reply_markup)
        session.track_bot_message(message_id)
        return message_id

    async def flash(self, chat_id: int, text: str) -> None:
        """Send a message that deletes itself after error_message_ttl_seconds."""
        try:
            message_id = await self.api.send_message(chat_id, text)
        except Exception as e:
            logger.warning(f"[chat {chat_id}] Could not send notice: {e}")
            return
        task = asyncio.create_task(
            self.api.delete_after(chat_id, message_id, self.settings.error_message_ttl_seconds)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def clear_tracked(self, session: ChatSession) -> None:
        ids = session.take_tracked_messages()
        if ids:
            await self.api.delete_messages(session.chat_id, ids)

    def _forget(self, session: ChatSession) -> None:
        session.reset()
        self._reconciled.pop(session.chat_id, None)
        self._analyzing.pop(session.chat_id, None)

    # Summaries

    def confirmation_text(self, session: ChatSession) -> str:
        draft = session.draft
        result = self._reconciled.get(session.chat_id)

        name_line = draft.name or "No detectado"
        if draft.name and draft.name_confidence:
            name_line += f" (Confianza: {round(draft.name_confidence * 100)}%)"

        qr_values = [qr for qr in (draft.qr or "").split(", ") if qr]
        if len(qr_values) > 1:
            qr_line = "⚠️ Múltiples QRs detectados:\n" + "\n".join(qr_values)
        else:
            qr_line = qr_values[0] if qr_values else "No detectado"

        header = "He analizado las fotos"
        if draft.provider == "anthropic":
            header += " usando el proveedor alternativo"
        lines = [
            f"{header} y encontrado:",
            "",
            f"🏢 Nombre: {name_line}",
            f"📱 QR: {qr_line}",
            f"🌐 Web: {draft.web_url or 'No detectada'}",
        ]
        if result and result.web_urls:
            lines.append(f"🔎 URLs: {format_url_summary(result.web_urls, result.url_validations)}")
        lines += [
            f"☎️ Teléfonos: {_joined(draft.contact_info.phone_numbers, 'No detectados')}",
            f"📧 Emails: {_joined(draft.contact_info.emails, 'No detectados')}",
            f"🕒 Horario: {draft.contact_info.business_hours or 'No detectado'}",
            "",
        ]
        if len(qr_values) > 1 or (result and len(result.web_urls) > 1):
            lines += ["⚠️ Se han detectado múltiples valores para algunos campos. Por favor, verifica la información.", ""]
        lines.append("¿Los datos son correctos?" if draft.name else "Falta el nombre de la inmobiliaria.")
        return "\n".join(lines)

    @staticmethod
    def final_summary_text(draft: RegistrationDraft) -> str:
        return (
            "Por favor, verifica que todos los datos sean correctos:\n\n"
            "📸 Foto: Recibida\n"
            f"🏢 Nombre: {draft.name or 'No detectado'}\n"
            f"🌐 Web: {draft.web_url or 'No detectada'}\n"
            f"📱 QR: {draft.qr or 'No detectado'}\n"
            f"📍 Ubicación: {draft.location.latitude}, {draft.location.longitude}\n"
            f"☎️ Teléfonos: {_joined(draft.contact_info.phone_numbers, 'No detectados')}\n"
            f"📧 Emails: {_joined(draft.contact_info.emails, 'No detectados')}\n"
            f"🕒 Horario: {draft.contact_info.business_hours or 'No detectado'}\n\n"
            "¿Deseas guardar esta inmobiliaria?"
        )

    async def show_confirmation(self, session: ChatSession) -> None:
        await self.reply(
            session,
            self.confirmation_text(session),
            reply_markup=keyboards.confirmation_keyboard(has_name=bool(session.draft.name)),
        )
        session.step = Step.WAITING_CONFIRMATION

    # Transitions

    @transition("photo")
    async def on_photo(self, session: ChatSession, message_id: Optional[int], file_id: str) -> None:
        busy = session.draft is not None and self._analyzing.get(session.chat_id) is session.draft
        if busy or session.step not in (Step.IDLE, Step.COLLECTING_PHOTOS):
            if message_id is not None:
                await self.api.delete_message(session.chat_id, message_id)
                if message_id in session.user_message_ids:
                    session.user_message_ids.remove(message_id)
            await self.flash(session.chat_id, ANALYSIS_BUSY if busy else STRAY_PHOTO)
            return

        if session.step == Step.IDLE or session.draft is None:
            session.start_draft()

        draft = session.draft
        draft.photos.append(PhotoEntry(file_id=file_id))
        draft.touch()

        await self.reply(
            session,
            f"Foto {len(draft.photos)} recibida. Puedes seguir enviando más fotos o finalizar.",
            reply_markup=keyboards.photos_keyboard(),
        )

    @transition("photos_done")
    async def on_photos_done(self, session: ChatSession) -> None:
        chat_id = session.chat_id
        draft = session.draft

        if session.step != Step.COLLECTING_PHOTOS or draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return
        if not draft.photos:
            await self.reply(session, NEED_PHOTO)
            return
        if self._analyzing.get(chat_id) is draft:
            await self.flash(chat_id, ANALYSIS_BUSY)
            return

        self._analyzing[chat_id] = draft
        try:
            await self._analyze_draft(session, draft)
        finally:
            if self._analyzing.get(chat_id) is draft:
                self._analyzing.pop(chat_id, None)

    async def _analyze_draft(self, session: ChatSession, draft: RegistrationDraft) -> None:
        chat_id = session.chat_id
        logger.info(f"[chat {chat_id}] Analysing {len(draft.photos)} photos")

        await self.clear_tracked(session)
        progress_id = await self.api.send_message(chat_id, "🔄 Analizando las fotos...")

        analyzed = await analyze_photos(self.analyzer, draft.photos, self.api.get_file_url)

        if session.draft is not draft:
            logger.info(f"[chat {chat_id}] Draft changed during analysis, discarding results")
            await self.api.delete_message(chat_id, progress_id)
            return

        failures = [item for item in analyzed if item.analysis.error]
        if len(failures) == len(analyzed):
            await self.api.delete_message(chat_id, progress_id)
            error_message = failures[0].analysis.error_message or "Error desconocido"
            await self.reply(
                session,
                f"⚠️ Error al analizar las imágenes: {error_message}\n\n"
                "Puedes:\n- Reintentar el análisis\n- Continuar e introducir los datos manualmente\n- Cancelar el proceso",
                reply_markup=keyboards.analysis_error_keyboard(),
            )
            return

        if any(item.analysis.provider == "anthropic" for item in analyzed):
            progress_text = "⚠️ El proveedor principal no está disponible, usando el proveedor alternativo..."
        else:
            progress_text = "✅ Análisis completado"
        await self.api.edit_message_text(chat_id, progress_id, progress_text)

        photos = [item.photo.model_copy(update={"analysis": item.analysis}) for item in analyzed]
        try:
            result = reconcile(photos)
        except NoMainPhotoError:
            await self.api.delete_message(chat_id, progress_id)
            await self.reply(session, NO_FACADE, reply_markup=keyboards.photos_keyboard())
            return

        if result.name and (result.web_urls or result.qr_payloads):
            await self.api.edit_message_text(chat_id, progress_id, "🔍 Validando URLs detectadas...")
        result = await resolve_urls(result, self.validate_qr, self.validate_url)
        await self.api.delete_message(chat_id, progress_id)

        if session.draft is not draft:
            logger.info(f"[chat {chat_id}] Draft changed during URL validation, discarding results")
            return

        draft.photos = photos
        draft.name = result.name
        draft.name_confidence = result.name_confidence or None
        draft.qr = ", ".join(result.valid_qr_payloads) or None
        draft.web_url = result.best_web_url
        draft.contact_info = ContactInfo(
            phone_numbers=result.phone_numbers,
            emails=result.emails,
            business_hours=result.business_hours,
        )
        draft.provider = result.provider
        draft.touch()
        self._reconciled[chat_id] = result

        await self.show_confirmation(session)

    @transition("manual_input")
    async def on_manual_input(self, session: ChatSession) -> None:
        draft = session.draft
        if session.step != Step.COLLECTING_PHOTOS or draft is None or not draft.photos:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        await self.clear_tracked(session)
        await self.reply(
            session,
            "Por favor, envía el nombre de la inmobiliaria.",
            reply_markup=keyboards.cancel_keyboard(),
        )
        for index, photo in enumerate(draft.photos):
            photo.is_main = index == 0
        draft.touch()
        session.step = Step.WAITING_NAME

    @transition("confirm_info")
    async def on_confirm_info(self, session: ChatSession) -> None:
        draft = session.draft
        if session.step != Step.WAITING_CONFIRMATION or draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        if draft.main_photo is None:
            await self.reply(session, NO_FACADE)
            return
        if not draft.name:
            await self.reply(
                session,
                "Falta el nombre. Por favor, envía el nombre de la inmobiliaria.",
                reply_markup=keyboards.cancel_keyboard(),
            )
            session.step = Step.WAITING_NAME
            return

        await self.clear_tracked(session)
        await self.reply(
            session,
            "Perfecto. Por último, envía la ubicación de la inmobiliaria usando el botón "
            "'📍 Enviar ubicación' o compártela manualmente. Usa /cancel para cancelar.",
            reply_markup=keyboards.location_request_keyboard(),
        )
        draft.awaiting_qr_input = False
        session.step = Step.WAITING_LOCATION

    @transition("reject_name")
    async def on_reject_name(self, session: ChatSession) -> None:
        if session.step != Step.WAITING_CONFIRMATION or session.draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        await self.reply(
            session,
            "Por favor, envía el nombre correcto de la inmobiliaria.",
            reply_markup=keyboards.cancel_keyboard(),
        )
        session.draft.awaiting_qr_input = False
        session.step = Step.WAITING_NAME

    @transition("has_qr")
    async def on_has_qr(self, session: ChatSession) -> None:
        if session.step != Step.WAITING_CONFIRMATION or session.draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        await self.reply(
            session,
            "Envía el contenido del QR o la URL de la inmobiliaria.",
            reply_markup=keyboards.cancel_keyboard(),
        )
        session.draft.awaiting_qr_input = True

    @transition("no_qr")
    async def on_no_qr(self, session: ChatSession) -> None:
        if session.step != Step.WAITING_CONFIRMATION or session.draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        session.draft.qr = None
        session.draft.awaiting_qr_input = False
        session.draft.touch()
        await self.clear_tracked(session)
        await self.show_confirmation(session)

    @transition("text")
    async def on_text(self, session: ChatSession, text: str) -> None:
        draft = session.draft
        text = (text or "").strip()

        if session.step == Step.WAITING_NAME and draft is not None:
            if not text:
                await self.reply(session, "Por favor, envía el nombre de la inmobiliaria.")
                return
            draft.name = text
            draft.name_confidence = None
            draft.touch()
            logger.info(f"[chat {session.chat_id}] Name set manually: {text!r}")
            await self.clear_tracked(session)
            await self.show_confirmation(session)
            return

        if session.step == Step.WAITING_CONFIRMATION and draft is not None and draft.awaiting_qr_input:
            result = await self.validate_qr(text)
            if not result.is_valid:
                await self.reply(
                    session,
                    f"El QR/URL no es válido (mínimo {self.settings.qr_min_length} caracteres). Inténtalo de nuevo.",
                )
                return
            draft.qr = result.text or text
            if result.url:
                draft.web_url = result.url
            draft.awaiting_qr_input = False
            draft.touch()
            await self.clear_tracked(session)
            await self.show_confirmation(session)
            return

        await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)

    @transition("location")
    async def on_location(self, session: ChatSession, latitude: float, longitude: float) -> None:
        draft = session.draft
        if session.step != Step.WAITING_LOCATION or draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        draft.location = Location(latitude=latitude, longitude=longitude)
        draft.touch()

        await self.clear_tracked(session)
        await self.reply(session, "Ubicación recibida", reply_markup=keyboards.REMOVE_KEYBOARD)
        await self.reply(
            session,
            self.final_summary_text(draft),
            reply_markup=keyboards.final_confirm_keyboard(),
        )
        session.step = Step.WAITING_FINAL_CONFIRM

    async def _find_operator(self, telegram_id: str) -> Optional[DirectoryRecord]:
        """Directory lookup retried on errors and on a missing row."""
        record: Optional[DirectoryRecord] = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(LOOKUP_ATTEMPTS),
                wait=LOOKUP_RETRY_WAIT,
                retry=retry_if_exception_type(Exception) | retry_if_result(lambda found: found is None),
            ):
                with attempt:
                    record = self.lookup_user(telegram_id)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(record)
        except RetryError as e:
            logger.warning(f"Operator lookup for {telegram_id} gave up: {e}")
            return None
        return record

    @transition("final_confirm")
    async def on_final_confirm(self, session: ChatSession, sender_id: str) -> None:
        chat_id = session.chat_id
        draft = session.draft
        if session.step != Step.WAITING_FINAL_CONFIRM or draft is None:
            await self.reply(session, FOLLOW_STEPS if session.step == Step.IDLE else FOLLOW_CURRENT_STEP)
            return

        missing = draft.missing_fields()
        if missing:
            logger.warning(f"[chat {chat_id}] Final confirm with missing fields: {missing}")
            await self.reply(session, FOLLOW_CURRENT_STEP)
            return

        user = await self._find_operator(sender_id)
        if user is None:
            logger.error(f"[chat {chat_id}] Operator {sender_id} not found after {LOOKUP_ATTEMPTS} attempts")
            await self.flash(chat_id, SAVE_ERROR)
            return

        progress_id = await self.api.send_message(chat_id, "💾 Guardando la inmobiliaria...")
        try:
            outcome = await self.persist(draft, user, self.api.download_file)
        except PersistenceError as e:
            logger.error(f"[chat {chat_id}] Registration not stored: {e}", exc_info=True)
            await self.api.delete_message(chat_id, progress_id)
            await self.flash(chat_id, SAVE_ERROR)
            return

        await self.api.delete_message(chat_id, progress_id)
        await self.clear_tracked(session)

        text = f'✅ ¡Inmobiliaria "{outcome.real_estate.name}" registrada con éxito!'
        if outcome.listings:
            text += f"\n📋 Anuncios registrados: {len(outcome.listings)}"
        if outcome.warnings:
            text += "\n\n⚠️ " + "\n⚠️ ".join(outcome.warnings)
        await self.api.send_message(chat_id, text, reply_markup=keyboards.REMOVE_KEYBOARD)

        logger.info(f"[chat {chat_id}] Registration stored as real estate {outcome.real_estate.id}")
        self._forget(session)

    @transition("cancel")
    async def on_cancel(self, session: ChatSession) -> None:
        await self.clear_tracked(session)
        self._forget(session)
        await self.flash(session.chat_id, CANCELLED)
