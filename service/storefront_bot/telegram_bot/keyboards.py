"""
Reply markups as Bot API dicts.

Buttons are 2D arrays of {"text", "callback_data"} dicts.
"""

CANCEL_BUTTON = {"text": "❌ Cancelar", "callback_data": "cancel"}

REMOVE_KEYBOARD = {"remove_keyboard": True}

EMPTY_INLINE_KEYBOARD = {"inline_keyboard": []}


def inline(buttons: list[list[dict]]) -> dict:
    return {"inline_keyboard": buttons}


def photos_keyboard() -> dict:
    return inline([[
        {"text": "✅ Finalizar", "callback_data": "photos_done"},
        CANCEL_BUTTON,
    ]])


def analysis_error_keyboard() -> dict:
    return inline([
        [
            {"text": "🔄 Reintentar", "callback_data": "photos_done"},
            {"text": "👤 Continuar sin análisis", "callback_data": "manual_input"},
        ],
        [CANCEL_BUTTON],
    ])


def confirmation_keyboard(has_name: bool = True) -> dict:
    """Summary actions: confirm, fix the name, add or clear a QR/URL, cancel."""
    rows = []
    if has_name:
        rows.append([
            {"text": "✅ Sí, continuar", "callback_data": "confirm_info"},
            {"text": "✏️ Cambiar nombre", "callback_data": "reject_name"},
        ])
    else:
        rows.append([{"text": "✏️ Escribir nombre", "callback_data": "reject_name"}])
    rows.append([
        {"text": "📱 Añadir QR/URL", "callback_data": "has_qr"},
        {"text": "🚫 Sin QR", "callback_data": "no_qr"},
    ])
    rows.append([CANCEL_BUTTON])
    return inline(rows)


def cancel_keyboard() -> dict:
    return inline([[CANCEL_BUTTON]])


def location_request_keyboard() -> dict:
    return {
        "keyboard": [
            [{"text": "📍 Enviar ubicación", "request_location": True}],
        ],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def final_confirm_keyboard() -> dict:
    return inline([[
        {"text": "✅ Confirmar", "callback_data": "final_confirm"},
        CANCEL_BUTTON,
    ]])


def admin_review_keyboard(telegram_id: str) -> dict:
    return inline([
        [
            {"text": "✅ Aprobar", "callback_data": f"approve_{telegram_id}"},
            {"text": "❌ Rechazar", "callback_data": f"reject_{telegram_id}"},
        ],
        [{"text": "⏳ Más tarde", "callback_data": f"later_{telegram_id}"}],
    ])
