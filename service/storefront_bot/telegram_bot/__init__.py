"""
Telegram Bot module for the storefront registration bot.

ARCHITECTURE: PTB handlers are thin adapters; the dialog lives in
RegistrationFlow and talks to Telegram only through TelegramAPI.
- Receives updates (webhook via main.py, or polling)
- Tracks message ids, gates on the operator directory
- Routes photos/text/locations/buttons to the registration flow
- Routes admin commands/buttons to AdminActions
"""

from .bot import handle_telegram_update
from .auth import authorize
from .context import SessionStore, get_session_store
from .registration import RegistrationFlow
from .telegram_api import TelegramAPI, get_telegram_api

__all__ = [
    "handle_telegram_update",
    "authorize",
    "SessionStore",
    "get_session_store",
    "RegistrationFlow",
    "TelegramAPI",
    "get_telegram_api",
]
