"""
Typed errors raised by the service layer.

Transport handlers catch these at the edge and turn them into short
user-facing replies; nothing here knows about Telegram.
"""


class StorefrontBotError(Exception):
    """Base class for all bot errors."""


class TransientProviderError(StorefrontBotError):
    """Timeout, connection failure or 5xx from an external provider."""


class ProviderResponseError(StorefrontBotError):
    """Provider answered but the payload was unusable (no JSON, bad JSON)."""


class QuotaExceededError(StorefrontBotError):
    """Provider refused the call because of rate limits or quota (429)."""


class UrlFetchError(StorefrontBotError):
    """A page or short link could not be fetched after all retries."""


class NoMainPhotoError(StorefrontBotError):
    """No analysed photo looks like a storefront or facade."""


class PersistenceError(StorefrontBotError):
    """Supabase write or upload failed before the registration was stored."""
