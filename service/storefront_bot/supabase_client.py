from functools import lru_cache

from supabase import create_client, Client
from storefront_bot.config import get_settings


@lru_cache()
def get_supabase_admin() -> Client:
    """Service role client for the bot; writes bypass RLS."""
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key
    )
