from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Telegram
    telegram_bot_token: str
    telegram_webhook_secret: str = ""  # Optional: for webhook verification
    use_polling: bool = False

    # Supabase
    supabase_url: str
    supabase_service_role_key: str
    photo_bucket: str = "real-estate-photos"
    signed_url_ttl_seconds: int = 60 * 60 * 24 * 365 * 10

    # OpenAI (primary vision provider + URL classifier)
    openai_api_key: str
    openai_vision_model: str = "gpt-4o"
    openai_classifier_model: str = "gpt-4o-mini"

    # Anthropic (fallback vision provider)
    anthropic_api_key: str = ""  # Optional: disables the fallback when empty
    anthropic_vision_model: str = "claude-sonnet-4-20250514"

    # Environment
    environment: str = "development"

    # Outbound HTTP
    http_timeout_seconds: float = 10.0
    http_max_attempts: int = 3

    # Registration tuning
    qr_min_length: int = 8
    phone_min_digits: int = 9
    default_country_code: str = "+33"
    analysis_concurrency: int = 3
    error_message_ttl_seconds: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
