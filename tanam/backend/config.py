"""Application configuration."""
import logging
from functools import lru_cache

from pydantic import ConfigDict
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PLACEHOLDER_SUPABASE_URL = "https://placeholder.supabase.co"
PLACEHOLDER_SUPABASE_ANON_KEY = "placeholder-key"

WEBHOOK_BASE = "https://n8n.tanam.io/webhook"


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = "changeme"

    # Required pair: identity/storage endpoint and its public key.
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_jwt_secret: str = "dev-supabase-jwt-secret-change-me"
    jwt_algorithm: str = "HS256"

    topup_url: str = f"{WEBHOOK_BASE}/biling/topup-balance"
    bot_create_url: str = f"{WEBHOOK_BASE}/chatbot/create"
    prompt_update_url: str = f"{WEBHOOK_BASE}/tanam.io/bot/update-prompt"
    bot_renew_url: str = f"{WEBHOOK_BASE}/bot/renew"
    qr_url: str = f"{WEBHOOK_BASE}/tanam.io/bot/QR"

    action_timeout_seconds: float = 30.0
    qr_timeout_seconds: float = 10.0

    renewal_poll_attempts: int = 5
    renewal_poll_interval_seconds: float = 1.0
    renewal_fallback_days: int = 30
    renewal_fallback_quota: int = 10

    dashboard_refresh_seconds: float = 5.0
    page_size: int = 5
    compensation_bucket_seconds: int = 300


def apply_required_placeholders(s: Settings) -> Settings:
    """Substitute placeholders for missing required variables and log which are missing."""
    missing = []
    if not s.supabase_url:
        missing.append("SUPABASE_URL")
        s.supabase_url = PLACEHOLDER_SUPABASE_URL
    if not s.supabase_anon_key:
        missing.append("SUPABASE_ANON_KEY")
        s.supabase_anon_key = PLACEHOLDER_SUPABASE_ANON_KEY
    if missing:
        logger.error(
            "Missing required environment variables: %s; identity service is not functional",
            ", ".join(missing),
        )
    return s


def is_identity_configured(s: Settings) -> bool:
    return (
        s.supabase_url != PLACEHOLDER_SUPABASE_URL
        and s.supabase_anon_key != PLACEHOLDER_SUPABASE_ANON_KEY
    )


@lru_cache
def get_settings() -> Settings:
    return apply_required_placeholders(Settings())
