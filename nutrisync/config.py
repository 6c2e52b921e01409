"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Sync tuning (refresh windows, breaker limits, batch sizes, classifier
    keywords) lives in ``nutrisync/wearables/sync_config.yaml`` instead.
    """

    # --- App ---
    app_name: str = "NutriSync Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_url: str
    supabase_service_role_key: str  # server-side only - never expose to client
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg

    # --- Google Fit (direct refresh fallback) ---
    google_client_id: str = ""
    google_client_secret: str = ""

    # --- Token broker edge function ---
    token_broker_function: str = "refresh-google-fit-token-v2"

    # --- Persistence ---
    persistence_backend: str = "postgres"  # postgres | memory

    # --- Background work ---
    background_sync_enabled: bool = True

    # --- Uploads ---
    max_upload_size_bytes: int = 10 * 1024 * 1024  # 10 MB device files

    # --- Security ---
    internal_api_key: str  # shared secret for X-Internal-Key
    webhook_secret: str  # HMAC-SHA256 key for database change webhooks

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def token_broker_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/functions/v1/{self.token_broker_function}"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
