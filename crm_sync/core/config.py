"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./crm_sync.db"

    # Redis (unset or memory:// disables Redis-backed stores)
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 20

    # Token encryption (AES-256-GCM, 32 bytes as hex or urlsafe base64)
    TOKEN_ENCRYPTION_KEY: str = ""

    # Google OAuth (Calendar + Gmail)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_CALENDAR_REDIRECT_URI: str = "http://localhost:8000/integrations/google-calendar/callback"
    GOOGLE_GMAIL_REDIRECT_URI: str = "http://localhost:8000/integrations/gmail/callback"

    # Microsoft OAuth (Outlook Calendar + Mail)
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"
    MICROSOFT_CALENDAR_REDIRECT_URI: str = "http://localhost:8000/integrations/outlook-calendar/callback"
    MICROSOFT_MAIL_REDIRECT_URI: str = "http://localhost:8000/integrations/outlook-mail/callback"

    # OAuth state + token lifecycle
    OAUTH_STATE_TTL_SECONDS: int = 600
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # Sync behaviour
    DEFAULT_LOOKBACK_DAYS: int = 30
    MAIL_BODY_MAX_CHARS: int = 10000
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_ATTEMPTS: int = 3

    # Scheduler / worker
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_STAGGER_SECONDS: int = 60
    SYNC_JOB_MAX_ATTEMPTS: int = 3
    SYNC_JOB_BACKOFF_BASE_SECONDS: float = 30.0
    SYNC_JOB_BACKOFF_MAX_SECONDS: float = 900.0
    SYNC_JOB_TIMEOUT_SECONDS: int = 600
    STALE_JOB_MAX_AGE_MINUTES: int = 60
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10


settings = Settings()
