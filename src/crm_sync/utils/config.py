from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # API settings
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Public URL of this service, used to build webhook addresses
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # CRM front-end, OAuth callbacks redirect back to its settings page
    APP_BASE_URL: str = "http://localhost:3000"
    SETTINGS_REDIRECT_PATH: str = "/settings?tab=integrations"

    # CORS settings
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:3000"]
    )

    # Google settings (Calendar, Gmail and Business Profile share one OAuth client)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/api/auth/google/callback"
    GMAIL_REDIRECT_URI: str = "http://localhost:8000/api/integrations/gmail/callback"
    GMB_REDIRECT_URI: str = "http://localhost:8000/api/integrations/gmb/callback"
    GOOGLE_PUBSUB_TOPIC: str = ""

    # Microsoft Graph settings
    MS_CLIENT_ID: str = ""
    MS_CLIENT_SECRET: str = ""
    MS_REDIRECT_URI: str = "http://localhost:8000/api/integrations/outlook/callback"
    MS_TENANT_ID: str = "common"

    # Storage settings
    USE_REDIS: bool = True
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    STORAGE_PATH: str = "./storage"
    LOCK_TIMEOUT_SECONDS: int = 30

    # JWT settings
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    SESSION_COOKIE_NAME: str = "session"

    # Sync settings
    CALENDAR_TIMEZONE: str = "Europe/London"
    DEFAULT_JOB_DURATION_HOURS: float = 2
    TWO_WAY_SYNC_WINDOW_DAYS: int = 30
    CONFLICT_LOOKBACK_HOURS: int = 12
    DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600
    GMAIL_WEBHOOK_MAX_RESULTS: int = 10
    OUTLOOK_SYNC_LOOKBACK_DAYS: int = 30

    # Watch channel settings
    WATCH_CHANNEL_TTL_DAYS: int = 7
    WATCH_RENEWAL_MARGIN_HOURS: int = 24
    WATCH_RENEWAL_INTERVAL_MINUTES: int = 0

    @property
    def calendar_webhook_url(self) -> str:
        return f"{self.PUBLIC_BASE_URL}{self.API_PREFIX}/calendar/webhook"

    @property
    def outlook_webhook_url(self) -> str:
        return f"{self.PUBLIC_BASE_URL}{self.API_PREFIX}/webhooks/outlook"

    @property
    def settings_url(self) -> str:
        return f"{self.APP_BASE_URL}{self.SETTINGS_REDIRECT_PATH}"

    class Config:
        env_file = ".env"
        case_sensitive = True

# Create settings instance
settings = Settings()
