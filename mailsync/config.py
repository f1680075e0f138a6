from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./mailsync.db"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ENV: str = "local"  # Environment setting
    LOG_LEVEL: str = "INFO"

    # Aurinko OAuth settings
    AURINKO_API_URL: str = "https://api.aurinko.io/v1"
    AURINKO_CLIENT_ID: str = ""
    AURINKO_CLIENT_SECRET: str = ""
    AURINKO_SERVICE_TYPE: str = "Google"
    AURINKO_RETURN_URL: str = "http://localhost:8000/auth/aurinko/callback"
    AURINKO_SIGNING_SECRET: str = ""
    WEBHOOK_BASE_URL: str = ""

    # Sync engine
    SYNC_DAYS_WITHIN: int = 3
    FULL_SYNC_POLL_INTERVAL_SECONDS: float = 1.0
    FULL_SYNC_POLL_TIMEOUT_SECONDS: float = 120.0
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    TOKEN_EXPIRY_MARGIN_SECONDS: int = 300
    DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 5

    class Config:
        env_file = ".env"

settings = Settings()
