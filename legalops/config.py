"""
Configuration management for the Legal Ops compliance engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Legal Ops Compliance Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./legalops.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Links embedded in survey invitations and reminder emails
    FRONTEND_URL: str = "http://localhost:5173"

    # Notifications: "log" writes to the application log, "smtp" sends mail
    NOTIFIER_BACKEND: str = "log"
    SMTP_SERVER: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    FROM_EMAIL: str = "compliance@legalops.local"

    # Tokens
    TOKEN_BYTES: int = 32  # 256 bits
    TOKEN_MAX_ATTEMPTS: int = 5

    # Reminder timeline, days before the obligation due date
    REMINDER_OFFSETS_DAYS: dict[str, int] = {
        "two_weeks": 14,
        "one_week": 7,
        "due_date": 0,
    }
    UPCOMING_WINDOW_DAYS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
