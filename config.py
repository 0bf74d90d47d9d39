"""
config.py
Application settings from environment variables (prefix SPOTNET_) or a .env file.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SPOTNET_",
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    db_file: Path = BASE_DIR / "spotnet.db"

    # WhatsApp message relay
    whatsapp_api_url: str = "https://wpbot.gocami.com/send-message"
    whatsapp_api_key: str = "secure"
    whatsapp_timeout: float = 10.0

    # Email (logged only when smtp_host is empty)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    mail_sender: str = "noreply@subscription-system.com"

    # Housekeeping
    reminder_days_ahead: int = 5

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
