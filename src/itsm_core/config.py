"""Application settings loaded from environment variables."""
import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration for the change management service."""

    app_name: str = "ITSM Change Core"
    database_url: str = "sqlite:///./itsm_change.db"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Notification delivery. Without a webhook URL notifications are only logged.
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0
    frontend_url: str = "http://localhost:3000"

    # Local blob store for signatures and UAT documents
    upload_dir: str = "./uploads"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Build settings from the environment (cached for the process lifetime)."""
    values: dict = {}
    if os.getenv("DATABASE_URL"):
        values["database_url"] = os.environ["DATABASE_URL"]
    if os.getenv("CORS_ORIGINS"):
        values["cors_origins"] = _split_csv(os.environ["CORS_ORIGINS"])
    if os.getenv("NOTIFICATION_WEBHOOK_URL"):
        values["notification_webhook_url"] = os.environ["NOTIFICATION_WEBHOOK_URL"]
    if os.getenv("NOTIFICATION_TIMEOUT_SECONDS"):
        values["notification_timeout_seconds"] = float(os.environ["NOTIFICATION_TIMEOUT_SECONDS"])
    if os.getenv("FRONTEND_URL"):
        values["frontend_url"] = os.environ["FRONTEND_URL"]
    if os.getenv("UPLOAD_DIR"):
        values["upload_dir"] = os.environ["UPLOAD_DIR"]
    if os.getenv("LOG_LEVEL"):
        values["log_level"] = os.environ["LOG_LEVEL"].upper()
    return Settings(**values)
