from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


STORAGE_BACKENDS = ("sqlite", "json", "memory")
SESSION_SERVICES = ("local", "remote")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "WorkTime"
    environment: str = "development"
    host: str = os.getenv("WT_HOST", "127.0.0.1")
    port: int = int(os.getenv("WT_PORT", "8090"))

    storage_backend: str = os.getenv("WT_STORAGE", "sqlite")
    sqlite_path: Path = Path(os.getenv("WT_SQLITE_PATH", "./data/worktime.db"))
    json_dir: Path = Path(os.getenv("WT_JSON_DIR", "./data/state"))

    timezone: str = os.getenv("TZ", "Europe/Berlin")
    default_user_id: Optional[str] = os.getenv("WT_USER_ID")

    session_service: str = os.getenv("WT_SESSION_SERVICE", "local")
    session_api_url: Optional[str] = os.getenv("WT_SESSION_API_URL")
    session_api_token: Optional[str] = os.getenv("WT_SESSION_API_TOKEN")
    session_api_timeout: int = int(os.getenv("WT_SESSION_API_TIMEOUT", "15"))

    tick_interval_seconds: float = float(os.getenv("WT_TICK_INTERVAL", "1.0"))
    detector_interval_seconds: float = float(os.getenv("WT_DETECTOR_INTERVAL", "0.5"))
    background_loop: bool = os.getenv("WT_BACKGROUND_LOOP", "true").lower() == "true"

    @field_validator("storage_backend")
    @classmethod
    def _check_storage_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in STORAGE_BACKENDS:
            raise ValueError(f"Unknown storage backend: {value}")
        return normalized

    @field_validator("session_service")
    @classmethod
    def _check_session_service(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SESSION_SERVICES:
            raise ValueError(f"Unknown session service: {value}")
        return normalized


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
settings.json_dir.mkdir(parents=True, exist_ok=True)
