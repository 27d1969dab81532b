# src/poker_server/config.py
from pathlib import Path
from typing import List, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import logger


# --- Pydantic models for settings.yml ---
class PokerSettings(BaseModel):
    """Defaults applied to every newly created room."""
    deck_type: Literal["fibonacci"] = "fibonacci"
    include_question_mark: bool = True
    include_coffee: bool = True
    countdown_seconds: int = Field(60, ge=1, le=3600)
    room_code_length: int = Field(8, ge=4, le=16)


class PersistenceSettings(BaseModel):
    enabled: bool = True
    database_file: str = "data/rooms.db"


class RetentionSettings(BaseModel):
    """
    Rooms idle for longer than max_room_age_hours are removed by the
    periodic sweep.
    """
    max_room_age_hours: float = 24.0
    sweep_interval_seconds: float = 3600.0


class CorsSettings(BaseModel):
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


# --- Main Settings Class ---
class Settings(BaseSettings):
    # From .env
    server_host: str = Field("0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(3001, alias="SERVER_PORT")

    # From settings.yml
    poker: PokerSettings = Field(default_factory=PokerSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML values arrive as init kwargs; environment overrides them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_settings(path: str = "settings.yml") -> Settings:
    """Load YAML and merge with env variables (env wins)."""
    settings_path = Path(path)
    if not settings_path.exists():
        logger.warning(f"Settings file not found at '{path}'. Using defaults.")
        return Settings()

    with settings_path.open("r", encoding="utf-8") as f:
        yaml_data = yaml.safe_load(f) or {}
    return Settings(**yaml_data)
