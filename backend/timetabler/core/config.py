from functools import lru_cache
import json
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from timetabler.schemas.domain import Weekday, normalize_day


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def _split_list(value: str) -> list[str]:
    stripped = value.strip()
    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except json.JSONDecodeError:
            pass
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Resolve to backend/.env so the app can be started from any cwd.
    model_config = SettingsConfigDict(
        env_file=str(BACKEND_ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="TIMETABLER_",
        extra="ignore",
    )

    project_name: str = "Timetabler API"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    period_minutes: int = Field(default=60, ge=5, le=240)
    lab_session_periods: int = Field(default=2, ge=1, le=8)
    working_days: list[Weekday] = [
        Weekday.monday,
        Weekday.tuesday,
        Weekday.wednesday,
        Weekday.thursday,
        Weekday.friday,
    ]

    max_backtrack_steps: int = Field(default=20_000, ge=0)
    time_budget_ms: int = Field(default=10_000, ge=1)

    teaching_day_start: str = "08:00"
    teaching_day_end: str = "18:00"
    low_utilization_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    low_balance_threshold: float = Field(default=80.0, ge=0.0, le=100.0)

    cors_origins: list[str] = [
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:19006",
        "http://127.0.0.1:19006",
    ]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return _split_list(value)
        return value

    @field_validator("working_days", mode="before")
    @classmethod
    def split_working_days(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            value = _split_list(value)
        return [normalize_day(item) for item in value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
