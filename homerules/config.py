"""Engine configuration, read from the environment (and a .env file when present)."""

from typing import Optional

import pytz
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Each field is read from the upper-cased environment variable of the same name."""

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    automations_file: str = Field(default="automations.yaml", description="Automations (YAML or JSON)")
    scenes_file: Optional[str] = Field(default="scenes.yaml", description="Scenes (YAML or JSON)")
    states_file: Optional[str] = Field(default=None, description="Initial entity states")

    # Location, for sunrise/sunset and local time
    latitude: float = 0.0
    longitude: float = 0.0
    elevation: float = 0.0
    time_zone: str = "UTC"

    queue_max: int = Field(default=10, ge=1)
    trace_history: int = Field(default=20, ge=1)
    notify_webhook_url: Optional[str] = None

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("time_zone")
    @classmethod
    def check_time_zone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown time zone '{value}'") from e
        return value

    @property
    def tzinfo(self) -> pytz.BaseTzInfo:
        return pytz.timezone(self.time_zone)
