"""Runtime settings — where state lives and how stores behave.

Read once at bootstrap from CLEANMAP_* environment variables (or a .env
file). The award table itself lives in config/award_policy.json and is
loaded by PolicyResolver.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cleanmap.persistence.document_store import DEFAULT_LOCK_TIMEOUT, CorruptionPolicy

ENV_PREFIX = "CLEANMAP_"
MARKERS_FILENAME = "markers.json"
POINTS_FILENAME = "points.json"


class Settings(BaseSettings):
    """Store locations and policies.

    ledger_on_corrupt defaults to FAIL. RESET keeps the service up on an
    unreadable points file at the cost of the totals in it.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    data_dir: Path = Path("data")
    config_dir: Path = Path("config")
    lock_timeout: float = Field(default=DEFAULT_LOCK_TIMEOUT, gt=0, allow_inf_nan=False)
    ledger_on_corrupt: CorruptionPolicy = CorruptionPolicy.FAIL

    @field_validator("ledger_on_corrupt", mode="before")
    @classmethod
    def _lowercase_policy(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def markers_path(self) -> Path:
        return self.data_dir / MARKERS_FILENAME

    @property
    def points_path(self) -> Path:
        return self.data_dir / POINTS_FILENAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """Build settings from the process environment or a given mapping.

        Raises pydantic.ValidationError for malformed values.
        """
        if environ is None:
            return cls()
        values = {
            key[len(ENV_PREFIX):].lower(): value
            for key, value in environ.items()
            if key.upper().startswith(ENV_PREFIX)
        }
        return cls(_env_file=None, **values)
