"""Server process settings, read from ``THREADLINE_*`` environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from threadline.models.config import (
    RateLimitConfig,
    SessionConfig,
    StoreConfig,
    ThreadlineConfig,
)


class ServerSettings(BaseSettings):
    """
    Settings for ``python -m threadline``.

    ``api_keys`` is a comma separated list of ``key=credential_id`` pairs,
    e.g. ``THREADLINE_API_KEYS="k-live-1=acme,k-live-2=globex"``.
    """

    model_config = SettingsConfigDict(
        env_prefix="THREADLINE_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    db_path: str = "~/.threadline/threads.db"
    api_keys: str = ""

    log_level: str = "INFO"
    log_json: bool = False

    responder: Literal["echo", "none"] = "echo"

    requests_per_minute: int = Field(default=60, ge=1)
    requests_per_hour: int = Field(default=1000, ge=1)
    max_active_sessions: int = Field(default=100, ge=1)
    inactivity_timeout_seconds: int = Field(default=24 * 60 * 60, ge=1)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)

    def credentials(self) -> dict[str, str]:
        """
        Parse ``api_keys`` into a ``{key: credential_id}`` mapping.

        Raises:
            ValueError: If an entry is not of the form ``key=credential``.
        """
        mapping: dict[str, str] = {}
        for entry in self.api_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            key, sep, credential_id = entry.partition("=")
            key, credential_id = key.strip(), credential_id.strip()
            if not sep or not key or not credential_id:
                raise ValueError(f"Malformed api key entry {entry!r}; expected key=credential")
            mapping[key] = credential_id
        return mapping

    def to_config(self) -> ThreadlineConfig:
        return ThreadlineConfig(
            store=StoreConfig(db_path=self.db_path),
            session=SessionConfig(
                inactivity_timeout_seconds=self.inactivity_timeout_seconds,
                sweep_interval_seconds=self.sweep_interval_seconds,
            ),
            rate_limit=RateLimitConfig(
                requests_per_minute=self.requests_per_minute,
                requests_per_hour=self.requests_per_hour,
                max_active_sessions=self.max_active_sessions,
            ),
        )
