"""Configuration models for Threadline components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.threadline/threads.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode so the reader connection only sees committed rows."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class SessionConfig(BaseModel):
    """Session lifecycle and message log limits."""

    inactivity_timeout_seconds: int = Field(
        default=24 * 60 * 60,
        ge=1,
        description="Idle time after which an ACTIVE session becomes EXPIRED.",
    )

    sweep_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How often the background sweeper expires idle sessions.",
    )

    max_user_message_chars: int = Field(default=4000, ge=1)
    """Upper bound on the content length of ``user`` messages."""

    default_page_size: int = Field(default=20, ge=1)

    max_page_size: int = Field(default=100, ge=1)

    clock_epsilon_ms: int = Field(
        default=1,
        ge=1,
        description="Step added to the previous created_at when the clock moves backwards.",
    )

    @model_validator(mode="after")
    def validate_page_sizes(self) -> SessionConfig:
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must not exceed max_page_size")
        return self

    @property
    def inactivity_timeout_ms(self) -> int:
        return self.inactivity_timeout_seconds * 1000


class RateLimitConfig(BaseModel):
    """Per-credential request budgets. Each limit is enforced independently."""

    requests_per_minute: int = Field(default=60, ge=1)
    requests_per_hour: int = Field(default=1000, ge=1)
    max_active_sessions: int = Field(
        default=100,
        ge=1,
        description="Ceiling on concurrently ACTIVE sessions owned by one credential.",
    )


class ResponderConfig(BaseModel):
    """Configuration for the background agent responder dispatcher."""

    concurrency: int = Field(
        default=8,
        ge=1,
        le=128,
        description="Maximum responder calls in flight at once.",
    )

    timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound on a single responder call, replies included.",
    )

    assign_topics: bool = True
    """Derive a topic label from the first user message of a session."""

    topic_max_words: int = Field(default=6, ge=1, le=32)


class ThreadlineConfig(BaseModel):
    """
    Top-level configuration for a Threadline service.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = ThreadlineConfig(
            store=StoreConfig(db_path="/var/lib/threadline/threads.db"),
            rate_limit=RateLimitConfig(requests_per_minute=120),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)

    @classmethod
    def default(cls) -> ThreadlineConfig:
        """Return a config instance with all defaults."""
        return cls()
