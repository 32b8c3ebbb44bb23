"""Configuration models for Stratum stores and the archival engine."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field, model_validator

_DAY_SECONDS = 86_400


class ArchiveConfig(BaseModel):
    """Thresholds and retention settings for the archival pipeline."""

    archive_threshold_messages: int = Field(
        default=40,
        ge=1,
        description="Message count at which a conversation is moved to the cold tier.",
    )

    summarization_trigger: int = Field(
        default=35,
        ge=1,
        description=(
            "Message count at which an early summary is generated for a still-active "
            "conversation. Must not exceed archive_threshold_messages."
        ),
    )

    max_tokens_per_conversation: int = Field(
        default=50_000,
        ge=1,
        description="Running token total at which a conversation is archived.",
    )

    max_active_messages: int = Field(
        default=50,
        ge=1,
        description="Advisory ceiling recorded in conversation metadata.",
    )

    keep_recent_messages: int = Field(
        default=10,
        ge=0,
        le=1_000,
        description="Trailing window of messages kept in the hot record after archival.",
    )

    default_ttl_seconds: int = Field(default=90 * _DAY_SECONDS, ge=1)
    """Expiry hint for active conversations (90 days)."""

    archived_ttl_seconds: int = Field(default=365 * _DAY_SECONDS, ge=1)
    """Expiry hint for archived conversations (365 days)."""

    archive_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-attempt timeout for the archive pipeline. None = no timeout.",
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> ArchiveConfig:
        if self.summarization_trigger > self.archive_threshold_messages:
            raise ValueError(
                "summarization_trigger must be less than or equal to archive_threshold_messages"
            )
        if self.archived_ttl_seconds < self.default_ttl_seconds:
            raise ValueError("archived_ttl_seconds must not be shorter than default_ttl_seconds")
        return self


class StoreConfig(BaseModel):
    """Configuration for the SQLite hot store."""

    db_path: str = Field(
        default="~/.stratum/conversations.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""

    append_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Re-read attempts when an append loses a version race.",
    )

    token_encoding: str | None = Field(
        default=None,
        description=(
            "tiktoken encoding used to count message tokens (e.g. \"o200k_base\"). "
            "None = character heuristic. Requires the tiktoken extra."
        ),
    )


class ColdStoreConfig(BaseModel):
    """Configuration for the cold archive object store."""

    root_dir: str = Field(
        default="~/.stratum/archives",
        description="Root directory for LocalObjectStore. ~ is expanded at runtime.",
    )

    archive_version: str = "1.0"
    """Version tag written into every snapshot."""


class SummarizerConfig(BaseModel):
    """Configuration for the LLM-backed summarizer."""

    model: str = Field(
        default="gpt-4.1",
        description="litellm model string used for conversation summaries.",
    )

    max_tokens: int = Field(default=200, ge=16, le=4_096)

    temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on a single summarization call.",
    )

    max_message_chars: int = Field(
        default=2_000,
        ge=100,
        description="Per-message character cap applied when building the prompt.",
    )


class SweeperConfig(BaseModel):
    """Configuration for the background archiving sweeper."""

    batch_size: int = Field(
        default=100,
        ge=1,
        le=1_000,
        description="Maximum conversations listed per user per sweep.",
    )

    concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum archive pipelines running at once.",
    )


class StratumConfig(BaseModel):
    """
    Top-level configuration for a Stratum service.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = StratumConfig(
            archive=ArchiveConfig(archive_threshold_messages=60, summarization_trigger=50),
            store=StoreConfig(db_path="/var/lib/stratum/conversations.db"),
        )
    """

    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    cold_store: ColdStoreConfig = Field(default_factory=ColdStoreConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)

    @classmethod
    def default(cls) -> StratumConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> StratumConfig:
        """
        Build a config from ``STRATUM_*`` environment variables.

        Recognised variables: ``STRATUM_DB_PATH``, ``STRATUM_ARCHIVE_DIR``,
        ``STRATUM_SUMMARY_MODEL``, ``STRATUM_ARCHIVE_THRESHOLD``,
        ``STRATUM_SUMMARIZATION_TRIGGER``, ``STRATUM_MAX_TOKENS``,
        ``STRATUM_KEEP_RECENT``, ``STRATUM_SWEEP_CONCURRENCY``, ``STRATUM_TOKEN_ENCODING``.
        Unset variables keep their defaults; values are validated by Pydantic.
        """
        env = os.environ if environ is None else environ
        sections: dict[str, dict[str, Any]] = {
            "archive": {},
            "store": {},
            "cold_store": {},
            "summarizer": {},
            "sweeper": {},
        }
        mapping = {
            "STRATUM_DB_PATH": ("store", "db_path"),
            "STRATUM_ARCHIVE_DIR": ("cold_store", "root_dir"),
            "STRATUM_SUMMARY_MODEL": ("summarizer", "model"),
            "STRATUM_ARCHIVE_THRESHOLD": ("archive", "archive_threshold_messages"),
            "STRATUM_SUMMARIZATION_TRIGGER": ("archive", "summarization_trigger"),
            "STRATUM_MAX_TOKENS": ("archive", "max_tokens_per_conversation"),
            "STRATUM_KEEP_RECENT": ("archive", "keep_recent_messages"),
            "STRATUM_SWEEP_CONCURRENCY": ("sweeper", "concurrency"),
            "STRATUM_TOKEN_ENCODING": ("store", "token_encoding"),
        }
        for var, (section, field) in mapping.items():
            value = env.get(var)
            if value:
                sections[section][field] = value
        return cls.model_validate(sections)
