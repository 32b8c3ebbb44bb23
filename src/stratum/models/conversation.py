"""Conversation, message and archival result models."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field
from ulid import ULID


def now_ms() -> int:
    """Current wall-clock time as a Unix millisecond timestamp."""
    return int(time.time() * 1000)


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"conv"``, ``"msg"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class ConversationStatus(StrEnum):
    """Lifecycle states of a hot-tier conversation record."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


MessageRole = Literal["user", "assistant", "system"]


# ── Message ────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single chat turn.

    Messages are immutable once appended; the transcript of an active
    conversation only ever grows at the end.
    """

    id: str
    """ULID-based sortable ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    role: MessageRole
    content: str
    timestamp: int = Field(default_factory=now_ms)
    """Unix millisecond timestamp."""
    tokens: int | None = Field(
        default=None,
        ge=0,
        description="Explicit token cost. None = estimated on append.",
    )

    model_config = {"frozen": True}


# ── Conversation ───────────────────────────────────────────────────────────────


class ConversationMetadata(BaseModel):
    """Counters and thresholds stored alongside a conversation."""

    total_tokens: int = 0
    average_response_time: float = 0.0
    max_active_messages: int = 50
    archive_threshold: int = 40
    summarization_trigger: int = 35


class Conversation(BaseModel):
    """
    A conversation record as held in the hot tier.

    While ``status`` is ``active`` the ``messages`` list is the full
    transcript. Once ``archived`` it is a trailing window of at most
    ``keep_recent_messages`` entries and the complete transcript lives in
    the cold snapshot referenced by ``archive_blob_url``.

    ``message_count`` always reflects the length of the original transcript,
    independent of trimming. ``version`` is the optimistic-concurrency token
    checked on every write.
    """

    id: str
    user_id: str
    subject_ref: str
    """File or dataset the conversation is about; used as the summary label."""
    title: str
    project_id: str | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: list[Message] = Field(default_factory=list)
    message_count: int = 0
    original_message_count: int | None = None
    summary: str | None = None
    archive_blob_url: str | None = None
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    archived_at: int | None = None
    ttl: int
    """Expiry hint in seconds, applied by the store's own retention mechanism."""
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    @property
    def is_archived(self) -> bool:
        return self.status == ConversationStatus.ARCHIVED

    @property
    def is_deleted(self) -> bool:
        return self.status == ConversationStatus.DELETED


class ArchiveSnapshot(BaseModel):
    """The immutable payload written to the cold tier."""

    conversation: Conversation
    archived_at: int
    archive_version: str = "1.0"


# ── Results ────────────────────────────────────────────────────────────────────


class ArchiveDecision(BaseModel):
    """The verdict of the archive policy for a single conversation."""

    should_archive: bool
    reasons: list[str] = Field(default_factory=list)
    message_count: int = 0
    token_count: int = 0
    thresholds: dict[str, int] = Field(default_factory=dict)


class ArchiveResult(BaseModel):
    """
    The result of one ``ArchivalOrchestrator.archive()`` call.

    ``archived`` is True only when this call performed the active → archived
    transition; idempotent no-ops (already archived, deleted, or empty
    transcript) return the current record with ``archived=False``.
    """

    conversation: Conversation
    archived: bool
    blob_ref: str | None = None
    summary_generated: bool = False
    skipped_reason: str | None = None
    elapsed_ms: float = 0.0


class FullConversation(BaseModel):
    """A conversation as served by the retrieval path."""

    conversation: Conversation
    degraded: bool = False
    """True when the cold tier was unreachable and the trimmed hot copy was served."""
    source: Literal["hot", "cold"] = "hot"

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages


class SweepResult(BaseModel):
    """The result of one sweeper pass over a user's conversations."""

    user_id: str
    scanned: int = 0
    archived_ids: list[str] = Field(default_factory=list)
    skipped: int = 0
    failed: dict[str, str] = Field(default_factory=dict)
    """Conversation id → error text for pipelines that raised."""

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "scanned": self.scanned,
            "archived": len(self.archived_ids),
            "skipped": self.skipped,
            "failed": len(self.failed),
        }
