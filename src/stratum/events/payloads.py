"""Typed payload definitions for each StratumEvent.

Usage example::

    from stratum.events.bus import EventBus, StratumEvent
    from stratum.events.payloads import ArchiveCompletedPayload

    def on_archived(event: StratumEvent, payload: ArchiveCompletedPayload) -> None:
        print(f"{payload['conversation_id']}: kept {payload['kept_messages']} messages")

    bus.subscribe(StratumEvent.ARCHIVE_COMPLETED, on_archived)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import Literal, TypedDict

# ── Conversation lifecycle ────────────────────────────────────────────────────


class ConversationCreatedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.CONVERSATION_CREATED`."""

    conversation_id: str
    user_id: str
    subject_ref: str


class ConversationDeletedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.CONVERSATION_DELETED`."""

    conversation_id: str
    user_id: str


class MessageAppendedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.MESSAGE_APPENDED`."""

    conversation_id: str
    message_id: str
    role: str
    message_count: int
    """Authoritative transcript length after the append."""


# ── Archival pipeline ─────────────────────────────────────────────────────────


class SummaryGeneratedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.SUMMARY_GENERATED`."""

    conversation_id: str
    early: bool
    """True when produced ahead of archival by the summarization trigger."""


class ArchiveStartedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.ARCHIVE_STARTED`."""

    conversation_id: str
    user_id: str
    message_count: int


class ArchiveCompletedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.ARCHIVE_COMPLETED`."""

    conversation_id: str
    blob_ref: str
    original_message_count: int
    kept_messages: int


class ArchiveFailedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.ARCHIVE_FAILED`."""

    conversation_id: str
    error: str
    stage: Literal["fetch", "snapshot", "persist", "timeout", "extend"]


# ── Concurrency and retrieval ─────────────────────────────────────────────────


class ConcurrentModificationPayload(TypedDict):
    """Payload for :attr:`StratumEvent.CONCURRENT_MODIFICATION`."""

    conversation_id: str
    expected_version: int
    actual_version: int
    operation: str


class RetrievalDegradedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.RETRIEVAL_DEGRADED`."""

    conversation_id: str
    blob_ref: str
    error: str


# ── Maintenance ───────────────────────────────────────────────────────────────


class SweepCompletedPayload(TypedDict):
    """Payload for :attr:`StratumEvent.SWEEP_COMPLETED`."""

    user_id: str
    scanned: int
    archived: int
    skipped: int
    failed: int
