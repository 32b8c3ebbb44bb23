"""Stratum event bus."""

from stratum.events.bus import EventBus, Handler, StratumEvent
from stratum.events.payloads import (
    ArchiveCompletedPayload,
    ArchiveFailedPayload,
    ArchiveStartedPayload,
    ConcurrentModificationPayload,
    ConversationCreatedPayload,
    ConversationDeletedPayload,
    MessageAppendedPayload,
    RetrievalDegradedPayload,
    SummaryGeneratedPayload,
    SweepCompletedPayload,
)

__all__ = [
    "ArchiveCompletedPayload",
    "ArchiveFailedPayload",
    "ArchiveStartedPayload",
    "ConcurrentModificationPayload",
    "ConversationCreatedPayload",
    "ConversationDeletedPayload",
    "EventBus",
    "Handler",
    "MessageAppendedPayload",
    "RetrievalDegradedPayload",
    "StratumEvent",
    "SummaryGeneratedPayload",
    "SweepCompletedPayload",
]
