"""Stratum data models."""

from stratum.models.config import (
    ArchiveConfig,
    ColdStoreConfig,
    StoreConfig,
    StratumConfig,
    SummarizerConfig,
    SweeperConfig,
)
from stratum.models.conversation import (
    ArchiveDecision,
    ArchiveResult,
    ArchiveSnapshot,
    Conversation,
    ConversationMetadata,
    ConversationStatus,
    FullConversation,
    Message,
    MessageRole,
    SweepResult,
    make_id,
    now_ms,
)

__all__ = [
    # Config
    "ArchiveConfig",
    "ColdStoreConfig",
    "StoreConfig",
    "StratumConfig",
    "SummarizerConfig",
    "SweeperConfig",
    # Conversation
    "Conversation",
    "ConversationMetadata",
    "ConversationStatus",
    "Message",
    "MessageRole",
    "make_id",
    "now_ms",
    # Archive
    "ArchiveSnapshot",
    "ArchiveDecision",
    "ArchiveResult",
    "FullConversation",
    "SweepResult",
]
