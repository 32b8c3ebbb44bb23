"""
Stratum: conversation lifecycle and tiered archival.

Primary entry point::

    from stratum import ConversationService, StratumConfig

    async with ConversationService.open(StratumConfig.from_env()) as service:
        conv = await service.create_conversation("user_1", "sales.csv")
        await service.append_message(conv.id, "user_1", "user", "Which region grew fastest?")
"""

from stratum.service import ConversationService
from stratum.models import (
    StratumConfig,
    ArchiveConfig,
    StoreConfig,
    ColdStoreConfig,
    SummarizerConfig,
    SweeperConfig,
    Conversation,
    ConversationMetadata,
    ConversationStatus,
    Message,
    ArchiveSnapshot,
    ArchiveDecision,
    ArchiveResult,
    FullConversation,
    SweepResult,
    make_id,
)
from stratum.errors import (
    StratumError,
    StratumStoreError,
    ConversationNotFoundError,
    ConversationArchivedError,
    DuplicateIDError,
    ConcurrentModificationError,
    ArchiveError,
    ArchiveWriteError,
    ArchiveRetrievalError,
)
from stratum.events.bus import EventBus, StratumEvent
from stratum.store import ConversationStore, StorePool
from stratum.archive import (
    ArchivalOrchestrator,
    ArchivePolicyEngine,
    BackgroundSweeper,
    ColdArchiveStore,
    FallbackSummarizer,
    InMemoryObjectStore,
    LLMSummarizer,
    LocalObjectStore,
    ObjectStore,
    RetrievalReconstructor,
    Summarizer,
)
from stratum.tokens.estimator import TokenEstimator

__version__ = "0.1.0"

__all__ = [
    # Core
    "ConversationService",
    "make_id",
    # Config
    "StratumConfig",
    "ArchiveConfig",
    "StoreConfig",
    "ColdStoreConfig",
    "SummarizerConfig",
    "SweeperConfig",
    # Models
    "Conversation",
    "ConversationMetadata",
    "ConversationStatus",
    "Message",
    "ArchiveSnapshot",
    "ArchiveDecision",
    "ArchiveResult",
    "FullConversation",
    "SweepResult",
    # Errors
    "StratumError",
    "StratumStoreError",
    "ConversationNotFoundError",
    "ConversationArchivedError",
    "DuplicateIDError",
    "ConcurrentModificationError",
    "ArchiveError",
    "ArchiveWriteError",
    "ArchiveRetrievalError",
    # Components
    "ConversationStore",
    "StorePool",
    "ColdArchiveStore",
    "ObjectStore",
    "LocalObjectStore",
    "InMemoryObjectStore",
    "Summarizer",
    "LLMSummarizer",
    "FallbackSummarizer",
    "ArchivePolicyEngine",
    "ArchivalOrchestrator",
    "RetrievalReconstructor",
    "BackgroundSweeper",
    # Infrastructure
    "EventBus",
    "StratumEvent",
    "TokenEstimator",
]
