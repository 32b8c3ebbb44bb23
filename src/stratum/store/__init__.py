"""Stratum hot-tier persistence layer."""

from stratum.store.conversations import ConversationStore
from stratum.store.pool import StorePool

__all__ = [
    "ConversationStore",
    "StorePool",
]
