"""Serve full transcripts across the hot and cold tiers."""

from __future__ import annotations

import structlog

from stratum.archive.cold_store import ColdArchiveStore
from stratum.errors import ArchiveError
from stratum.events.bus import EventBus, StratumEvent
from stratum.models.conversation import Conversation, FullConversation
from stratum.store.conversations import ConversationStore


class RetrievalReconstructor:
    """
    Rebuilds the complete transcript of an archived conversation.

    The cold snapshot supplies the messages up to the archive point; the hot
    record supplies current metadata (summary, status, timestamps, TTL,
    version) and any messages appended after archival. If the cold tier is
    unavailable the trimmed hot record is served with ``degraded=True``.
    Only a missing hot record raises.
    """

    def __init__(
        self,
        store: ConversationStore,
        cold_store: ColdArchiveStore,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._cold_store = cold_store
        self._event_bus = event_bus
        self._logger = structlog.get_logger("stratum.archive.retrieval")

    async def get_full(self, conversation_id: str, user_id: str) -> FullConversation:
        """
        Return the conversation with its full transcript.

        Raises:
            ConversationNotFoundError: If the hot record does not exist.
        """
        hot = await self._store.get(conversation_id, user_id)
        if not hot.is_archived or not hot.archive_blob_url:
            return FullConversation(conversation=hot, source="hot")

        blob_ref = hot.archive_blob_url
        try:
            snapshot = await self._cold_store.retrieve(blob_ref)
        except ArchiveError as exc:
            self._logger.warning(
                "retrieval_degraded",
                conversation_id=conversation_id,
                blob_ref=blob_ref,
                error=str(exc),
            )
            if self._event_bus is not None:
                self._event_bus.publish(
                    StratumEvent.RETRIEVAL_DEGRADED,
                    {"conversation_id": conversation_id, "blob_ref": blob_ref, "error": str(exc)},
                )
            return FullConversation(conversation=hot, degraded=True, source="hot")

        merged = merge_snapshot(hot, snapshot.conversation)
        return FullConversation(conversation=merged, source="cold")


def merge_snapshot(hot: Conversation, archived: Conversation) -> Conversation:
    """
    Combine an archived transcript with the current hot record.

    Hot-window messages missing from the snapshot were appended after
    archival; they follow the archived transcript in their hot order.
    """
    archived_ids = {m.id for m in archived.messages}
    appended = [m for m in hot.messages if m.id not in archived_ids]
    return hot.model_copy(
        update={
            "messages": [*archived.messages, *appended],
            "message_count": archived.message_count + len(appended),
            "original_message_count": archived.message_count,
        }
    )
