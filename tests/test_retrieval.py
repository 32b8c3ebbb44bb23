"""Tests for RetrievalReconstructor."""

from __future__ import annotations

import pytest

from stratum.errors import ConversationNotFoundError
from stratum.events.bus import StratumEvent
from tests.conftest import USER, events_of, fill, make_message


async def archived_conversation(store, orchestrator, count: int = 45):
    conv = await fill(store, await store.create(USER, "sales.csv"), count)
    result = await orchestrator.archive(conv.id, USER)
    return conv, result.conversation


class TestGetFull:
    async def test_active_served_from_hot(self, store, retrieval):
        conv = await fill(store, await store.create(USER, "a.csv"), 7)
        full = await retrieval.get_full(conv.id, USER)
        assert full.source == "hot"
        assert full.degraded is False
        assert full.conversation == conv

    async def test_archived_round_trip(self, store, orchestrator, retrieval):
        """The full transcript is restored with the hot record's current metadata."""
        original, archived = await archived_conversation(store, orchestrator, 45)
        full = await retrieval.get_full(original.id, USER)

        assert full.source == "cold"
        assert full.degraded is False
        assert len(full.messages) == original.message_count == 45
        assert [m.id for m in full.messages] == [m.id for m in original.messages]
        assert full.conversation.status == archived.status
        assert full.conversation.summary == archived.summary
        assert full.conversation.version == archived.version
        assert full.conversation.ttl == archived.ttl
        assert full.conversation.original_message_count == 45
        assert full.conversation.message_count == 45

    async def test_messages_appended_after_archival_included(
        self, store, orchestrator, retrieval
    ):
        original, _ = await archived_conversation(store, orchestrator, 45)
        await orchestrator.append_to_archived(
            original.id, USER, make_message("user", "late q", index=100)
        )
        hot = await orchestrator.append_to_archived(
            original.id, USER, make_message("assistant", "late a", index=101)
        )
        assert len(hot.messages) <= 10

        full = await retrieval.get_full(original.id, USER)
        assert full.source == "cold"
        assert len(full.messages) == 47
        assert [m.content for m in full.messages[-2:]] == ["late q", "late a"]
        assert full.conversation.message_count == 47
        assert full.conversation.original_message_count == 47

    async def test_cold_unreachable_degrades(
        self, store, orchestrator, retrieval, object_store, event_bus
    ):
        """An unreachable cold tier yields the trimmed hot copy, flagged, without raising."""
        original, archived = await archived_conversation(store, orchestrator, 45)
        object_store.fail_reads = True

        full = await retrieval.get_full(original.id, USER)
        assert full.degraded is True
        assert full.source == "hot"
        assert len(full.messages) == 10
        assert full.conversation == archived
        (payload,) = events_of(event_bus, StratumEvent.RETRIEVAL_DEGRADED)
        assert payload["conversation_id"] == original.id
        assert payload["blob_ref"] == archived.archive_blob_url
        assert "storage unavailable" in payload["error"]

    async def test_missing_snapshot_degrades(self, store, orchestrator, retrieval):
        original, _ = await archived_conversation(store, orchestrator, 12)
        await store.update(original.id, USER, {"archive_blob_url": "memory://gone.json"})
        full = await retrieval.get_full(original.id, USER)
        assert full.degraded is True
        assert len(full.messages) == 10

    async def test_missing_conversation_raises(self, retrieval):
        with pytest.raises(ConversationNotFoundError):
            await retrieval.get_full("conv_missing", USER)
