"""Tests for ArchivalOrchestrator."""

from __future__ import annotations

import asyncio

import pytest

from stratum.archive.orchestrator import ArchivalOrchestrator
from stratum.archive.summarizer import fallback_summary
from stratum.errors import (
    ArchiveRetrievalError,
    ArchiveWriteError,
    ConcurrentModificationError,
    ConversationNotFoundError,
)
from stratum.events.bus import StratumEvent
from stratum.models.config import ArchiveConfig
from stratum.models.conversation import ConversationStatus
from tests.conftest import (
    USER,
    RaisingSummarizer,
    RecordingSummarizer,
    events_of,
    fill,
    make_message,
)


async def active_conversation(store, count: int = 45):
    conv = await store.create(USER, "sales.csv")
    return await fill(store, conv, count)


class TestArchive:
    async def test_archive_compacts_hot_record(self, store, orchestrator, archive_config):
        """45 messages → archived, 10 kept, original count recorded, archived TTL."""
        conv = await active_conversation(store, 45)
        result = await orchestrator.archive(conv.id, USER)

        assert result.archived is True
        assert result.summary_generated is True
        stored = await store.get(conv.id, USER)
        assert stored == result.conversation
        assert stored.status == ConversationStatus.ARCHIVED
        assert len(stored.messages) == 10
        assert [m.id for m in stored.messages] == [m.id for m in conv.messages[-10:]]
        assert stored.message_count == 45
        assert stored.original_message_count == 45
        assert stored.summary == "Summary of sales.csv (45 messages)"
        assert stored.archive_blob_url == result.blob_ref
        assert stored.archived_at is not None
        assert stored.ttl == archive_config.archived_ttl_seconds
        assert stored.version == conv.version + 1

    async def test_snapshot_holds_full_transcript(self, store, orchestrator, cold_store):
        conv = await active_conversation(store, 45)
        result = await orchestrator.archive(conv.id, USER)
        snapshot = await cold_store.retrieve(result.blob_ref)
        assert [m.id for m in snapshot.conversation.messages] == [m.id for m in conv.messages]
        assert snapshot.conversation.summary == result.conversation.summary

    async def test_archive_events(self, store, orchestrator, event_bus):
        conv = await active_conversation(store, 41)
        result = await orchestrator.archive(conv.id, USER)
        assert events_of(event_bus, StratumEvent.ARCHIVE_STARTED) == [
            {"conversation_id": conv.id, "user_id": USER, "message_count": 41}
        ]
        assert events_of(event_bus, StratumEvent.SUMMARY_GENERATED) == [
            {"conversation_id": conv.id, "early": False}
        ]
        assert events_of(event_bus, StratumEvent.ARCHIVE_COMPLETED) == [
            {
                "conversation_id": conv.id,
                "blob_ref": result.blob_ref,
                "original_message_count": 41,
                "kept_messages": 10,
            }
        ]
        assert events_of(event_bus, StratumEvent.ARCHIVE_FAILED) == []

    async def test_archive_is_idempotent(self, store, orchestrator, summarizer, cold_store):
        """A second archive is a no-op: no new summary, snapshot, or trimming."""
        conv = await active_conversation(store, 45)
        first = await orchestrator.archive(conv.id, USER)
        second = await orchestrator.archive(conv.id, USER)

        assert second.archived is False
        assert second.skipped_reason == "already_archived"
        assert second.blob_ref == first.blob_ref
        assert second.conversation == first.conversation
        assert len(summarizer.calls) == 1
        assert await cold_store.list_snapshots(USER, conv.id) == [first.blob_ref]

    async def test_existing_summary_kept(self, store, orchestrator, summarizer):
        conv = await active_conversation(store, 41)
        await store.update(conv.id, USER, {"summary": "Written earlier."})
        result = await orchestrator.archive(conv.id, USER)
        assert result.summary_generated is False
        assert result.conversation.summary == "Written earlier."
        assert summarizer.calls == []

    async def test_deleted_is_noop(self, store, orchestrator, object_store):
        conv = await active_conversation(store, 45)
        await store.soft_delete(conv.id, USER)
        result = await orchestrator.archive(conv.id, USER)
        assert result.archived is False
        assert result.skipped_reason == "deleted"
        assert object_store.write_attempts == 0

    async def test_empty_transcript_is_noop(self, store, orchestrator, object_store):
        conv = await store.create(USER, "a.csv")
        result = await orchestrator.archive(conv.id, USER)
        assert result.archived is False
        assert result.skipped_reason == "empty_transcript"
        assert (await store.get(conv.id, USER)).is_active
        assert object_store.write_attempts == 0

    async def test_missing_conversation_raises(self, orchestrator):
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.archive("conv_missing", USER)

    async def test_keep_zero_messages(self, store, cold_store, summarizer):
        orchestrator = ArchivalOrchestrator(
            store, cold_store, summarizer, config=ArchiveConfig(keep_recent_messages=0)
        )
        conv = await active_conversation(store, 12)
        result = await orchestrator.archive(conv.id, USER)
        assert result.conversation.messages == []
        assert result.conversation.message_count == 12

    async def test_archived_invariants(self, store, orchestrator):
        """status=archived implies a blob ref, a summary, and at most K hot messages."""
        for count in (1, 9, 10, 11, 45):
            conv = await active_conversation(store, count)
            archived = (await orchestrator.archive(conv.id, USER)).conversation
            assert archived.is_archived
            assert archived.archive_blob_url is not None
            assert archived.summary is not None
            assert len(archived.messages) == min(count, 10)
            assert archived.message_count == count


class TestPartialFailure:
    async def test_snapshot_failure_leaves_hot_untouched(
        self, store, orchestrator, object_store, event_bus
    ):
        """A failed cold write aborts before any hot-tier change."""
        conv = await active_conversation(store, 45)
        before = await store.get(conv.id, USER)
        object_store.fail_writes = True

        with pytest.raises(ArchiveWriteError):
            await orchestrator.archive(conv.id, USER)

        after = await store.get(conv.id, USER)
        assert after == before
        assert after.status == ConversationStatus.ACTIVE
        assert len(after.messages) == 45
        assert after.summary is None
        failed = events_of(event_bus, StratumEvent.ARCHIVE_FAILED)
        assert [p["stage"] for p in failed] == ["snapshot"]
        assert events_of(event_bus, StratumEvent.ARCHIVE_COMPLETED) == []

    async def test_retry_after_snapshot_failure_succeeds(self, store, orchestrator, object_store):
        conv = await active_conversation(store, 45)
        object_store.fail_writes = True
        with pytest.raises(ArchiveWriteError):
            await orchestrator.archive(conv.id, USER)
        object_store.fail_writes = False
        result = await orchestrator.archive(conv.id, USER)
        assert result.archived is True

    async def test_summarizer_failure_uses_fallback(self, store, cold_store):
        orchestrator = ArchivalOrchestrator(store, cold_store, RaisingSummarizer())
        conv = await active_conversation(store, 41)
        result = await orchestrator.archive(conv.id, USER)
        assert result.archived is True
        assert result.conversation.summary == fallback_summary(conv.messages, "sales.csv")

    async def test_append_racing_archive_wins(self, store, cold_store, event_bus):
        """An append between fetch and persist survives; the archive conflicts."""
        conv = await active_conversation(store, 45)
        racing_message = make_message("user", "one more question", msg_id="msg_racing")

        class AppendingSummarizer:
            async def summarize(self, messages, context_label):
                await store.append_message(conv.id, USER, racing_message)
                return "summary"

        orchestrator = ArchivalOrchestrator(
            store, cold_store, AppendingSummarizer(), event_bus=event_bus
        )
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await orchestrator.archive(conv.id, USER)
        assert exc_info.value.retriable is True

        stored = await store.get(conv.id, USER)
        assert stored.status == ConversationStatus.ACTIVE
        assert stored.message_count == 46
        assert stored.messages[-1].id == "msg_racing"
        assert stored.summary is None

        conflicts = events_of(event_bus, StratumEvent.CONCURRENT_MODIFICATION)
        assert conflicts[-1]["operation"] == "archive"
        assert events_of(event_bus, StratumEvent.ARCHIVE_FAILED)[-1]["stage"] == "persist"

        # Next attempt archives the fresh state, including the racing message.
        result = await ArchivalOrchestrator(store, cold_store, RecordingSummarizer()).archive(
            conv.id, USER
        )
        assert result.conversation.original_message_count == 46
        assert result.conversation.messages[-1].id == "msg_racing"

    async def test_timeout_before_persist(self, store, cold_store, event_bus):
        orchestrator = ArchivalOrchestrator(
            store,
            cold_store,
            RecordingSummarizer(delay=1.0),
            config=ArchiveConfig(archive_timeout_seconds=0.05),
            event_bus=event_bus,
        )
        conv = await active_conversation(store, 41)
        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.archive(conv.id, USER)
        assert (await store.get(conv.id, USER)).is_active
        assert events_of(event_bus, StratumEvent.ARCHIVE_FAILED)[-1]["stage"] == "timeout"


class TestEarlySummary:
    async def test_below_trigger_noop(self, store, orchestrator, summarizer):
        conv = await active_conversation(store, 34)
        result = await orchestrator.summarize_if_needed(conv.id, USER)
        assert result.summary is None
        assert summarizer.calls == []

    async def test_at_trigger_writes_summary(self, store, orchestrator, event_bus):
        conv = await active_conversation(store, 35)
        result = await orchestrator.summarize_if_needed(conv.id, USER)
        assert result.summary == "Summary of sales.csv (35 messages)"
        assert result.is_active
        assert len(result.messages) == 35
        assert (await store.get(conv.id, USER)).summary == result.summary
        assert events_of(event_bus, StratumEvent.SUMMARY_GENERATED) == [
            {"conversation_id": conv.id, "early": True}
        ]

    async def test_summary_is_set_once(self, store, orchestrator, summarizer):
        conv = await active_conversation(store, 36)
        await orchestrator.summarize_if_needed(conv.id, USER)
        await orchestrator.summarize_if_needed(conv.id, USER)
        assert len(summarizer.calls) == 1

    async def test_append_during_early_summary_is_kept(self, store, cold_store):
        conv = await active_conversation(store, 35)

        class AppendingSummarizer:
            async def summarize(self, messages, context_label):
                await store.append_message(conv.id, USER, make_message(msg_id="msg_late"))
                return "early summary"

        orchestrator = ArchivalOrchestrator(store, cold_store, AppendingSummarizer())
        result = await orchestrator.summarize_if_needed(conv.id, USER)
        assert result.summary == "early summary"
        assert result.message_count == 36
        assert result.messages[-1].id == "msg_late"


class TestMaybeArchive:
    async def test_below_threshold_returns_none(self, store, orchestrator):
        conv = await active_conversation(store, 5)
        assert await orchestrator.maybe_archive(conv) is None
        assert (await store.get(conv.id, USER)).is_active

    async def test_over_threshold_archives(self, store, orchestrator):
        conv = await active_conversation(store, 40)
        result = await orchestrator.maybe_archive(conv)
        assert result is not None
        assert result.archived is True


class TestAppendToArchived:
    async def test_hot_window_stays_bounded(
        self, store, orchestrator, retrieval, archive_config
    ):
        """Every append after archival keeps the hot window within keep_recent_messages."""
        conv = await active_conversation(store, 45)
        await orchestrator.archive(conv.id, USER)
        keep = archive_config.keep_recent_messages

        for i in range(45, 60):
            hot = await orchestrator.append_to_archived(
                conv.id, USER, make_message(index=i)
            )
            assert hot.status == ConversationStatus.ARCHIVED
            assert len(hot.messages) <= keep
            assert hot.message_count == i + 1
            assert hot.original_message_count == i + 1
            assert hot.messages[-1].id == make_message(index=i).id

        full = await retrieval.get_full(conv.id, USER)
        assert full.degraded is False
        expected = [m.id for m in conv.messages] + [
            make_message(index=i).id for i in range(45, 60)
        ]
        assert [m.id for m in full.messages] == expected
        assert full.conversation.message_count == 60

    async def test_each_append_writes_a_snapshot(self, store, orchestrator, cold_store):
        conv = await active_conversation(store, 12)
        archived = (await orchestrator.archive(conv.id, USER)).conversation
        hot = await orchestrator.append_to_archived(conv.id, USER, make_message(index=12))

        refs = await cold_store.list_snapshots(USER, conv.id)
        assert len(refs) == 2
        assert archived.archive_blob_url in refs
        assert hot.archive_blob_url in refs
        assert hot.archive_blob_url != archived.archive_blob_url
        assert hot.archived_at == archived.archived_at
        assert hot.summary == archived.summary
        snapshot = await cold_store.retrieve(hot.archive_blob_url)
        assert snapshot.conversation.message_count == 13
        assert snapshot.conversation.messages[-1].id == make_message(index=12).id

    async def test_tokens_keep_counting(self, store, orchestrator):
        conv = await active_conversation(store, 12)
        archived = (await orchestrator.archive(conv.id, USER)).conversation
        hot = await orchestrator.append_to_archived(
            conv.id, USER, make_message(index=12, tokens=500)
        )
        assert hot.metadata.total_tokens == archived.metadata.total_tokens + 500

    async def test_cold_unreachable_rejects_append(
        self, store, orchestrator, object_store, event_bus
    ):
        """An unreadable snapshot fails the append and leaves the hot record as it was."""
        conv = await active_conversation(store, 12)
        archived = (await orchestrator.archive(conv.id, USER)).conversation
        object_store.fail_reads = True

        with pytest.raises(ArchiveRetrievalError):
            await orchestrator.append_to_archived(conv.id, USER, make_message(index=12))
        assert await store.get(conv.id, USER) == archived
        (payload,) = events_of(event_bus, StratumEvent.ARCHIVE_FAILED)
        assert payload["stage"] == "extend"
        assert payload["conversation_id"] == conv.id

    async def test_snapshot_write_failure_rejects_append(
        self, store, orchestrator, object_store
    ):
        conv = await active_conversation(store, 12)
        archived = (await orchestrator.archive(conv.id, USER)).conversation
        object_store.fail_writes = True

        with pytest.raises(ArchiveWriteError):
            await orchestrator.append_to_archived(conv.id, USER, make_message(index=12))
        assert await store.get(conv.id, USER) == archived

    async def test_active_conversation_gets_plain_append(
        self, store, orchestrator, cold_store
    ):
        conv = await active_conversation(store, 3)
        hot = await orchestrator.append_to_archived(conv.id, USER, make_message(index=3))
        assert hot.is_active
        assert len(hot.messages) == 4
        assert await cold_store.list_snapshots(USER, conv.id) == []

    async def test_deleted_conversation_raises(self, store, orchestrator):
        conv = await active_conversation(store, 3)
        await store.soft_delete(conv.id, USER)
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.append_to_archived(conv.id, USER, make_message(index=3))
