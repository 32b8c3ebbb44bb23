"""The hot → cold archival pipeline."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from stratum.archive.cold_store import ColdArchiveStore
from stratum.archive.policy import ArchivePolicyEngine
from stratum.archive.retrieval import merge_snapshot
from stratum.archive.summarizer import Summarizer, fallback_summary
from stratum.errors import (
    ArchiveError,
    ArchiveWriteError,
    ConcurrentModificationError,
    ConversationNotFoundError,
    StratumStoreError,
)
from stratum.events.bus import EventBus, StratumEvent
from stratum.models.config import ArchiveConfig
from stratum.models.conversation import (
    ArchiveResult,
    Conversation,
    ConversationStatus,
    Message,
    now_ms,
)
from stratum.store.conversations import ConversationStore


@dataclass
class _PreparedArchive:
    """A compacted record ready to persist, plus what it took to build it."""

    original: Conversation
    compacted: Conversation
    blob_ref: str
    summary_generated: bool


class ArchivalOrchestrator:
    """
    Moves a conversation from the hot tier to the cold tier.

    Pipeline (one call to :meth:`archive`):

    1. **Fetch** the current record. Already archived, deleted, or empty
       transcripts are successful no-ops (``archived=False``).
    2. **Summarise** when no summary exists yet. Never aborts the pipeline;
       a failed summary degrades to fallback text.
    3. **Snapshot** the full transcript to the cold store. On failure the hot
       record is untouched and :class:`~stratum.errors.ArchiveWriteError`
       propagates.
    4. **Compact** to the trailing ``keep_recent_messages`` window, with
       ``status=archived``, the summary, the snapshot reference,
       ``archived_at``, ``original_message_count`` and the archived TTL.
    5. **Persist** with one version-checked replace. If another writer got
       there first, :class:`~stratum.errors.ConcurrentModificationError`
       propagates and the concurrent change stands. The snapshot written in
       step 3 is then unreferenced; the next attempt writes a fresh one.

    Steps 1-3 are bounded by ``ArchiveConfig.archive_timeout_seconds`` when
    set; a timeout never interrupts step 5.

    Example::

        orchestrator = ArchivalOrchestrator(store, cold_store, summarizer)
        result = await orchestrator.archive(conversation_id, user_id)
        if result.archived:
            print(result.blob_ref, result.conversation.original_message_count)
    """

    def __init__(
        self,
        store: ConversationStore,
        cold_store: ColdArchiveStore,
        summarizer: Summarizer,
        policy: ArchivePolicyEngine | None = None,
        config: ArchiveConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._cold_store = cold_store
        self._summarizer = summarizer
        self._config = config or (policy.config if policy is not None else ArchiveConfig())
        self._policy = policy or ArchivePolicyEngine(self._config)
        self._event_bus = event_bus
        self._clock = clock or now_ms
        self._logger = structlog.get_logger("stratum.archive.orchestrator")

    @property
    def policy(self) -> ArchivePolicyEngine:
        return self._policy

    # ── Public entry points ────────────────────────────────────────────────────

    async def archive(self, conversation_id: str, user_id: str) -> ArchiveResult:
        """
        Run the archive pipeline for one conversation.

        Returns:
            ArchiveResult. ``archived`` is True only when this call performed
            the active → archived transition.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
            ArchiveWriteError: If the cold snapshot could not be written.
            ConcurrentModificationError: If the record changed between fetch
                and persist.
            TimeoutError: If steps 1-3 exceeded ``archive_timeout_seconds``.
        """
        start_ms = time.time() * 1000
        timeout = self._config.archive_timeout_seconds

        try:
            prepared = await asyncio.wait_for(
                self._prepare(conversation_id, user_id, start_ms), timeout=timeout
            )
        except TimeoutError:
            self._logger.error(
                "archive_timeout",
                conversation_id=conversation_id,
                user_id=user_id,
                timeout=timeout,
            )
            self._publish_failed(conversation_id, f"timed out after {timeout}s", "timeout")
            raise

        if isinstance(prepared, ArchiveResult):
            return prepared
        return await self._persist(prepared, start_ms)

    async def summarize_if_needed(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Write an early summary once the summarization trigger is reached.

        Only the ``summary`` field is written, against the version that was
        summarised. If an append lands in between, the write is retried once
        on the fresh record; a second conflict propagates.

        Returns:
            The conversation as stored after this call.
        """
        conversation = await self._store.get(conversation_id, user_id)
        if not self._policy.should_summarize(conversation):
            return conversation

        summary = await self._summarize(conversation)
        try:
            updated = await self._store.update(
                conversation_id,
                user_id,
                {"summary": summary},
                expected_version=conversation.version,
            )
        except ConcurrentModificationError:
            current = await self._store.get(conversation_id, user_id)
            if not self._policy.should_summarize(current):
                return current
            updated = await self._store.update(
                conversation_id,
                user_id,
                {"summary": summary},
                expected_version=current.version,
            )

        self._logger.info(
            "early_summary_written",
            conversation_id=conversation_id,
            message_count=updated.message_count,
        )
        self._publish(
            StratumEvent.SUMMARY_GENERATED,
            {"conversation_id": conversation_id, "early": True},
        )
        return updated

    async def maybe_archive(self, conversation: Conversation) -> ArchiveResult | None:
        """Archive ``conversation`` if the policy says so; None when it does not."""
        decision = self._policy.evaluate(conversation)
        if not decision.should_archive:
            return None
        self._logger.info(
            "archive_triggered",
            conversation_id=conversation.id,
            reasons=decision.reasons,
        )
        return await self.archive(conversation.id, conversation.user_id)

    async def append_to_archived(
        self, conversation_id: str, user_id: str, message: Message
    ) -> Conversation:
        """
        Append ``message`` to an archived conversation, rolling its snapshot forward.

        The current snapshot is read and extended with ``message`` and written
        as a new snapshot. The hot record is then repointed at it and trimmed
        back to ``keep_recent_messages``, so the hot window never grows. The
        earlier snapshot is kept. A conversation that is still active gets a
        plain append.

        Returns:
            The conversation as stored after this call.

        Raises:
            ConversationNotFoundError: If absent, owned by another user, or deleted.
            ArchiveRetrievalError: If the current snapshot cannot be read.
            ArchiveWriteError: If the new snapshot cannot be written.
            ConcurrentModificationError: If every attempt lost a version race.
        """
        attempts = self._store.write_attempts
        for attempt in range(attempts):
            hot = await self._store.get(conversation_id, user_id)
            if not hot.is_archived:
                return await self._store.append_message(conversation_id, user_id, message)
            try:
                snapshot = await self._cold_store.retrieve(hot.archive_blob_url or "")
                extended = self._store.with_message(
                    merge_snapshot(hot, snapshot.conversation), message
                )
                blob_ref = await self._cold_store.archive(extended)
            except ArchiveError as exc:
                self._logger.error(
                    "archive_extend_failed",
                    conversation_id=conversation_id,
                    error=str(exc),
                )
                self._publish_failed(conversation_id, str(exc), "extend")
                raise

            compacted = self._compact(extended, blob_ref, hot.archived_at or self._clock())
            try:
                stored = await self._store.replace(compacted)
            except ConcurrentModificationError as exc:
                self._logger.warning(
                    "archive_extend_conflict",
                    conversation_id=conversation_id,
                    attempt=attempt + 1,
                    orphaned_ref=blob_ref,
                )
                self._publish(
                    StratumEvent.CONCURRENT_MODIFICATION,
                    {
                        "conversation_id": conversation_id,
                        "expected_version": exc.expected_version,
                        "actual_version": exc.actual_version,
                        "operation": "append_to_archived",
                    },
                )
                if attempt + 1 >= attempts:
                    raise
                continue

            self._logger.info(
                "archive_extended",
                conversation_id=conversation_id,
                message_count=stored.message_count,
                blob_ref=blob_ref,
            )
            self._store.message_appended(stored, message)
            return stored
        raise AssertionError("unreachable")  # pragma: no cover

    # ── Pipeline steps ─────────────────────────────────────────────────────────

    async def _prepare(
        self, conversation_id: str, user_id: str, start_ms: float
    ) -> ArchiveResult | _PreparedArchive:
        # 1. Fetch
        try:
            conversation = await self._store.get(conversation_id, user_id)
        except ConversationNotFoundError:
            raise
        except StratumStoreError as exc:
            self._publish_failed(conversation_id, str(exc), "fetch")
            raise

        skipped = _skip_reason(conversation)
        if skipped is not None:
            self._logger.info(
                "archive_skipped",
                conversation_id=conversation_id,
                reason=skipped,
            )
            return ArchiveResult(
                conversation=conversation,
                archived=False,
                blob_ref=conversation.archive_blob_url,
                skipped_reason=skipped,
                elapsed_ms=time.time() * 1000 - start_ms,
            )

        self._logger.info(
            "archive_started",
            conversation_id=conversation_id,
            user_id=user_id,
            message_count=conversation.message_count,
        )
        self._publish(
            StratumEvent.ARCHIVE_STARTED,
            {
                "conversation_id": conversation_id,
                "user_id": user_id,
                "message_count": conversation.message_count,
            },
        )

        # 2. Summarise
        summary_generated = False
        if conversation.summary is None:
            summary = await self._summarize(conversation)
            conversation = conversation.model_copy(update={"summary": summary})
            summary_generated = True
            self._publish(
                StratumEvent.SUMMARY_GENERATED,
                {"conversation_id": conversation_id, "early": False},
            )

        # 3. Snapshot
        try:
            blob_ref = await self._cold_store.archive(conversation)
        except ArchiveWriteError as exc:
            self._logger.error(
                "archive_snapshot_failed",
                conversation_id=conversation_id,
                error=str(exc),
            )
            self._publish_failed(conversation_id, str(exc), "snapshot")
            raise

        # 4. Compact
        return _PreparedArchive(
            original=conversation,
            compacted=self._compact(conversation, blob_ref, self._clock()),
            blob_ref=blob_ref,
            summary_generated=summary_generated,
        )

    async def _persist(self, prepared: _PreparedArchive, start_ms: float) -> ArchiveResult:
        conversation_id = prepared.compacted.id
        try:
            stored = await self._store.replace(prepared.compacted)
        except ConcurrentModificationError as exc:
            self._logger.warning(
                "archive_persist_conflict",
                conversation_id=conversation_id,
                expected_version=exc.expected_version,
                actual_version=exc.actual_version,
                orphaned_ref=prepared.blob_ref,
            )
            self._publish(
                StratumEvent.CONCURRENT_MODIFICATION,
                {
                    "conversation_id": conversation_id,
                    "expected_version": exc.expected_version,
                    "actual_version": exc.actual_version,
                    "operation": "archive",
                },
            )
            self._publish_failed(conversation_id, str(exc), "persist")
            raise
        except StratumStoreError as exc:
            self._publish_failed(conversation_id, str(exc), "persist")
            raise

        elapsed = time.time() * 1000 - start_ms
        self._logger.info(
            "conversation_archived",
            conversation_id=conversation_id,
            user_id=stored.user_id,
            original_message_count=stored.original_message_count,
            kept_messages=len(stored.messages),
            blob_ref=prepared.blob_ref,
            elapsed_ms=elapsed,
        )
        self._publish(
            StratumEvent.ARCHIVE_COMPLETED,
            {
                "conversation_id": conversation_id,
                "blob_ref": prepared.blob_ref,
                "original_message_count": prepared.original.message_count,
                "kept_messages": len(stored.messages),
            },
        )
        return ArchiveResult(
            conversation=stored,
            archived=True,
            blob_ref=prepared.blob_ref,
            summary_generated=prepared.summary_generated,
            elapsed_ms=elapsed,
        )

    def _compact(
        self, conversation: Conversation, blob_ref: str, archived_at: int
    ) -> Conversation:
        keep = self._config.keep_recent_messages
        return conversation.model_copy(
            update={
                "status": ConversationStatus.ARCHIVED,
                "messages": conversation.messages[-keep:] if keep else [],
                "archive_blob_url": blob_ref,
                "archived_at": archived_at,
                "original_message_count": conversation.message_count,
                "ttl": self._config.archived_ttl_seconds,
            }
        )

    async def _summarize(self, conversation: Conversation) -> str:
        try:
            return await self._summarizer.summarize(
                conversation.messages, conversation.subject_ref
            )
        except Exception as exc:
            self._logger.warning(
                "summarizer_raised",
                conversation_id=conversation.id,
                error=str(exc),
            )
            return fallback_summary(conversation.messages, conversation.subject_ref)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _publish(self, event: StratumEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)

    def _publish_failed(self, conversation_id: str, error: str, stage: str) -> None:
        self._publish(
            StratumEvent.ARCHIVE_FAILED,
            {"conversation_id": conversation_id, "error": error, "stage": stage},
        )


def _skip_reason(conversation: Conversation) -> str | None:
    if conversation.is_archived:
        return "already_archived"
    if conversation.is_deleted:
        return "deleted"
    if not conversation.messages:
        return "empty_transcript"
    return None
