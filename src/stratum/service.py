"""Stratum ConversationService: the primary public API entry point."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog

from stratum.archive.cold_store import ColdArchiveStore
from stratum.archive.object_store import LocalObjectStore, ObjectStore
from stratum.archive.orchestrator import ArchivalOrchestrator
from stratum.archive.policy import ArchivePolicyEngine
from stratum.archive.retrieval import RetrievalReconstructor
from stratum.archive.summarizer import LLMSummarizer, Summarizer
from stratum.archive.sweeper import BackgroundSweeper
from stratum.errors import ConversationArchivedError, StratumError
from stratum.events.bus import EventBus
from stratum.models.config import StoreConfig, StratumConfig
from stratum.models.conversation import (
    ArchiveDecision,
    ArchiveResult,
    Conversation,
    FullConversation,
    Message,
    MessageRole,
    SweepResult,
    make_id,
)
from stratum.store.conversations import ConversationStore
from stratum.store.pool import StorePool
from stratum.tokens.estimator import TokenEstimator

_TITLE_WORDS = 6
_MIN_TITLE_CHARS = 10


class ConversationService:
    """
    Conversation lifecycle for one Stratum deployment.

    Wires the hot store, cold store, summarizer, archive policy, orchestrator,
    retrieval and sweeper together behind the operations an HTTP layer needs.

    Usage::

        # Preferred: open() returns an async context manager directly
        async with ConversationService.open(config) as service:
            conv = await service.create_conversation("user_1", "sales.csv")
            await service.append_message(conv.id, "user_1", "user", "Top region?")
            full = await service.get_full_conversation(conv.id, "user_1")

        # Manual lifecycle
        service = await ConversationService.create(config)
        ...
        await service.close()

    Archival runs in three places, all through the same orchestrator:
    after an append (``auto_archive=True``), on request
    (:meth:`archive_conversation`), and from the sweeper
    (:meth:`process_archiving_queue`).
    """

    def __init__(
        self,
        config: StratumConfig,
        store: ConversationStore,
        cold_store: ColdArchiveStore,
        orchestrator: ArchivalOrchestrator,
        retrieval: RetrievalReconstructor,
        sweeper: BackgroundSweeper,
        event_bus: EventBus,
        pool: StorePool | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._cold_store = cold_store
        self._orchestrator = orchestrator
        self._retrieval = retrieval
        self._sweeper = sweeper
        self._event_bus = event_bus
        self._pool = pool
        self._logger = structlog.get_logger("stratum.service")

    @classmethod
    async def create(
        cls,
        config: StratumConfig | None = None,
        *,
        db_path: str | None = None,
        object_store: ObjectStore | None = None,
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
        pool: StorePool | None = None,
    ) -> ConversationService:
        """
        Build and initialise a service.

        Args:
            config: Stratum configuration. Defaults to ``StratumConfig()``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if both ``db_path`` and ``config.store.db_path``
                are supplied.
            object_store: Cold-tier backend. Defaults to a
                :class:`~stratum.archive.object_store.LocalObjectStore` rooted
                at ``config.cold_store.root_dir``.
            summarizer: Defaults to an :class:`~stratum.archive.summarizer.LLMSummarizer`.
            event_bus: Bus to publish lifecycle events on. A private bus is
                created when omitted.
            pool: Optional shared connection pool. The caller owns it and is
                responsible for ``pool.close_all()`` at shutdown.

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            aiosqlite.Error: If the database cannot be initialised.
        """
        cfg = config or StratumConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )

        bus = event_bus or EventBus()
        store = ConversationStore(
            cfg.store,
            cfg.archive,
            pool=pool,
            estimator=TokenEstimator(cfg.store.token_encoding),
            event_bus=bus,
        )
        await store.initialize()

        cold_store = ColdArchiveStore(
            object_store or LocalObjectStore(cfg.cold_store.root_dir), cfg.cold_store
        )
        policy = ArchivePolicyEngine(cfg.archive)
        orchestrator = ArchivalOrchestrator(
            store,
            cold_store,
            summarizer or LLMSummarizer(cfg.summarizer),
            policy,
            cfg.archive,
            event_bus=bus,
        )
        retrieval = RetrievalReconstructor(store, cold_store, event_bus=bus)
        sweeper = BackgroundSweeper(store, orchestrator, policy, cfg.sweeper, event_bus=bus)

        structlog.get_logger("stratum.service").info(
            "service_started", db_path=cfg.store.db_path
        )
        return cls(
            config=cfg,
            store=store,
            cold_store=cold_store,
            orchestrator=orchestrator,
            retrieval=retrieval,
            sweeper=sweeper,
            event_bus=bus,
            pool=pool,
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: StratumConfig | None = None,
        *,
        db_path: str | None = None,
        object_store: ObjectStore | None = None,
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
        pool: StorePool | None = None,
    ) -> AsyncGenerator[ConversationService, None]:
        """
        Create a service and use it as an async context manager.

        All parameters are identical to :meth:`create`. The database
        connection is released when the ``async with`` block exits, even on
        exception.
        """
        service = await cls.create(
            config,
            db_path=db_path,
            object_store=object_store,
            summarizer=summarizer,
            event_bus=event_bus,
            pool=pool,
        )
        try:
            yield service
        finally:
            await service.close()

    async def close(self) -> None:
        """Release the database connection."""
        await self._store.close()
        self._logger.info("service_closed")

    async def __aenter__(self) -> ConversationService:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def config(self) -> StratumConfig:
        return self._config

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        """The bus lifecycle events are published on. Subscribe to observe archival."""
        return self._event_bus

    @property
    def orchestrator(self) -> ArchivalOrchestrator:
        return self._orchestrator

    @property
    def sweeper(self) -> BackgroundSweeper:
        return self._sweeper

    # ── Conversations ──────────────────────────────────────────────────────────

    async def create_conversation(
        self,
        user_id: str,
        subject_ref: str,
        title: str | None = None,
        *,
        project_id: str | None = None,
    ) -> Conversation:
        return await self._store.create(user_id, subject_ref, title, project_id=project_id)

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        role: MessageRole,
        content: str,
        *,
        tokens: int | None = None,
        auto_archive: bool = True,
    ) -> Conversation:
        """
        Append a message and apply the lifecycle rules.

        With ``auto_archive`` enabled, reaching the summarization trigger
        writes an early summary and reaching an archive threshold runs the
        archive pipeline before returning. Failures in either step are logged
        and do not undo the append; the sweeper picks the conversation up
        later. An archived conversation has its snapshot rolled forward
        instead (see :meth:`ArchivalOrchestrator.append_to_archived`).

        Returns:
            The conversation as stored after this call.

        Raises:
            ConversationNotFoundError: If absent, owned by another user, or deleted.
            ArchiveError: If the conversation is archived and its snapshot
                cannot be read or rewritten.
        """
        message = Message(id=make_id("msg"), role=role, content=content, tokens=tokens)
        try:
            conversation = await self._store.append_message(conversation_id, user_id, message)
        except ConversationArchivedError:
            return await self._orchestrator.append_to_archived(conversation_id, user_id, message)
        if not auto_archive:
            return conversation

        policy = self._orchestrator.policy
        if policy.should_summarize(conversation):
            try:
                conversation = await self._orchestrator.summarize_if_needed(
                    conversation_id, user_id
                )
            except StratumError as exc:
                self._logger.warning(
                    "early_summary_failed", conversation_id=conversation_id, error=str(exc)
                )

        try:
            result = await self._orchestrator.maybe_archive(conversation)
        except StratumError as exc:
            self._logger.warning(
                "auto_archive_failed",
                conversation_id=conversation_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return await self._store.get(conversation_id, user_id)
        return result.conversation if result is not None else conversation

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Return the hot record (trimmed window if archived)."""
        return await self._store.get(conversation_id, user_id)

    async def get_full_conversation(self, conversation_id: str, user_id: str) -> FullConversation:
        """Return the conversation with its full transcript, reading the cold tier if needed."""
        return await self._retrieval.get_full(conversation_id, user_id)

    async def list_conversations(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        *,
        include_deleted: bool = False,
    ) -> list[Conversation]:
        return await self._store.list(
            user_id, limit=limit, offset=offset, include_deleted=include_deleted
        )

    async def search_conversations(
        self, user_id: str, query: str, limit: int = 10
    ) -> list[Conversation]:
        return await self._store.search(user_id, query, limit)

    async def list_conversations_by_subject(
        self, user_id: str, subject_ref: str, limit: int = 10
    ) -> list[Conversation]:
        return await self._store.list_by_subject(user_id, subject_ref, limit)

    async def list_conversations_by_date_range(
        self, user_id: str, start: datetime, end: datetime, limit: int = 50
    ) -> list[Conversation]:
        return await self._store.list_by_date_range(
            user_id, int(start.timestamp() * 1000), int(end.timestamp() * 1000), limit
        )

    async def get_recent_messages(
        self, conversation_id: str, user_id: str, limit: int = 20
    ) -> list[Message]:
        return await self._store.get_recent_messages(conversation_id, user_id, limit)

    async def rename_conversation(
        self, conversation_id: str, user_id: str, title: str
    ) -> Conversation:
        return await self._store.update(conversation_id, user_id, {"title": title})

    async def delete_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Soft-delete. The record and any cold snapshot are kept until they expire."""
        return await self._store.soft_delete(conversation_id, user_id)

    # ── Archival ───────────────────────────────────────────────────────────────

    async def check_archive(self, conversation_id: str, user_id: str) -> ArchiveDecision:
        """Evaluate the archive policy without acting on it."""
        conversation = await self._store.get(conversation_id, user_id)
        return self._orchestrator.policy.evaluate(conversation)

    async def archive_conversation(self, conversation_id: str, user_id: str) -> ArchiveResult:
        """Archive now, regardless of thresholds. Errors propagate to the caller."""
        return await self._orchestrator.archive(conversation_id, user_id)

    async def process_archiving_queue(self, user_id: str) -> SweepResult:
        """Run one sweeper pass over ``user_id``'s conversations."""
        return await self._sweeper.process_archiving_queue(user_id)

    async def list_snapshots(self, conversation_id: str, user_id: str) -> list[str]:
        """References of every cold snapshot taken of a conversation, oldest first."""
        return await self._cold_store.list_snapshots(user_id, conversation_id)

    # ── Maintenance ────────────────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        """Check the hot store with a cheap read."""
        timestamp = datetime.now(UTC).isoformat()
        try:
            await self._store.list("__health_check__", limit=1)
        except Exception as exc:
            self._logger.warning("health_check_failed", error=str(exc))
            return {"status": "unhealthy", "error": str(exc), "timestamp": timestamp}
        return {
            "status": "healthy",
            "db_path": self._config.store.db_path,
            "timestamp": timestamp,
        }

    @staticmethod
    def generate_title(messages: Sequence[Message], subject_ref: str) -> str:
        """
        Derive a title from the first user message.

        The first six words are used, with ``...`` when the message is longer.
        Titles shorter than ten characters fall back to
        ``"Discussion about {subject_ref}"``; with no user message the title
        is ``"Conversation about {subject_ref}"``.
        """
        first = next((m for m in messages if m.role == "user" and m.content.strip()), None)
        if first is None:
            return f"Conversation about {subject_ref}"
        words = first.content.split()
        title = " ".join(words[:_TITLE_WORDS])
        if len(words) > _TITLE_WORDS:
            title += "..."
        if len(title) < _MIN_TITLE_CHARS:
            return f"Discussion about {subject_ref}"
        return title
