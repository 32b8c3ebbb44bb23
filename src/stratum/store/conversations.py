"""SQLite-backed hot-tier conversation store with optimistic concurrency."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from stratum.errors import (
    ConcurrentModificationError,
    ConversationArchivedError,
    ConversationNotFoundError,
    DuplicateIDError,
    StratumStoreError,
)
from stratum.events.bus import EventBus, StratumEvent
from stratum.models.config import ArchiveConfig, StoreConfig
from stratum.models.conversation import (
    Conversation,
    ConversationMetadata,
    ConversationStatus,
    Message,
    make_id,
    now_ms,
)
from stratum.store.pool import open_connection
from stratum.tokens.estimator import TokenEstimator

if TYPE_CHECKING:
    from stratum.store.pool import StorePool

Mutation = Callable[[Conversation], Conversation]

# Fields callers may not set through update(); they are owned by the store.
_PROTECTED_FIELDS = frozenset({"id", "user_id", "version", "created_at"})


class ConversationStore:
    """
    Partitioned document store for hot-tier conversation records.

    Each conversation is addressed by ``(id, user_id)`` and stored as one JSON
    document. Every write is a full-document replace conditioned on the
    record's ``version``; a stale write raises
    :class:`~stratum.errors.ConcurrentModificationError` instead of silently
    overwriting a concurrent change. Read-modify-write helpers
    (``append_message``, ``update``, ``soft_delete``) re-read and retry up to
    ``StoreConfig.append_retries`` times before giving up.

    Usage (standalone)::

        store = ConversationStore(StoreConfig())
        await store.initialize()
        try:
            conv = await store.create("user_1", "sales.csv")
            await store.append_message(conv.id, "user_1", msg)
        finally:
            await store.close()

    Usage (with pool)::

        pool = StorePool()
        store = ConversationStore(config, pool=pool)
        await store.initialize()
        ...
        await pool.close_all()
    """

    def __init__(
        self,
        config: StoreConfig,
        archive_config: ArchiveConfig | None = None,
        *,
        pool: StorePool | None = None,
        estimator: TokenEstimator | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], int] | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._config = config
        self._archive_config = archive_config or ArchiveConfig()
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._estimator = estimator or TokenEstimator()
        self._event_bus = event_bus
        self._clock = clock or now_ms
        self._id_gen = id_generator or make_id
        self._conn: aiosqlite.Connection | None = None
        self._private_lock = asyncio.Lock()
        self._logger = structlog.get_logger("stratum.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """
        Release the database connection.

        No-op for pool-managed connections; the pool owns their lifetime.
        """
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StratumStoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @property
    def write_attempts(self) -> int:
        """Read-modify-write attempts made before a version conflict propagates."""
        return self._config.append_retries + 1

    def _write_lock(self) -> asyncio.Lock:
        if self._pool is not None:
            return self._pool.write_lock(self._db_path)
        return self._private_lock

    # ── Point operations ───────────────────────────────────────────────────────

    async def create(
        self,
        user_id: str,
        subject_ref: str,
        title: str | None = None,
        *,
        project_id: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        """
        Insert a new, empty, active conversation.

        Args:
            user_id: Owner and partition key.
            subject_ref: The file or dataset the conversation is about.
            title: Optional title. Defaults to ``"Conversation about {subject_ref}"``.
            project_id: Optional owning project.
            conversation_id: Explicit ID; a ``conv_`` ULID is generated when omitted.

        Raises:
            DuplicateIDError: If a conversation with this ID already exists.
        """
        conn = self._conn_or_raise()
        now = self._clock()
        archive = self._archive_config
        conversation = Conversation(
            id=conversation_id or self._id_gen("conv"),
            user_id=user_id,
            subject_ref=subject_ref,
            title=title or f"Conversation about {subject_ref}",
            project_id=project_id,
            metadata=ConversationMetadata(
                max_active_messages=archive.max_active_messages,
                archive_threshold=archive.archive_threshold_messages,
                summarization_trigger=archive.summarization_trigger,
            ),
            created_at=now,
            updated_at=now,
            ttl=archive.default_ttl_seconds,
        )
        try:
            async with self._write_lock():
                await conn.execute(
                    """
                    INSERT INTO conversations
                        (id, user_id, subject_ref, title, summary, status,
                         created_at, updated_at, version, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation.id,
                        conversation.user_id,
                        conversation.subject_ref,
                        conversation.title,
                        conversation.summary,
                        str(conversation.status),
                        conversation.created_at,
                        conversation.updated_at,
                        conversation.version,
                        conversation.model_dump_json(),
                    ),
                )
                await conn.commit()
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(conversation.id) from exc

        self._logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            user_id=user_id,
            subject_ref=subject_ref,
        )
        self._publish(
            StratumEvent.CONVERSATION_CREATED,
            {"conversation_id": conversation.id, "user_id": user_id, "subject_ref": subject_ref},
        )
        return conversation

    async def get(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Point-read a conversation within the caller's partition.

        Raises:
            ConversationNotFoundError: If absent or owned by a different user.
        """
        conversation = await self._get_or_none(conversation_id, user_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id, user_id)
        return conversation

    async def replace(self, conversation: Conversation) -> Conversation:
        """
        Atomically replace the stored document with ``conversation``.

        The write succeeds only if the stored ``version`` still equals
        ``conversation.version``. The stored copy gets ``version + 1`` and a
        fresh ``updated_at``.

        Returns:
            The conversation as persisted.

        Raises:
            ConversationNotFoundError: If the record no longer exists.
            ConcurrentModificationError: If another writer got there first.
        """
        conn = self._conn_or_raise()
        expected = conversation.version
        stored = conversation.model_copy(
            update={"version": expected + 1, "updated_at": self._clock()}
        )
        async with self._write_lock():
            cursor = await conn.execute(
                """
                UPDATE conversations SET
                    subject_ref=?, title=?, summary=?, status=?,
                    updated_at=?, version=?, document=?
                WHERE id=? AND user_id=? AND version=?
                """,
                (
                    stored.subject_ref,
                    stored.title,
                    stored.summary,
                    str(stored.status),
                    stored.updated_at,
                    stored.version,
                    stored.model_dump_json(),
                    stored.id,
                    stored.user_id,
                    expected,
                ),
            )
            await conn.commit()
            updated = cursor.rowcount

        if updated == 0:
            current = await self._get_or_none(conversation.id, conversation.user_id)
            if current is None:
                raise ConversationNotFoundError(conversation.id, conversation.user_id)
            raise ConcurrentModificationError(conversation.id, expected, current.version)
        return stored

    async def append_message(
        self, conversation_id: str, user_id: str, message: Message
    ) -> Conversation:
        """
        Append ``message`` to the end of the transcript.

        Increments ``message_count``, adds the message's token cost to
        ``metadata.total_tokens`` and stamps ``updated_at``. Only active
        conversations accept plain appends.

        Raises:
            ConversationNotFoundError: If absent, owned by another user, or deleted.
            ConversationArchivedError: If the conversation is archived.
            ConcurrentModificationError: If every retry lost a version race.
        """

        def _append(conversation: Conversation) -> Conversation:
            if conversation.is_deleted:
                raise ConversationNotFoundError(conversation_id, user_id)
            if conversation.is_archived:
                raise ConversationArchivedError(conversation_id)
            return self.with_message(conversation, message)

        updated = await self._mutate(conversation_id, user_id, _append, "append_message")
        self.message_appended(updated, message)
        return updated

    def with_message(self, conversation: Conversation, message: Message) -> Conversation:
        """Return ``conversation`` with ``message`` appended and its counters advanced."""
        token_cost = self._estimator.estimate_message(message)
        metadata = conversation.metadata.model_copy(
            update={"total_tokens": conversation.metadata.total_tokens + token_cost}
        )
        return conversation.model_copy(
            update={
                "messages": [*conversation.messages, message],
                "message_count": conversation.message_count + 1,
                "metadata": metadata,
            }
        )

    def message_appended(self, conversation: Conversation, message: Message) -> None:
        """Log and publish ``MESSAGE_APPENDED`` for a persisted append."""
        self._logger.debug(
            "message_appended",
            conversation_id=conversation.id,
            message_id=message.id,
            message_count=conversation.message_count,
        )
        self._publish(
            StratumEvent.MESSAGE_APPENDED,
            {
                "conversation_id": conversation.id,
                "message_id": message.id,
                "role": message.role,
                "message_count": conversation.message_count,
            },
        )

    async def update(
        self,
        conversation_id: str,
        user_id: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Conversation:
        """
        Merge ``fields`` into the stored record and stamp ``updated_at``.

        Args:
            conversation_id: The conversation to update.
            user_id: Owner partition.
            fields: Field name → new value. ``id``, ``user_id``, ``version`` and
                ``created_at`` cannot be changed. Archived records cannot become
                active again, lose their snapshot reference or grow past
                ``keep_recent_messages``; deleted records stay deleted; a
                written summary is never cleared.
            expected_version: When given, the update is applied only against
                that exact version (single attempt). When omitted, the store
                re-reads and retries on conflict.

        Raises:
            ValueError: If ``fields`` names a protected or unknown field, or the
                change breaks a lifecycle rule.
            ConversationNotFoundError: If the record does not exist.
            ConcurrentModificationError: On a version mismatch.
        """
        bad = set(fields) & _PROTECTED_FIELDS
        if bad:
            raise ValueError(f"Cannot update protected fields: {sorted(bad)}")
        unknown = set(fields) - set(Conversation.model_fields)
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")

        def _merge(conversation: Conversation) -> Conversation:
            merged = conversation.model_dump()
            merged.update(fields)
            updated = Conversation.model_validate(merged)
            _check_lifecycle(conversation, updated, self._archive_config.keep_recent_messages)
            return updated

        if expected_version is not None:
            current = await self.get(conversation_id, user_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(
                    conversation_id, expected_version, current.version
                )
            return await self.replace(_merge(current))
        return await self._mutate(conversation_id, user_id, _merge, "update")

    async def soft_delete(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Tombstone a conversation (``status=deleted``).

        The record and any cold snapshot are retained; physical removal is
        left to the stores' own expiry.
        """

        def _tombstone(conversation: Conversation) -> Conversation:
            return conversation.model_copy(update={"status": ConversationStatus.DELETED})

        deleted = await self._mutate(conversation_id, user_id, _tombstone, "soft_delete")
        self._logger.info("conversation_deleted", conversation_id=conversation_id, user_id=user_id)
        self._publish(
            StratumEvent.CONVERSATION_DELETED,
            {"conversation_id": conversation_id, "user_id": user_id},
        )
        return deleted

    # ── Partition queries ──────────────────────────────────────────────────────

    async def list(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        *,
        include_deleted: bool = False,
        statuses: Iterable[ConversationStatus] | None = None,
    ) -> list[Conversation]:
        """
        List a user's conversations, most recently updated first.

        Args:
            user_id: Owner partition.
            limit: Maximum number of conversations to return.
            offset: Number of conversations to skip (for pagination).
            include_deleted: Include tombstoned conversations.
            statuses: Restrict to these statuses. Takes precedence over
                ``include_deleted`` when given.
        """
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if statuses is None and not include_deleted:
            conditions.append("status != 'deleted'")
        if statuses is not None:
            wanted = [str(s) for s in statuses]
            if not wanted:
                return []
            conditions.append(f"status IN ({','.join('?' * len(wanted))})")
            params.extend(wanted)
        params.extend([limit, offset])
        return await self._query(
            f"SELECT document FROM conversations WHERE {' AND '.join(conditions)}"
            " ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?",
            params,
        )

    async def list_archive_candidates(
        self,
        user_id: str,
        limit: int,
        *,
        min_messages: int,
        min_tokens: int,
    ) -> list[Conversation]:
        """
        List a user's active conversations, those at a threshold first.

        Conversations with ``message_count >= min_messages`` or
        ``total_tokens >= min_tokens`` sort ahead of the rest, so a bounded
        batch always reaches them however many smaller conversations were
        updated more recently. Ties are broken by ``updated_at`` DESC.
        """
        return await self._query(
            """
            SELECT document FROM conversations
            WHERE user_id = ? AND status = 'active'
            ORDER BY (json_extract(document, '$.message_count') >= ?
                      OR json_extract(document, '$.metadata.total_tokens') >= ?) DESC,
                     updated_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, min_messages, min_tokens, limit),
        )

    async def search(self, user_id: str, query: str, limit: int = 10) -> list[Conversation]:
        """Case-insensitive substring search over title and summary, excluding deleted."""
        pattern = "%" + _escape_like(query) + "%"
        return await self._query(
            """
            SELECT document FROM conversations
            WHERE user_id = ?
              AND status != 'deleted'
              AND (UPPER(title) LIKE UPPER(?) ESCAPE '\\'
                   OR UPPER(COALESCE(summary, '')) LIKE UPPER(?) ESCAPE '\\')
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, pattern, pattern, limit),
        )

    async def list_by_subject(
        self, user_id: str, subject_ref: str, limit: int = 10
    ) -> list[Conversation]:
        """Non-deleted conversations about ``subject_ref``, most recent first."""
        return await self._query(
            """
            SELECT document FROM conversations
            WHERE user_id = ? AND subject_ref = ? AND status != 'deleted'
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, subject_ref, limit),
        )

    async def list_by_date_range(
        self, user_id: str, start_ms: int, end_ms: int, limit: int = 50
    ) -> list[Conversation]:
        """Non-deleted conversations created within ``[start_ms, end_ms]``, newest first."""
        return await self._query(
            """
            SELECT document FROM conversations
            WHERE user_id = ? AND created_at >= ? AND created_at <= ?
              AND status != 'deleted'
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, start_ms, end_ms, limit),
        )

    async def get_recent_messages(
        self, conversation_id: str, user_id: str, limit: int = 20
    ) -> list[Message]:
        """Return the last ``limit`` messages held in the hot record."""
        conversation = await self.get(conversation_id, user_id)
        if limit <= 0:
            return []
        return conversation.messages[-limit:]

    # ── Private Helpers ────────────────────────────────────────────────────────

    async def _mutate(
        self,
        conversation_id: str,
        user_id: str,
        mutation: Mutation,
        operation: str,
    ) -> Conversation:
        """Read → mutate → version-checked replace, retrying on conflict."""
        attempts = self.write_attempts
        for attempt in range(attempts):
            current = await self.get(conversation_id, user_id)
            try:
                return await self.replace(mutation(current))
            except ConcurrentModificationError as exc:
                self._logger.warning(
                    "concurrent_modification",
                    conversation_id=conversation_id,
                    operation=operation,
                    attempt=attempt + 1,
                    expected_version=exc.expected_version,
                    actual_version=exc.actual_version,
                )
                self._publish(
                    StratumEvent.CONCURRENT_MODIFICATION,
                    {
                        "conversation_id": conversation_id,
                        "expected_version": exc.expected_version,
                        "actual_version": exc.actual_version,
                        "operation": operation,
                    },
                )
                if attempt + 1 >= attempts:
                    raise
        raise AssertionError("unreachable")  # pragma: no cover

    async def _get_or_none(self, conversation_id: str, user_id: str) -> Conversation | None:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT document FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_conversation(row)

    async def _query(self, sql: str, params: Iterable[Any]) -> list[Conversation]:
        conn = self._conn_or_raise()
        async with conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def _row_to_conversation(self, row: aiosqlite.Row) -> Conversation:
        return Conversation.model_validate_json(row["document"])

    def _publish(self, event: StratumEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _check_lifecycle(current: Conversation, updated: Conversation, keep: int) -> None:
    """
    Reject field updates that would break the conversation lifecycle.

    - ``deleted`` is terminal and ``archived`` may only move to ``deleted``.
    - An archived record always references its snapshot and holds at most
      ``keep`` messages.
    - A summary, once written, is never cleared.
    """
    if current.is_deleted and not updated.is_deleted:
        raise ValueError("Deleted conversations cannot change status")
    if current.is_archived and updated.is_active:
        raise ValueError("Archived conversations cannot return to active")
    if updated.is_archived:
        if not updated.archive_blob_url:
            raise ValueError("Archived conversations require archive_blob_url")
        if len(updated.messages) > keep:
            raise ValueError(f"Archived conversations hold at most {keep} messages")
    if current.summary is not None and updated.summary is None:
        raise ValueError("A written summary cannot be cleared")
