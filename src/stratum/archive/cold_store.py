"""Write-once cold snapshots of full conversation transcripts."""

from __future__ import annotations

import hashlib
from collections.abc import Callable

import structlog
from pydantic import ValidationError

from stratum.archive.object_store import ObjectStore
from stratum.errors import (
    ArchiveRetrievalError,
    ArchiveWriteError,
    ObjectExistsError,
    ObjectNotFoundError,
)
from stratum.models.config import ColdStoreConfig
from stratum.models.conversation import ArchiveSnapshot, Conversation, now_ms


def snapshot_key(user_id: str, conversation_id: str, archived_at: int, digest: str) -> str:
    """
    Return the object key for a snapshot.

    ``{user_id}/{conversation_id}/{archived_at}-{digest[:16]}.json``. The
    timestamp keeps snapshots of one conversation in chronological order and
    the content hash makes the name reproducible for identical content.
    """
    return f"{user_id}/{conversation_id}/{archived_at}-{digest[:16]}.json"


class ColdArchiveStore:
    """
    Durable, immutable storage of full conversation snapshots.

    ``archive()`` serialises the complete, untrimmed record together with the
    archival timestamp and version tag and writes it once. ``retrieve()``
    reads it back. Both translate backend errors into the archive error
    taxonomy so callers only deal with
    :class:`~stratum.errors.ArchiveWriteError` and
    :class:`~stratum.errors.ArchiveRetrievalError`.

    Example::

        cold = ColdArchiveStore(LocalObjectStore("/var/lib/stratum/archives"))
        ref = await cold.archive(conversation)
        snapshot = await cold.retrieve(ref)
        assert len(snapshot.conversation.messages) == conversation.message_count
    """

    def __init__(
        self,
        backend: ObjectStore,
        config: ColdStoreConfig | None = None,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or ColdStoreConfig()
        self._clock = clock or now_ms
        self._logger = structlog.get_logger("stratum.archive.cold_store")

    async def archive(self, conversation: Conversation) -> str:
        """
        Write a snapshot of ``conversation`` and return its reference.

        Raises:
            ArchiveWriteError: If the backend write fails, or if a different
                object already exists at the computed key.
        """
        archived_at = self._clock()
        snapshot = ArchiveSnapshot(
            conversation=conversation,
            archived_at=archived_at,
            archive_version=self._config.archive_version,
        )
        data = snapshot.model_dump_json(indent=2).encode("utf-8")
        digest = hashlib.sha256(data).hexdigest()
        key = snapshot_key(conversation.user_id, conversation.id, archived_at, digest)
        metadata = {
            "conversation_id": conversation.id,
            "user_id": conversation.user_id,
            "subject_ref": conversation.subject_ref,
            "message_count": str(conversation.message_count),
            "archived_at": str(archived_at),
            "archive_version": self._config.archive_version,
            "sha256": digest,
        }

        try:
            ref = await self._backend.write(key, data, metadata)
        except ObjectExistsError:
            ref = await self._accept_identical(key, data)
        except Exception as exc:
            self._logger.error(
                "archive_write_failed",
                conversation_id=conversation.id,
                key=key,
                error=str(exc),
            )
            raise ArchiveWriteError(key, str(exc)) from exc

        self._logger.info(
            "conversation_snapshot_written",
            conversation_id=conversation.id,
            user_id=conversation.user_id,
            message_count=len(conversation.messages),
            ref=ref,
            size=len(data),
        )
        return ref

    async def retrieve(self, blob_ref: str) -> ArchiveSnapshot:
        """
        Read and decode the snapshot behind ``blob_ref``.

        Raises:
            ArchiveRetrievalError: If the object is missing, unreadable or malformed.
        """
        try:
            data = await self._backend.read(blob_ref)
        except ObjectNotFoundError as exc:
            raise ArchiveRetrievalError(blob_ref, "object not found") from exc
        except Exception as exc:
            raise ArchiveRetrievalError(blob_ref, str(exc)) from exc

        try:
            snapshot = ArchiveSnapshot.model_validate_json(data)
        except ValidationError as exc:
            raise ArchiveRetrievalError(blob_ref, f"malformed snapshot: {exc}") from exc

        self._logger.debug(
            "conversation_snapshot_read",
            conversation_id=snapshot.conversation.id,
            ref=blob_ref,
        )
        return snapshot

    async def list_snapshots(self, user_id: str, conversation_id: str) -> list[str]:
        """References of every snapshot taken of a conversation, oldest first."""
        return await self._backend.list_prefix(f"{user_id}/{conversation_id}/")

    async def _accept_identical(self, key: str, data: bytes) -> str:
        """A retried write of the exact same bytes is a success, anything else is not."""
        ref = self._backend.ref_for(key)
        try:
            existing = await self._backend.read(ref)
        except Exception as exc:
            raise ArchiveWriteError(key, f"object exists and is unreadable: {exc}") from exc
        if existing != data:
            raise ArchiveWriteError(key, "a different object already exists at this key")
        return ref
