"""Exception hierarchy shared by the Stratum stores and archive pipeline."""

from __future__ import annotations

# ── Base ───────────────────────────────────────────────────────────────────────


class StratumError(Exception):
    """Base class for all Stratum errors."""

    retriable: bool = False
    """True when the same call may succeed if simply retried later."""


# ── Hot store ──────────────────────────────────────────────────────────────────


class StratumStoreError(StratumError):
    """Base class for hot-store errors."""


class ConversationNotFoundError(StratumStoreError):
    """Raised when a conversation does not exist or belongs to another user."""

    def __init__(self, conversation_id: str, user_id: str | None = None) -> None:
        super().__init__(f"Conversation not found: {conversation_id!r}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class DuplicateIDError(StratumStoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


class ConversationArchivedError(StratumStoreError):
    """
    Raised when a plain append targets an archived conversation.

    The hot window of an archived record is bounded; appends to it go through
    :meth:`~stratum.archive.orchestrator.ArchivalOrchestrator.append_to_archived`,
    which rolls the cold snapshot forward first.
    """

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id!r} is archived")
        self.conversation_id = conversation_id


class ConcurrentModificationError(StratumStoreError):
    """
    Raised when a write was based on a stale version of the record.

    The record was changed by another writer between read and write. The
    caller should re-read and retry.
    """

    retriable = True

    def __init__(self, conversation_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Conversation {conversation_id!r} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        self.actual_version = actual_version


# ── Cold tier ──────────────────────────────────────────────────────────────────


class ArchiveError(StratumError):
    """Base class for cold-tier errors."""


class ArchiveWriteError(ArchiveError):
    """
    Raised when a cold snapshot could not be written.

    The archive pipeline aborts before touching the hot record, so the
    conversation is still active and the call can be retried.
    """

    retriable = True

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to write archive {path!r}: {reason}")
        self.path = path
        self.reason = reason


class ArchiveRetrievalError(ArchiveError):
    """Raised when a cold snapshot is missing, unreadable or malformed."""

    retriable = True

    def __init__(self, blob_ref: str, reason: str) -> None:
        super().__init__(f"Failed to retrieve archive {blob_ref!r}: {reason}")
        self.blob_ref = blob_ref
        self.reason = reason


class ObjectStoreError(ArchiveError):
    """Base class for errors raised by an ObjectStore backend."""


class ObjectExistsError(ObjectStoreError):
    """Raised when a write targets a key that already holds an object."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object already exists: {key!r}")
        self.key = key


class ObjectNotFoundError(ObjectStoreError):
    """Raised when a read targets a reference with no object behind it."""

    def __init__(self, ref: str) -> None:
        super().__init__(f"Object not found: {ref!r}")
        self.ref = ref
