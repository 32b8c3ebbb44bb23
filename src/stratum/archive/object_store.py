"""
Cold-tier object storage: protocol and implementations.

- ObjectStore: async protocol for write-once objects addressed by key.
- LocalObjectStore: filesystem backend rooted at a directory.
- InMemoryObjectStore: process-local backend for tests and local dev.

Keys are ``/``-separated paths (e.g. ``user_1/conv_01J.../1718000000000-ab12.json``).
A write returns a reference string that ``read()`` accepts; references are
opaque to callers. Objects are never overwritten in place: writing to an
existing key raises :class:`~stratum.errors.ObjectExistsError`.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

import structlog

from stratum.errors import ObjectExistsError, ObjectNotFoundError, ObjectStoreError

_logger = structlog.get_logger("stratum.archive.object_store")

_META_SUFFIX = ".meta.json"


def _validate_key(key: str) -> str:
    """Reject empty, absolute or parent-escaping keys."""
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise ObjectStoreError(f"Invalid object key: {key!r}")
    return str(path)


class ObjectStore(Protocol):
    """Protocol for write-once object storage."""

    async def write(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        """Store ``data`` under ``key`` and return a reference. Never overwrites."""
        ...

    async def read(self, ref: str) -> bytes:
        """Return the bytes behind ``ref``; raise ObjectNotFoundError if missing."""
        ...

    async def read_metadata(self, ref: str) -> dict[str, str]:
        """Return the metadata stored with ``ref`` (empty when none was written)."""
        ...

    async def list_prefix(self, prefix: str) -> list[str]:
        """List references of objects whose key starts with ``prefix``, sorted by key."""
        ...

    def ref_for(self, key: str) -> str:
        """Return the reference a write to ``key`` produces."""
        ...


class InMemoryObjectStore:
    """
    In-memory backend for tests and local dev.

    References take the form ``memory://{key}``.
    """

    scheme = "memory://"

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._metadata: dict[str, dict[str, str]] = {}

    async def write(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        key = _validate_key(key)
        if key in self._objects:
            raise ObjectExistsError(key)
        self._objects[key] = bytes(data)
        self._metadata[key] = dict(metadata or {})
        return self.scheme + key

    async def read(self, ref: str) -> bytes:
        key = self._key_from_ref(ref)
        try:
            return self._objects[key]
        except KeyError:
            raise ObjectNotFoundError(ref) from None

    async def read_metadata(self, ref: str) -> dict[str, str]:
        key = self._key_from_ref(ref)
        if key not in self._objects:
            raise ObjectNotFoundError(ref)
        return dict(self._metadata.get(key, {}))

    async def list_prefix(self, prefix: str) -> list[str]:
        return [self.scheme + k for k in sorted(self._objects) if k.startswith(prefix)]

    def ref_for(self, key: str) -> str:
        return self.scheme + _validate_key(key)

    def _key_from_ref(self, ref: str) -> str:
        if not ref.startswith(self.scheme):
            raise ObjectNotFoundError(ref)
        return ref[len(self.scheme) :]


class LocalObjectStore:
    """
    Filesystem backend.

    Each object is written to a temporary file in the target directory and
    then hard-linked into place, so a key either holds the complete object or
    nothing, and an existing key is never replaced. Metadata is stored in a
    ``{key}.meta.json`` sidecar. Blocking filesystem calls run in a worker
    thread via ``asyncio.to_thread``.

    References take the form ``file://{absolute path}``.
    """

    scheme = "file://"

    def __init__(self, root_dir: str | Path) -> None:
        self._root = Path(root_dir).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    async def write(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        key = _validate_key(key)
        target = self._root / key
        await asyncio.to_thread(self._write_sync, target, data, metadata or {})
        _logger.debug("object_written", key=key, size=len(data))
        return self.scheme + str(target)

    async def read(self, ref: str) -> bytes:
        path = self._path_from_ref(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise ObjectNotFoundError(ref) from None

    async def read_metadata(self, ref: str) -> dict[str, str]:
        path = self._path_from_ref(ref)
        if not await asyncio.to_thread(path.exists):
            raise ObjectNotFoundError(ref)
        sidecar = path.with_name(path.name + _META_SUFFIX)
        try:
            raw = await asyncio.to_thread(sidecar.read_text, encoding="utf-8")
        except FileNotFoundError:
            return {}
        return json.loads(raw)

    async def list_prefix(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self._list_sync, prefix)

    def ref_for(self, key: str) -> str:
        return self.scheme + str(self._root / _validate_key(key))

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _path_from_ref(self, ref: str) -> Path:
        if not ref.startswith(self.scheme):
            raise ObjectNotFoundError(ref)
        path = Path(ref[len(self.scheme) :]).resolve()
        if not path.is_relative_to(self._root):
            raise ObjectNotFoundError(ref)
        return path

    def _write_sync(self, target: Path, data: bytes, metadata: dict[str, str]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            raise ObjectExistsError(str(target.relative_to(self._root)))
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=target.suffix)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_name, target)
            except FileExistsError:
                raise ObjectExistsError(str(target.relative_to(self._root))) from None
        finally:
            os.unlink(tmp_name)
        sidecar = target.with_name(target.name + _META_SUFFIX)
        sidecar.write_text(json.dumps(metadata, sort_keys=True), encoding="utf-8")

    def _list_sync(self, prefix: str) -> list[str]:
        if not self._root.exists():
            return []
        refs: list[str] = []
        for path in sorted(self._root.rglob("*")):
            if not path.is_file() or path.name.endswith(_META_SUFFIX):
                continue
            if path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                refs.append(self.scheme + str(path))
        return refs
