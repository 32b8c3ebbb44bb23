"""Shared fixtures for Stratum tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest
import pytest_asyncio

from stratum.archive.cold_store import ColdArchiveStore
from stratum.archive.object_store import InMemoryObjectStore
from stratum.archive.orchestrator import ArchivalOrchestrator
from stratum.archive.policy import ArchivePolicyEngine
from stratum.archive.retrieval import RetrievalReconstructor
from stratum.errors import ObjectStoreError
from stratum.events.bus import EventBus, StratumEvent
from stratum.models.config import (
    ArchiveConfig,
    ColdStoreConfig,
    StoreConfig,
    StratumConfig,
)
from stratum.models.conversation import Conversation, Message
from stratum.store.conversations import ConversationStore
from stratum.store.pool import StorePool
from stratum.tokens.estimator import TokenEstimator

USER = "user_1"


class TickingClock:
    """Millisecond clock that advances by ``step`` on every read."""

    def __init__(self, start: int = 1_718_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


class RecordingSummarizer:
    """Deterministic summarizer that records every call."""

    def __init__(self, text: str | None = None, delay: float = 0.0) -> None:
        self.text = text
        self.delay = delay
        self.calls: list[tuple[int, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def summarize(self, messages: Sequence[Message], context_label: str) -> str:
        self.calls.append((len(messages), context_label))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return self.text or f"Summary of {context_label} ({len(messages)} messages)"


class RaisingSummarizer:
    """Summarizer that breaks its contract by raising."""

    async def summarize(self, messages: Sequence[Message], context_label: str) -> str:
        raise RuntimeError("provider exploded")


class FlakyObjectStore(InMemoryObjectStore):
    """InMemoryObjectStore whose reads or writes can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.fail_reads = False
        self.fail_write_keys: set[str] = set()
        self.write_attempts = 0

    async def write(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> str:
        self.write_attempts += 1
        if self.fail_writes or any(part in key for part in self.fail_write_keys):
            raise ObjectStoreError(f"storage unavailable for {key}")
        return await super().write(key, data, metadata)

    async def read(self, ref: str) -> bytes:
        if self.fail_reads:
            raise ObjectStoreError("storage unavailable")
        return await super().read(ref)


@pytest.fixture
def config(tmp_path):
    """StratumConfig with a temp database path and archive directory."""
    return StratumConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        cold_store=ColdStoreConfig(root_dir=str(tmp_path / "archives")),
    )


@pytest.fixture
def archive_config(config) -> ArchiveConfig:
    return config.archive


@pytest.fixture
def clock():
    return TickingClock()


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest.fixture
def estimator():
    """TokenEstimator using heuristic only (no tiktoken required in tests)."""
    e = TokenEstimator()
    e._force_heuristic = True
    return e


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[StratumEvent, dict[str, Any]]] = []

    def _collect(event: StratumEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def store(config, archive_config, pool, estimator, event_bus, clock):
    """Initialized ConversationStore backed by a temp SQLite database (pool-managed)."""
    s = ConversationStore(
        config.store,
        archive_config,
        pool=pool,
        estimator=estimator,
        event_bus=event_bus,
        clock=clock,
    )
    await s.initialize()
    yield s
    await s.close()  # no-op for pool-managed conn; pool fixture closes the connection


@pytest.fixture
def object_store():
    return FlakyObjectStore()


@pytest.fixture
def cold_store(object_store, config, clock):
    return ColdArchiveStore(object_store, config.cold_store, clock=clock)


@pytest.fixture
def summarizer():
    return RecordingSummarizer()


@pytest.fixture
def policy(archive_config):
    return ArchivePolicyEngine(archive_config)


@pytest.fixture
def orchestrator(store, cold_store, summarizer, policy, archive_config, event_bus, clock):
    return ArchivalOrchestrator(
        store,
        cold_store,
        summarizer,
        policy,
        archive_config,
        event_bus=event_bus,
        clock=clock,
    )


@pytest.fixture
def retrieval(store, cold_store, event_bus):
    return RetrievalReconstructor(store, cold_store, event_bus=event_bus)


def make_message(
    role: str = "user",
    content: str | None = None,
    msg_id: str | None = None,
    tokens: int | None = None,
    index: int = 0,
) -> Message:
    """Helper to create a test Message."""
    return Message(
        id=msg_id or f"msg_{index:04d}_{role[:1]}",
        role=role,
        content=content if content is not None else f"{role} message {index}",
        timestamp=1_718_000_000_000 + index,
        tokens=tokens,
    )


async def fill(
    store: ConversationStore,
    conversation: Conversation,
    count: int,
    *,
    start: int = 0,
    tokens: int | None = None,
) -> Conversation:
    """Append ``count`` alternating user/assistant messages."""
    for i in range(start, start + count):
        role = "user" if i % 2 == 0 else "assistant"
        conversation = await store.append_message(
            conversation.id,
            conversation.user_id,
            make_message(role, index=i, tokens=tokens),
        )
    return conversation


def events_of(bus: EventBus, event: StratumEvent) -> list[dict[str, Any]]:
    """Payloads of every collected ``event``, in publish order."""
    return [payload for e, payload in bus.collected if e == event]  # type: ignore[attr-defined]
