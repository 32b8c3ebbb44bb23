"""Background batch archiving."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import structlog

from stratum.archive.orchestrator import ArchivalOrchestrator
from stratum.archive.policy import ArchivePolicyEngine
from stratum.events.bus import EventBus, StratumEvent
from stratum.models.config import SweeperConfig
from stratum.models.conversation import ArchiveResult, Conversation, SweepResult
from stratum.store.conversations import ConversationStore

UserIdsProvider = Callable[[], Awaitable[Iterable[str]]]


class BackgroundSweeper:
    """
    Finds conversations that qualify for archival and archives them.

    Each pass lists up to ``batch_size`` of a user's active conversations,
    those already at a threshold first, evaluates the archive policy on each,
    and runs the orchestrator for every match. Pipelines run concurrently, at
    most ``concurrency`` at a time. A failing pipeline is recorded in the
    result and does not affect the others; the sweeper itself never raises
    because of one.

    Example::

        sweeper = BackgroundSweeper(store, orchestrator)
        result = await sweeper.process_archiving_queue("user_1")
        print(result.archived_ids, result.failed)
    """

    def __init__(
        self,
        store: ConversationStore,
        orchestrator: ArchivalOrchestrator,
        policy: ArchivePolicyEngine | None = None,
        config: SweeperConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._policy = policy or orchestrator.policy
        self._config = config or SweeperConfig()
        self._event_bus = event_bus
        self._logger = structlog.get_logger("stratum.archive.sweeper")

    async def process_archiving_queue(self, user_id: str) -> SweepResult:
        """Run one sweep over ``user_id``'s conversations."""
        thresholds = self._policy.config
        candidates = await self._store.list_archive_candidates(
            user_id,
            self._config.batch_size,
            min_messages=thresholds.archive_threshold_messages,
            min_tokens=thresholds.max_tokens_per_conversation,
        )
        result = SweepResult(user_id=user_id, scanned=len(candidates))

        due = [c for c in candidates if self._policy.evaluate(c).should_archive]
        result.skipped = len(candidates) - len(due)

        semaphore = asyncio.Semaphore(self._config.concurrency)
        tasks = [asyncio.create_task(self._archive_one(c, semaphore)) for c in due]

        for coro in asyncio.as_completed(tasks):
            conversation_id, outcome = await coro
            if isinstance(outcome, ArchiveResult):
                if outcome.archived:
                    result.archived_ids.append(conversation_id)
                else:
                    result.skipped += 1
            else:
                result.failed[conversation_id] = outcome

        result.archived_ids.sort()
        log = self._logger.warning if result.failed else self._logger.info
        log("sweep_completed", **result.as_log_fields())
        if self._event_bus is not None:
            self._event_bus.publish(StratumEvent.SWEEP_COMPLETED, result.as_log_fields())
        return result

    async def sweep_users(self, user_ids: Iterable[str]) -> list[SweepResult]:
        """Sweep several users one after another."""
        results: list[SweepResult] = []
        for user_id in user_ids:
            try:
                results.append(await self.process_archiving_queue(user_id))
            except Exception as exc:
                self._logger.error("sweep_user_failed", user_id=user_id, error=str(exc))
                results.append(SweepResult(user_id=user_id, failed={"*": str(exc)}))
        return results

    async def run_periodic(
        self,
        user_ids_provider: UserIdsProvider,
        interval_seconds: float,
        stop_event: asyncio.Event,
    ) -> None:
        """
        Sweep every user returned by ``user_ids_provider`` until ``stop_event`` is set.

        The first sweep starts immediately; later sweeps start
        ``interval_seconds`` after the previous one finished.
        """
        self._logger.info("sweeper_started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                user_ids = await user_ids_provider()
                await self.sweep_users(user_ids)
            except Exception as exc:
                self._logger.error("sweep_round_failed", error=str(exc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
        self._logger.info("sweeper_stopped")

    async def _archive_one(
        self, conversation: Conversation, semaphore: asyncio.Semaphore
    ) -> tuple[str, ArchiveResult | str]:
        async with semaphore:
            try:
                return conversation.id, await self._orchestrator.archive(
                    conversation.id, conversation.user_id
                )
            except Exception as exc:
                self._logger.warning(
                    "sweep_archive_failed",
                    conversation_id=conversation.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return conversation.id, f"{type(exc).__name__}: {str(exc)}"
