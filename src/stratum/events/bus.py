"""In-process pub/sub event bus for conversation lifecycle events."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["StratumEvent", dict[str, Any]], None | Awaitable[None]]


class StratumEvent(StrEnum):
    """All event types published by Stratum components.

    Typed payload definitions for each event live in
    :mod:`stratum.events.payloads`.

    **Payload schemas by event:**

    ``CONVERSATION_CREATED``
        ``conversation_id: str``, ``user_id: str``, ``subject_ref: str``

    ``MESSAGE_APPENDED``
        ``conversation_id: str``, ``message_id: str``, ``role: str``,
        ``message_count: int``

    ``CONVERSATION_DELETED``
        ``conversation_id: str``, ``user_id: str``

    ``SUMMARY_GENERATED``
        ``conversation_id: str``, ``early: bool``

    ``ARCHIVE_STARTED``
        ``conversation_id: str``, ``user_id: str``, ``message_count: int``

    ``ARCHIVE_COMPLETED``
        ``conversation_id: str``, ``blob_ref: str``,
        ``original_message_count: int``, ``kept_messages: int``

    ``ARCHIVE_FAILED``
        ``conversation_id: str``, ``error: str``, ``stage: str``

    ``CONCURRENT_MODIFICATION``
        ``conversation_id: str``, ``expected_version: int``,
        ``actual_version: int``, ``operation: str``

    ``RETRIEVAL_DEGRADED``
        ``conversation_id: str``, ``blob_ref: str``, ``error: str``

    ``SWEEP_COMPLETED``
        All fields of :meth:`~stratum.models.conversation.SweepResult.as_log_fields`.
    """

    # Conversation lifecycle
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_DELETED = "conversation.deleted"
    MESSAGE_APPENDED = "message.appended"

    # Archival pipeline
    SUMMARY_GENERATED = "summary.generated"
    ARCHIVE_STARTED = "archive.started"
    ARCHIVE_COMPLETED = "archive.completed"
    ARCHIVE_FAILED = "archive.failed"

    # Concurrency and retrieval
    CONCURRENT_MODIFICATION = "conversation.concurrent_modification"
    RETRIEVAL_DEGRADED = "retrieval.degraded"

    # Maintenance
    SWEEP_COMPLETED = "sweep.completed"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.

    Example::

        bus = EventBus()

        def on_archived(event, payload):
            print(f"Archived {payload['conversation_id']} to {payload['blob_ref']}")

        bus.subscribe(StratumEvent.ARCHIVE_COMPLETED, on_archived)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[StratumEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("stratum.events")

    def subscribe(self, event: StratumEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: StratumEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, event: StratumEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.

        Args:
            event: The event type to publish.
            payload: Event-specific data dictionary.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        # No running event loop; the coroutine can never run.
                        result.close()
                        continue
                    task = loop.create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(
                        functools.partial(self._on_task_done, event, handler)
                    )
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event_type=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )

    def _on_task_done(
        self, event: StratumEvent, handler: Handler, task: asyncio.Task[Any]
    ) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "event_handler_error",
                event_type=str(event),
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(exc),
            )
