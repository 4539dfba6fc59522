"""In-process task queue with named triggers and deferred timers.

Handlers are coroutines registered by trigger name. ``send`` and
``schedule_at`` are plain (non-async) methods so request handlers running
in FastAPI's threadpool can fire triggers; work is handed to the event
loop captured at ``start()`` via ``call_soon_threadsafe``.

Timers are keyed (by event id for expiry), so re-arming the same key
replaces the previous timer instead of stacking a second one. Timers do
not survive a restart; the runtime re-arms them from the database.

Example:
    queue = TaskQueue()
    queue.register(EVENT_CREATED, scheduler.handle_event_created)
    await queue.start()
    queue.send(EVENT_CREATED, {"eventId": event.id})
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from agentrelay.db.models import utc_now

logger = logging.getLogger(__name__)

# Trigger names
EVENT_CREATED = "agent/event.created"
EVENT_TIMEOUT = "agent/event.timeout"
NEGOTIATION_TURN = "agent/negotiation.turn"
NEGOTIATION_OFFER_CREATED = "negotiation/offer.created"
CONNECTION_REQUEST_CREATED = "connection/request.created"

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class TriggerSender(Protocol):
    """The part of a queue that services depend on."""

    def send(self, name: str, data: dict[str, Any]) -> None: ...

    def schedule_at(
        self, when: datetime, name: str, data: dict[str, Any], key: str | None = None
    ) -> None: ...


class TaskQueue:
    """Asyncio-backed trigger dispatcher."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._handlers: dict[str, Handler] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._pending: list[tuple[str, dict[str, Any]]] = []
        self._clock = clock

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    @property
    def running(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        """Bind to the running loop and flush triggers sent before start."""
        self._loop = asyncio.get_running_loop()
        pending, self._pending = self._pending, []
        for name, data in pending:
            self._spawn(name, data)
        logger.info("Task queue started (%d handlers)", len(self._handlers))

    async def stop(self) -> None:
        """Cancel timers and in-flight tasks."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None
        logger.info("Task queue stopped")

    async def drain(self) -> None:
        """Wait until no task is in flight (timers are not awaited)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def send(self, name: str, data: dict[str, Any]) -> None:
        """Fire a trigger. Safe to call from any thread."""
        if self._loop is None:
            self._pending.append((name, data))
            return
        self._loop.call_soon_threadsafe(self._spawn, name, data)

    def schedule_at(
        self, when: datetime, name: str, data: dict[str, Any], key: str | None = None
    ) -> None:
        """Fire a trigger at ``when`` (immediately if already past)."""
        if self._loop is None:
            raise RuntimeError("Task queue is not started")
        delay = max(0.0, (when - self._clock()).total_seconds())
        self._loop.call_soon_threadsafe(self._arm, delay, name, data, key)

    def _arm(self, delay: float, name: str, data: dict[str, Any], key: str | None) -> None:
        if key is not None:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
        handle = self._loop.call_later(delay, self._fire_timer, name, data, key)
        if key is not None:
            self._timers[key] = handle
        logger.debug("Armed %s in %.1fs (key=%s)", name, delay, key)

    def _fire_timer(self, name: str, data: dict[str, Any], key: str | None) -> None:
        if key is not None:
            self._timers.pop(key, None)
        self._spawn(name, data)

    def _spawn(self, name: str, data: dict[str, Any]) -> None:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("No handler registered for trigger %s", name)
            return
        task = asyncio.create_task(self._run(name, handler, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, name: str, handler: Handler, data: dict[str, Any]) -> None:
        try:
            await handler(data)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler for %s failed (data=%s)", name, data)


class RecordingTaskQueue:
    """Queue double that records triggers instead of running them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.scheduled: list[tuple[datetime, str, dict[str, Any], str | None]] = []
        self.handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def send(self, name: str, data: dict[str, Any]) -> None:
        self.sent.append((name, data))

    def schedule_at(
        self, when: datetime, name: str, data: dict[str, Any], key: str | None = None
    ) -> None:
        self.scheduled.append((when, name, data, key))

    def sent_named(self, name: str) -> list[dict[str, Any]]:
        return [data for sent_name, data in self.sent if sent_name == name]

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None
