"""Durability queue: persisted per-provider FIFO of deferred requests.

Requests that cannot be serviced right now (offline, quota exhausted, provider
429) are written to ``queue:{provider}:{item_id}`` and replayed in enqueue
order once conditions allow. Replay goes through a handler registry so the
queue never needs to understand payloads; the gateway registers
``gateway.call``, which re-enters the full admission + breaker path.

Lifecycle of an item:
  enqueue → dequeue_next → ack                 (dispatched, removed)
                         → nack                (attempts += 1, back to head)
                         → nack at max_attempts (dead-lettered)
                         → requeue             (deferred, attempts unchanged)

Nothing is ever dropped silently: exhausted, unhandled and evicted items all
land in ``deadletter:{provider}:{item_id}`` with a ``final_error``.

Overflow policy (explicit, set at construction):
  - evict_oldest: the globally oldest pending item is dead-lettered with
    final_error="evicted: queue full" to make room
  - reject_new:   enqueue raises QueueFullError
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from wellness_ai.core.metrics import QUEUE_EVENTS
from wellness_ai.core.sentry import capture_gateway_event
from wellness_ai.gateway.clock import Clock
from wellness_ai.gateway.errors import GatewayError, QueueFullError
from wellness_ai.gateway.types import DeadLetterEntry, QueuedItem, RequestDescriptor
from wellness_ai.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "queue:"
DEAD_LETTER_PREFIX = "deadletter:"
DEFAULT_HANDLER = "gateway.call"

Handler = Callable[[QueuedItem], Awaitable[None]]


class OverflowPolicy(str, Enum):
    EVICT_OLDEST = "evict_oldest"
    REJECT_NEW = "reject_new"


class ReplayDeferred(Exception):
    """Raised by a handler when the item cannot be dispatched yet.

    The item goes back to the head of its provider queue without consuming an
    attempt, and draining for that provider stops.
    """

    def __init__(self, reason: str, retry_after: float | None = None):
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after


@dataclass
class DrainReport:
    provider_id: str
    dispatched: int = 0
    failed: int = 0
    dead_lettered: int = 0
    deferred: bool = False
    retry_after: float | None = None
    skipped: bool = False  # another worker was already draining this provider


class DurabilityQueue:
    """Persisted FIFO queue, one lane per provider.

    Usage:
        queue = DurabilityQueue(store, clock, max_size=100)
        queue.register_handler("gateway.call", replay)
        await queue.load()

        item_id = await queue.enqueue(descriptor)
        reports = await queue.drain_all()
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        max_size: int = 100,
        overflow_policy: OverflowPolicy | str = OverflowPolicy.EVICT_OLDEST,
        retry_delay: float = 5.0,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._store = store
        self._clock = clock
        self.max_size = max_size
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self.retry_delay = retry_delay

        self._pending: dict[str, deque[QueuedItem]] = {}
        self._in_flight: dict[str, QueuedItem] = {}
        self._handlers: dict[str, Handler] = {}
        self._lock = asyncio.Lock()
        self._drain_locks: dict[str, asyncio.Lock] = {}
        self._sequence = 0

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def _queue_key(item: QueuedItem) -> str:
        return f"{QUEUE_PREFIX}{item.provider_id}:{item.id}"

    @staticmethod
    def _dead_letter_key(item: QueuedItem) -> str:
        return f"{DEAD_LETTER_PREFIX}{item.provider_id}:{item.id}"

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, name: str, handler: Handler) -> None:
        """Register the executor that replays items of a given handler name."""
        self._handlers[name] = handler

    # ------------------------------------------------------------------
    # Loading & introspection
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Rebuild the in-memory index from the store (cold start). Returns item count."""
        rows = await self._store.scan(QUEUE_PREFIX)
        items: list[QueuedItem] = []
        for key, data in rows:
            try:
                items.append(QueuedItem.from_dict(data))
            except (KeyError, ValueError):
                logger.error("Unreadable queue record %s left in place", key)

        items.sort(key=lambda i: (i.enqueued_at, i.sequence))
        async with self._lock:
            self._pending = {}
            self._in_flight = {}
            for item in items:
                self._pending.setdefault(item.provider_id, deque()).append(item)
            self._sequence = max((i.sequence for i in items), default=0)

        if items:
            logger.info("Loaded %d queued requests from store", len(items))
        return len(items)

    def size(self, provider_id: str | None = None) -> int:
        if provider_id is not None:
            pending = len(self._pending.get(provider_id, ()))
            in_flight = sum(1 for i in self._in_flight.values() if i.provider_id == provider_id)
            return pending + in_flight
        return sum(len(q) for q in self._pending.values()) + len(self._in_flight)

    def providers_with_pending(self) -> list[str]:
        return [p for p, q in self._pending.items() if q]

    def find(self, item_id: str) -> QueuedItem | None:
        if item_id in self._in_flight:
            return self._in_flight[item_id]
        for lane in self._pending.values():
            for item in lane:
                if item.id == item_id:
                    return item
        return None

    def list_items(self, provider_id: str | None = None) -> list[dict]:
        lanes = [provider_id] if provider_id else list(self._pending)
        return [
            {
                "id": item.id,
                "provider": item.provider_id,
                "fingerprint": item.request.fingerprint,
                "enqueued_at": item.enqueued_at,
                "attempts": item.attempts,
                "handler": item.handler,
            }
            for lane in lanes
            for item in self._pending.get(lane, ())
        ]

    def get_stats(self) -> dict:
        return {
            "total": self.size(),
            "max_size": self.max_size,
            "overflow_policy": self.overflow_policy.value,
            "in_flight": len(self._in_flight),
            "by_provider": {p: len(q) for p, q in self._pending.items()},
        }

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def _find_duplicate(self, request: RequestDescriptor) -> QueuedItem | None:
        candidates = list(self._pending.get(request.provider_id, ())) + list(self._in_flight.values())
        for item in candidates:
            if item.provider_id == request.provider_id and item.request.fingerprint == request.fingerprint:
                return item
        return None

    async def enqueue(self, request: RequestDescriptor, handler: str = DEFAULT_HANDLER) -> str:
        """Persist a request for later replay. Returns the item id.

        An identical request (same provider + fingerprint) already queued is
        not stored twice; its id is returned instead.
        """
        async with self._lock:
            duplicate = self._find_duplicate(request)
            if duplicate is not None:
                logger.debug("Request %s already queued as %s", request.fingerprint[:12], duplicate.id)
                return duplicate.id

            if self.size() >= self.max_size:
                if self.overflow_policy == OverflowPolicy.REJECT_NEW:
                    QUEUE_EVENTS.labels(provider=request.provider_id, event="rejected").inc()
                    raise QueueFullError(f"Durability queue full ({self.max_size} items)", request.provider_id)
                await self._evict_oldest_locked()

            self._sequence += 1
            item = QueuedItem(
                request=request,
                enqueued_at=self._clock.now(),
                handler=handler,
                sequence=self._sequence,
            )
            await self._store.set(self._queue_key(item), item.to_dict())
            self._pending.setdefault(item.provider_id, deque()).append(item)

        QUEUE_EVENTS.labels(provider=item.provider_id, event="enqueued").inc()
        logger.info("Enqueued request %s for %s (priority=%s)", item.id, item.provider_id, request.priority.name)
        return item.id

    async def _evict_oldest_locked(self) -> None:
        heads = [lane[0] for lane in self._pending.values() if lane]
        if not heads:
            raise QueueFullError(f"Durability queue full ({self.max_size} items in flight)")
        oldest = min(heads, key=lambda i: (i.enqueued_at, i.sequence))
        self._pending[oldest.provider_id].popleft()
        await self._dead_letter_locked(oldest, "evicted: queue full", event="evicted")

    async def _dead_letter_locked(self, item: QueuedItem, final_error: str, event: str = "dead_lettered") -> None:
        entry = DeadLetterEntry(item=item, final_error=final_error, dead_lettered_at=self._clock.now())
        await self._store.set(self._dead_letter_key(item), entry.to_dict())
        await self._store.delete(self._queue_key(item))

        QUEUE_EVENTS.labels(provider=item.provider_id, event=event).inc()
        logger.warning(
            "Request %s for %s sent to dead letter after %d attempts: %s",
            item.id,
            item.provider_id,
            item.attempts,
            final_error,
        )
        capture_gateway_event(
            f"Queued request dead-lettered: {final_error}",
            provider=item.provider_id,
            item_id=item.id,
        )

    async def dequeue_next(self, provider_id: str) -> QueuedItem | None:
        """Take the oldest pending item for a provider (it stays persisted until ack)."""
        async with self._lock:
            lane = self._pending.get(provider_id)
            if not lane:
                return None
            item = lane.popleft()
            self._in_flight[item.id] = item
            return item

    async def ack(self, item_id: str) -> bool:
        """Dispatch succeeded: remove the item for good."""
        async with self._lock:
            item = self._in_flight.pop(item_id, None)
            if item is None:
                return False
            await self._store.delete(self._queue_key(item))
        QUEUE_EVENTS.labels(provider=item.provider_id, event="acked").inc()
        logger.info("Replayed request %s for %s", item.id, item.provider_id)
        return True

    async def nack(self, item_id: str, error: str = "") -> bool:
        """Dispatch failed. Returns True if the item was dead-lettered."""
        async with self._lock:
            item = self._in_flight.pop(item_id, None)
            if item is None:
                return False

            item.attempts += 1
            if item.attempts >= item.request.max_attempts:
                await self._dead_letter_locked(item, error or "max attempts exceeded")
                return True

            await self._store.set(self._queue_key(item), item.to_dict())
            self._pending.setdefault(item.provider_id, deque()).appendleft(item)

        QUEUE_EVENTS.labels(provider=item.provider_id, event="nacked").inc()
        logger.info(
            "Replay of %s failed (attempt %d/%d): %s",
            item.id,
            item.attempts,
            item.request.max_attempts,
            error,
        )
        return False

    async def requeue(self, item_id: str) -> bool:
        """Put an in-flight item back at the head without counting an attempt."""
        async with self._lock:
            item = self._in_flight.pop(item_id, None)
            if item is None:
                return False
            self._pending.setdefault(item.provider_id, deque()).appendleft(item)
        QUEUE_EVENTS.labels(provider=item.provider_id, event="deferred").inc()
        return True

    async def dead_letter(self, item_id: str, final_error: str) -> bool:
        """Dead-letter an in-flight item immediately (non-retryable failure)."""
        async with self._lock:
            item = self._in_flight.pop(item_id, None)
            if item is None:
                return False
            await self._dead_letter_locked(item, final_error)
        return True

    async def remove(self, item_id: str) -> bool:
        """Cancel a pending item. No side effects beyond deleting it."""
        async with self._lock:
            for lane in self._pending.values():
                for item in lane:
                    if item.id == item_id:
                        lane.remove(item)
                        await self._store.delete(self._queue_key(item))
                        QUEUE_EVENTS.labels(provider=item.provider_id, event="removed").inc()
                        logger.info("Removed queued request %s", item_id)
                        return True
        return False

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    async def dead_letters(self, provider_id: str | None = None) -> list[DeadLetterEntry]:
        prefix = f"{DEAD_LETTER_PREFIX}{provider_id}:" if provider_id else DEAD_LETTER_PREFIX
        entries = [DeadLetterEntry.from_dict(data) for _, data in await self._store.scan(prefix)]
        entries.sort(key=lambda e: (e.dead_lettered_at, e.item.sequence))
        return entries

    async def clear_dead_letters(self, provider_id: str | None = None) -> int:
        """Clear dead letter records. Returns count of cleared entries."""
        prefix = f"{DEAD_LETTER_PREFIX}{provider_id}:" if provider_id else DEAD_LETTER_PREFIX
        rows = await self._store.scan(prefix)
        for key, _ in rows:
            await self._store.delete(key)
        return len(rows)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def _drain_lock(self, provider_id: str) -> asyncio.Lock:
        if provider_id not in self._drain_locks:
            self._drain_locks[provider_id] = asyncio.Lock()
        return self._drain_locks[provider_id]

    async def drain(
        self,
        provider_id: str,
        should_continue: Callable[[], bool] | None = None,
    ) -> DrainReport:
        """Replay a provider's items in FIFO order with a single sequential worker."""
        report = DrainReport(provider_id=provider_id)
        lock = self._drain_lock(provider_id)
        if lock.locked():
            report.skipped = True
            return report

        async with lock:
            while True:
                if should_continue is not None and not should_continue():
                    report.deferred = True
                    break

                item = await self.dequeue_next(provider_id)
                if item is None:
                    break

                handler = self._handlers.get(item.handler)
                if handler is None:
                    await self.dead_letter(item.id, f"no handler registered: {item.handler}")
                    report.dead_lettered += 1
                    continue

                try:
                    await handler(item)
                except ReplayDeferred as exc:
                    await self.requeue(item.id)
                    report.deferred = True
                    report.retry_after = exc.retry_after
                    logger.info("Drain of %s deferred: %s", provider_id, exc.reason)
                    break
                except asyncio.CancelledError:
                    await self.requeue(item.id)
                    raise
                except GatewayError as exc:
                    if not exc.retryable:
                        await self.dead_letter(item.id, f"{exc.kind.value}: {exc.message}")
                        report.dead_lettered += 1
                        continue
                    await self._handle_failure(item, str(exc) or exc.kind.value, report)
                except Exception as exc:
                    logger.exception("Replay handler %s crashed on %s", item.handler, item.id)
                    await self._handle_failure(item, f"{type(exc).__name__}: {exc}", report)
                else:
                    await self.ack(item.id)
                    report.dispatched += 1

        if report.dispatched or report.failed or report.dead_lettered:
            logger.info(
                "Drained %s: dispatched=%d failed=%d dead_lettered=%d deferred=%s",
                provider_id,
                report.dispatched,
                report.failed,
                report.dead_lettered,
                report.deferred,
            )
        return report

    async def _handle_failure(self, item: QueuedItem, error: str, report: DrainReport) -> None:
        if await self.nack(item.id, error):
            report.dead_lettered += 1
        else:
            report.failed += 1
            await self._clock.sleep(self.retry_delay)

    async def drain_all(self, should_continue: Callable[[], bool] | None = None) -> list[DrainReport]:
        """Drain every provider lane in parallel (FIFO within each lane)."""
        providers = self.providers_with_pending()
        if not providers:
            return []
        return list(await asyncio.gather(*(self.drain(p, should_continue) for p in providers)))
