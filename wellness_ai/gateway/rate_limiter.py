"""Admission Controller: per-provider per-minute and per-day quotas.

Each provider has two fixed windows (60 s and 24 h). A window rolls over once
``now - window_start`` reaches its length. Counters live in the durable store
(``ratelimit:{provider}:minute|day``) so restarting the process cannot be used
to evade quota.

Decisions:
  - Allowed   → both counters incremented (and persisted) atomically
  - Wait(d)   → interactive caller, slot frees within the wait ceiling
  - Rejected  → anything else; the orchestrator hands the request to the
                durability queue

Callers that accepted a Wait register as waiters. Free slots are handed out in
(priority, arrival) order: a caller is admitted only while the number of free
slots exceeds the number of waiters queued ahead of it.

Single-writer: every read/mutation of a provider's windows happens under that
provider's asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from heapq import heapify, heappush
from typing import Union

from wellness_ai.core.metrics import ADMISSION_DECISIONS
from wellness_ai.gateway.cancellation import CancelToken, run_cancellable
from wellness_ai.gateway.clock import Clock
from wellness_ai.gateway.types import ProviderConfig, QuotaWindow, RequestPriority
from wellness_ai.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

MINUTE = 60.0
DAY = 86_400.0
DEFAULT_WAIT_CEILING = 2.0


@dataclass(frozen=True)
class Allowed:
    decision = "allowed"


@dataclass(frozen=True)
class Wait:
    duration: float
    decision = "wait"


@dataclass(frozen=True)
class Rejected:
    retry_after: float
    reason: str = ""
    decision = "rejected"


Admission = Union[Allowed, Wait, Rejected]


@dataclass(order=True)
class _Waiter:
    """Heap entry for a caller waiting on a slot."""

    priority: int
    sequence: int  # FIFO within the same priority


@dataclass
class _ProviderQuota:
    config: ProviderConfig
    minute: QuotaWindow
    day: QuotaWindow
    waiters: list[_Waiter] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    loaded: bool = False


class AdmissionController:
    """Per-provider quota enforcement.

    Usage:
        limiter = AdmissionController(store, clock, configs)

        decision = await limiter.admit("gemini", RequestPriority.INTERACTIVE)
        if isinstance(decision, Wait):
            decision = await limiter.wait_and_admit("gemini", priority, decision.duration, token)
        if not isinstance(decision, Allowed):
            ...  # enqueue for later
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        configs: dict[str, ProviderConfig] | None = None,
        interactive_wait_ceiling: float = DEFAULT_WAIT_CEILING,
    ):
        self._store = store
        self._clock = clock
        self.interactive_wait_ceiling = interactive_wait_ceiling
        self._sequence = 0
        self._quotas: dict[str, _ProviderQuota] = {}
        for provider_id, config in (configs or {}).items():
            self._quotas[provider_id] = self._new_quota(config)

    @staticmethod
    def _new_quota(config: ProviderConfig) -> _ProviderQuota:
        return _ProviderQuota(
            config=config,
            minute=QuotaWindow(config.provider_id, "minute", MINUTE, config.rpm_limit),
            day=QuotaWindow(config.provider_id, "day", DAY, config.rpd_limit),
        )

    def _get_quota(self, provider_id: str) -> _ProviderQuota:
        """Get or create the quota state for a provider."""
        if provider_id not in self._quotas:
            self._quotas[provider_id] = self._new_quota(ProviderConfig(provider_id=provider_id))
        return self._quotas[provider_id]

    @staticmethod
    def _window_key(window: QuotaWindow) -> str:
        return f"ratelimit:{window.provider_id}:{window.kind}"

    async def _load(self, quota: _ProviderQuota) -> None:
        if quota.loaded:
            return
        for window in (quota.minute, quota.day):
            data = await self._store.get(self._window_key(window))
            if data:
                window.window_start = float(data.get("window_start", 0.0))
                window.count = int(data.get("count", 0))
        quota.loaded = True

    async def load_all(self) -> None:
        """Restore persisted counters for every configured provider."""
        for quota in self._quotas.values():
            async with quota.lock:
                await self._load(quota)

    @staticmethod
    def _waiters_ahead(quota: _ProviderQuota, priority: int, ticket: _Waiter | None) -> int:
        if ticket is None:
            # A fresh caller queues behind every waiter of equal or higher priority
            return sum(1 for w in quota.waiters if w.priority <= priority)
        return sum(1 for w in quota.waiters if w < ticket)

    async def _decide(self, quota: _ProviderQuota, priority: RequestPriority, ticket: _Waiter | None) -> Admission:
        now = self._clock.now()
        quota.minute.roll(now)
        quota.day.roll(now)

        ahead = self._waiters_ahead(quota, priority.value, ticket)
        free = min(quota.minute.remaining, quota.day.remaining)

        if free > ahead:
            quota.minute.count += 1
            quota.day.count += 1
            await self._store.set(self._window_key(quota.minute), quota.minute.to_dict())
            await self._store.set(self._window_key(quota.day), quota.day.to_dict())
            return Allowed()

        blocking = [w for w in (quota.minute, quota.day) if w.remaining <= ahead]
        if not blocking:
            blocking = [quota.minute]
        wait = max(w.resets_in(now) for w in blocking)
        reason = "daily quota exhausted" if quota.day in blocking else "minute quota exhausted"

        if priority == RequestPriority.INTERACTIVE and wait <= self.interactive_wait_ceiling:
            return Wait(duration=wait)
        return Rejected(retry_after=wait, reason=reason)

    def _record(self, provider_id: str, decision: Admission) -> None:
        ADMISSION_DECISIONS.labels(provider=provider_id, decision=decision.decision).inc()
        if not isinstance(decision, Allowed):
            logger.info("Admission for %s: %s", provider_id, decision)

    async def admit(self, provider_id: str, priority: RequestPriority = RequestPriority.INTERACTIVE) -> Admission:
        """Decide whether a new call may proceed now."""
        quota = self._get_quota(provider_id)
        async with quota.lock:
            await self._load(quota)
            decision = await self._decide(quota, priority, ticket=None)
        self._record(provider_id, decision)
        return decision

    async def wait_and_admit(
        self,
        provider_id: str,
        priority: RequestPriority,
        duration: float,
        cancel_token: CancelToken | None = None,
    ) -> Admission:
        """Hold a waiter slot for ``duration`` then decide once more.

        Cancellation removes the waiter without consuming quota
        (raises RequestCancelledError).
        """
        quota = self._get_quota(provider_id)
        async with quota.lock:
            self._sequence += 1
            ticket = _Waiter(priority=priority.value, sequence=self._sequence)
            heappush(quota.waiters, ticket)

        try:
            await run_cancellable(self._clock.sleep(duration), cancel_token, provider_id=provider_id)
            async with quota.lock:
                await self._load(quota)
                decision = await self._decide(quota, priority, ticket)
        finally:
            quota.waiters.remove(ticket)
            heapify(quota.waiters)

        self._record(provider_id, decision)
        return decision

    async def reset(self, provider_id: str) -> None:
        """Zero both windows for a provider (manual override)."""
        quota = self._get_quota(provider_id)
        async with quota.lock:
            now = self._clock.now()
            for window in (quota.minute, quota.day):
                window.window_start = now
                window.count = 0
                await self._store.set(self._window_key(window), window.to_dict())
            quota.loaded = True
        logger.info("Quota windows for %s manually RESET", provider_id)

    def get_stats(self, provider_id: str) -> dict:
        """Current usage for a provider (as of the last admit/load)."""
        quota = self._get_quota(provider_id)
        now = self._clock.now()
        minute_live = now - quota.minute.window_start < quota.minute.length
        day_live = now - quota.day.window_start < quota.day.length
        minute_count = quota.minute.count if minute_live else 0
        day_count = quota.day.count if day_live else 0
        return {
            "provider": provider_id,
            "minute_count": minute_count,
            "minute_limit": quota.minute.limit,
            "minute_remaining": max(quota.minute.limit - minute_count, 0),
            "minute_resets_in": quota.minute.resets_in(now) if minute_live else 0.0,
            "day_count": day_count,
            "day_limit": quota.day.limit,
            "day_remaining": max(quota.day.limit - day_count, 0),
            "day_resets_in": quota.day.resets_in(now) if day_live else 0.0,
            "waiters": len(quota.waiters),
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(p) for p in self._quotas]
