"""Resilient Gateway: orchestrator integrating all gateway components.

Main entry point for calls to external providers:
  1. Fingerprints the request (provider + payload + result-affecting options)
  2. Serves cache hits without touching the provider
  3. Queues the request while offline
  4. Fails fast on an OPEN circuit, then checks per-minute/per-day quota
  5. Gates the call on the circuit breaker and invokes the adapter with a timeout
  6. Validates and caches successful responses
  7. Retries transient failures with exponential backoff; routes provider 429s
     and quota rejections to the durability queue

Queued requests are replayed by the ``gateway.call`` handler, which runs the
same admission + breaker path, when connectivity returns or a quota window
rolls over.

Usage:
    gateway = build_gateway(settings)
    await gateway.start()

    result = await gateway.call("gemini", payload, {"temperature": 0.2}, fallback=b"...")
    if isinstance(result, Success):
        ...

    await gateway.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Mapping
from typing import Any

import pydantic
from pydantic import BaseModel

from wellness_ai.core.config import Settings
from wellness_ai.core.metrics import GATEWAY_CALLS, PROVIDER_LATENCY
from wellness_ai.gateway.adapters import ProviderAdapter, get_adapter
from wellness_ai.gateway.cache import DEFAULT_TTL, MEMORY_MAX_ENTRIES, ResponseCache
from wellness_ai.gateway.cancellation import CancelToken, run_cancellable
from wellness_ai.gateway.circuit_breaker import CircuitBreakerRegistry
from wellness_ai.gateway.clock import Clock, SystemClock
from wellness_ai.gateway.connectivity import ConnectivityMonitor
from wellness_ai.gateway.durability_queue import (
    DEFAULT_HANDLER,
    DrainReport,
    DurabilityQueue,
    OverflowPolicy,
    ReplayDeferred,
)
from wellness_ai.gateway.errors import (
    CircuitOpenError,
    GatewayError,
    QueueFullError,
    QuotaExceededError,
    RequestCancelledError,
    ResponseValidationError,
    classify_error,
)
from wellness_ai.gateway.fingerprint import fingerprint
from wellness_ai.gateway.rate_limiter import DEFAULT_WAIT_CEILING, AdmissionController, Allowed, Rejected, Wait
from wellness_ai.gateway.retry import RetryPolicy
from wellness_ai.gateway.types import (
    DegradedFallback,
    Error,
    ErrorKind,
    GatewayResult,
    ProviderConfig,
    QueuedItem,
    Queued,
    RequestDescriptor,
    RequestPriority,
    Success,
)
from wellness_ai.storage.kv import KeyValueStore, build_store

logger = logging.getLogger(__name__)

REPLAY_HANDLER = DEFAULT_HANDLER

# Replay leaves retries to the queue (nack + retry_delay) instead of backing off inline
_NO_INLINE_RETRY = RetryPolicy(max_retries=0)


class ResilientGateway:
    """Main gateway orchestrator.

    Integrates:
      - ResponseCache: fingerprint-keyed results, memory LRU over the store
      - AdmissionController: per-provider RPM/RPD with priority waiters
      - CircuitBreakerRegistry: per-provider failure isolation
      - DurabilityQueue: persisted replay of deferred requests
      - ConnectivityMonitor: online/offline flag driving replay
      - ProviderAdapters: protocol-specific HTTP calls
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        store: KeyValueStore,
        clock: Clock | None = None,
        provider_configs: Mapping[str, ProviderConfig] | None = None,
        retry_policy: RetryPolicy | None = None,
        connectivity: ConnectivityMonitor | None = None,
        cache_default_ttl: float = DEFAULT_TTL,
        cache_memory_max_entries: int = MEMORY_MAX_ENTRIES,
        queue_max_size: int = 100,
        queue_overflow_policy: OverflowPolicy | str = OverflowPolicy.EVICT_OLDEST,
        queue_retry_delay: float = 5.0,
        interactive_wait_ceiling: float = DEFAULT_WAIT_CEILING,
        probe_interval: float | None = None,
    ):
        """
        Args:
            adapters: Mapping of provider id → adapter; only these providers are callable
            store: Durable key-value store shared by cache, quota, breaker and queue
            provider_configs: Per-provider quotas, timeouts and breaker thresholds
            probe_interval: Connectivity polling interval; None disables polling
        """
        self.clock = clock or SystemClock()
        self.store = store
        self.adapters = dict(adapters)
        configs = dict(provider_configs or {})
        self.configs = {pid: configs.get(pid) or ProviderConfig(provider_id=pid) for pid in self.adapters}
        self.retry_policy = retry_policy or RetryPolicy()
        self.probe_interval = probe_interval

        self.cache = ResponseCache(store, self.clock, cache_default_ttl, cache_memory_max_entries)
        self.admission = AdmissionController(store, self.clock, self.configs, interactive_wait_ceiling)
        self.breakers = CircuitBreakerRegistry(store, self.clock, self.configs)
        self.queue = DurabilityQueue(
            store,
            self.clock,
            max_size=queue_max_size,
            overflow_policy=queue_overflow_policy,
            retry_delay=queue_retry_delay,
        )
        self.queue.register_handler(REPLAY_HANDLER, self._replay)

        self.connectivity = connectivity or ConnectivityMonitor(self.clock)
        self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity_change)

        self._in_flight: dict[str, asyncio.Future] = {}
        self._queued_callers: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._delayed_drains: dict[str, asyncio.Task] = {}
        self._probe_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the store, restore persisted state and resume replay."""
        await self.store.init()
        await self.admission.load_all()
        await self.breakers.load_all()
        restored = await self.queue.load()

        if self.probe_interval:
            self._probe_task = asyncio.ensure_future(self.connectivity.run(self.probe_interval))
        if restored and self.connectivity.is_online:
            self._spawn(self.drain_queue())
        logger.info("Gateway started with providers: %s", ", ".join(sorted(self.adapters)) or "none")

    async def aclose(self) -> None:
        self._unsubscribe_connectivity()
        tasks = list(self._tasks)
        if self._probe_task is not None:
            tasks.append(self._probe_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.connectivity.aclose()
        await self.store.close()
        logger.info("Gateway closed")

    def _spawn(self, aw: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(aw)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Gateway background task failed", exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait for background drains and queue removals to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Public call
    # ------------------------------------------------------------------

    async def call(
        self,
        provider_id: str,
        payload: bytes,
        options: Mapping[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.INTERACTIVE,
        *,
        fallback: bytes | None = None,
        cache_ttl: float | None = None,
        cancel_token: CancelToken | None = None,
        response_model: type[BaseModel] | None = None,
    ) -> GatewayResult:
        """Run one request through the full resilience pipeline. Never raises for provider conditions."""
        options = dict(options or {})
        if cache_ttl is None and options.get("cache_ttl") is not None:
            cache_ttl = float(options["cache_ttl"])
        if cache_ttl is not None and cache_ttl < 0:
            raise ValueError(f"cache_ttl must be >= 0, got {cache_ttl}")

        if provider_id not in self.adapters:
            return self._finish(provider_id, Error(ErrorKind.UNKNOWN_PROVIDER, f"No adapter for provider: {provider_id}"))
        if cancel_token is not None and cancel_token.cancelled:
            return self._finish(provider_id, Error(ErrorKind.CANCELLED, cancel_token.reason))

        fp = fingerprint(provider_id, payload, options)

        cached = await self.cache.get(fp)
        if cached is not None:
            return self._finish(provider_id, Success(cached, fp, cached=True))

        # Identical calls already in flight share the leader's provider invocation
        while (leader := self._in_flight.get(fp)) is not None:
            try:
                result = await run_cancellable(asyncio.shield(leader), cancel_token, provider_id=provider_id)
            except RequestCancelledError as exc:
                return self._finish(provider_id, Error(ErrorKind.CANCELLED, exc.message))
            if not (isinstance(result, Error) and result.kind == ErrorKind.CANCELLED):
                return self._finish(provider_id, self._with_fallback(result, fallback))

        if cache_ttl is not None:
            options["cache_ttl"] = cache_ttl
        config = self.configs[provider_id]
        request = RequestDescriptor(
            fingerprint=fp,
            provider_id=provider_id,
            payload=payload,
            priority=RequestPriority(priority),
            options=options,
            created_at=self.clock.now(),
            max_attempts=config.max_attempts,
        )

        # Followers get the raw result and apply their own fallback
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[fp] = future
        try:
            result = await self._execute(request, cache_ttl, cancel_token, response_model)
        except asyncio.CancelledError:
            future.set_result(Error(ErrorKind.CANCELLED, "caller task cancelled"))
            raise
        except Exception as exc:
            logger.exception("Unexpected gateway failure for %s", provider_id, extra={"provider_id": provider_id})
            result = Error(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")
            future.set_result(result)
        else:
            future.set_result(result)
        finally:
            if self._in_flight.get(fp) is future:
                del self._in_flight[fp]

        return self._finish(provider_id, self._with_fallback(result, fallback))

    def _finish(self, provider_id: str, result: GatewayResult) -> GatewayResult:
        GATEWAY_CALLS.labels(provider=provider_id, outcome=result.outcome.value).inc()
        return result

    @staticmethod
    def _with_fallback(result: GatewayResult, fallback: bytes | None) -> GatewayResult:
        """Substitute the caller's fallback for a terminal error (not for cancellation)."""
        if fallback is not None and isinstance(result, Error) and result.kind not in (
            ErrorKind.CANCELLED,
            ErrorKind.QUEUE_FULL,
        ):
            return DegradedFallback(fallback, result.kind)
        return result

    async def _execute(
        self,
        request: RequestDescriptor,
        cache_ttl: float | None,
        cancel_token: CancelToken | None,
        response_model: type[BaseModel] | None,
    ) -> GatewayResult:
        provider_id = request.provider_id
        try:
            value = await self._dispatch(request, cache_ttl, cancel_token, response_model, self.retry_policy)
        except ReplayDeferred as deferred:
            return await self._enqueue(request, deferred, cancel_token)
        except RequestCancelledError as exc:
            return Error(ErrorKind.CANCELLED, exc.message)
        except CircuitOpenError as exc:
            logger.info("Call to %s short-circuited: circuit open", provider_id, extra={"provider_id": provider_id})
            return Error(ErrorKind.CIRCUIT_OPEN, exc.message, retry_at=exc.retry_at)
        except GatewayError as exc:
            logger.warning(
                "Call to %s failed: %s (%s)",
                provider_id,
                exc.kind.value,
                exc.message,
                extra={"provider_id": provider_id, "fingerprint": request.fingerprint},
            )
            return Error(exc.kind, exc.message)
        return Success(value, request.fingerprint)

    async def _enqueue(
        self,
        request: RequestDescriptor,
        deferred: ReplayDeferred,
        cancel_token: CancelToken | None,
    ) -> GatewayResult:
        try:
            item_id = await self.queue.enqueue(request, REPLAY_HANDLER)
        except QueueFullError as exc:
            return Error(ErrorKind.QUEUE_FULL, exc.message)

        # Duplicate enqueues share one item; it is removed only when every waiting caller cancelled
        self._queued_callers[item_id] = self._queued_callers.get(item_id, 0) + 1
        if cancel_token is not None:
            cancel_token.on_cancel(lambda: self._release_queued(item_id))
        if deferred.retry_after is not None and self.connectivity.is_online:
            self._schedule_drain(request.provider_id, deferred.retry_after)
        return Queued(item_id, deferred.reason)

    def _release_queued(self, item_id: str) -> None:
        remaining = self._queued_callers.get(item_id, 0) - 1
        if remaining > 0:
            self._queued_callers[item_id] = remaining
            return
        self._queued_callers.pop(item_id, None)
        self._spawn(self.queue.remove(item_id))

    # ------------------------------------------------------------------
    # Shared dispatch path (live calls and replay)
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        request: RequestDescriptor,
        cache_ttl: float | None,
        cancel_token: CancelToken | None,
        response_model: type[BaseModel] | None,
        retry_policy: RetryPolicy,
    ) -> bytes:
        """connectivity → breaker → admission → breaker gate → adapter → cache.

        Raises ReplayDeferred when the request should wait in the queue, and
        GatewayError subclasses for terminal failures.
        """
        provider_id = request.provider_id
        breaker = self.breakers.get(provider_id)
        retries_done = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(provider_id)
            if not self.connectivity.is_online:
                raise ReplayDeferred("offline")

            # An OPEN circuit must not spend quota
            await breaker.check()

            decision = await self.admission.admit(provider_id, request.priority)
            if isinstance(decision, Wait):
                decision = await self.admission.wait_and_admit(
                    provider_id, request.priority, decision.duration, cancel_token
                )
            if not isinstance(decision, Allowed):
                retry_after = decision.retry_after if isinstance(decision, Rejected) else decision.duration
                reason = decision.reason if isinstance(decision, Rejected) else "quota wait exceeded"
                raise ReplayDeferred(f"quota: {reason}", retry_after)

            await breaker.before_call()
            request.attempts += 1
            try:
                value = await self._invoke(request, cancel_token, response_model)
            except GatewayError as exc:
                if exc.trips_breaker:
                    await breaker.record_failure()
                else:
                    await breaker.abandon()

                if isinstance(exc, QuotaExceededError):
                    raise ReplayDeferred("provider quota exceeded", exc.retry_after) from exc
                if not retry_policy.should_retry(exc, retries_done):
                    raise

                delay = retry_policy.delay_for(retries_done)
                retries_done += 1
                logger.info(
                    "Retrying %s request %s (retry %d/%d) in %.1fs: %s",
                    provider_id,
                    request.fingerprint[:12],
                    retries_done,
                    retry_policy.max_retries,
                    delay,
                    exc.kind.value,
                )
                await run_cancellable(self.clock.sleep(delay), cancel_token, provider_id=provider_id)
                continue
            except asyncio.CancelledError:
                # Task cancelled mid-call: give back the HALF_OPEN trial slot
                await breaker.abandon()
                raise

            await breaker.record_success()
            await self.cache.set(request.fingerprint, value, cache_ttl)
            return value

    async def _invoke(
        self,
        request: RequestDescriptor,
        cancel_token: CancelToken | None,
        response_model: type[BaseModel] | None,
    ) -> bytes:
        provider_id = request.provider_id
        adapter = self.adapters[provider_id]
        timeout = float(request.options.get("timeout") or self.configs[provider_id].timeout_seconds)

        start = time.monotonic()
        try:
            raw = await run_cancellable(
                adapter.invoke(request.payload, request.options, timeout, cancel_token),
                cancel_token,
                timeout=timeout,
                provider_id=provider_id,
            )
        except Exception as exc:
            error = classify_error(exc, provider_id)
            if error is exc:
                raise
            if error.kind == ErrorKind.INTERNAL:
                logger.exception("Adapter for %s raised an unexpected error", provider_id)
            raise error from exc
        finally:
            PROVIDER_LATENCY.labels(provider=provider_id).observe(time.monotonic() - start)

        for model in (adapter.result_model, response_model):
            if model is None:
                continue
            try:
                model.model_validate_json(raw)
            except pydantic.ValidationError as exc:
                raise ResponseValidationError(
                    f"Response failed {model.__name__} validation ({exc.error_count()} errors)", provider_id
                ) from exc
        return raw

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def _replay(self, item: QueuedItem) -> None:
        """Queue handler: re-run a deferred request through the live path."""
        request = item.request
        if await self.cache.get(request.fingerprint) is not None:
            return
        if request.provider_id not in self.adapters:
            raise GatewayError(f"No adapter for provider: {request.provider_id}", request.provider_id)

        cache_ttl = request.options.get("cache_ttl")
        try:
            await self._dispatch(
                request,
                float(cache_ttl) if cache_ttl is not None else None,
                None,
                None,
                _NO_INLINE_RETRY,
            )
        except CircuitOpenError as exc:
            retry_after = max(exc.retry_at - self.clock.now(), 0.0) if exc.retry_at else None
            raise ReplayDeferred("circuit open", retry_after) from exc

    async def drain_queue(self) -> list[DrainReport]:
        """Replay every provider lane while connectivity holds."""
        reports = await self.queue.drain_all(should_continue=lambda: self.connectivity.is_online)
        self._follow_up(reports)
        return reports

    async def drain_provider(self, provider_id: str) -> DrainReport:
        report = await self.queue.drain(provider_id, should_continue=lambda: self.connectivity.is_online)
        self._follow_up([report])
        return report

    def _follow_up(self, reports: list[DrainReport]) -> None:
        for item_id in [i for i in self._queued_callers if self.queue.find(i) is None]:
            del self._queued_callers[item_id]
        for report in reports:
            if report.deferred and report.retry_after is not None and self.connectivity.is_online:
                self._schedule_drain(report.provider_id, report.retry_after)

    def _schedule_drain(self, provider_id: str, delay: float) -> None:
        """Drain one provider once ``delay`` has passed (one pending timer per provider)."""
        pending = self._delayed_drains.get(provider_id)
        if pending is not None and not pending.done():
            return

        async def _drain_later() -> None:
            await self.clock.sleep(delay)
            await self.drain_provider(provider_id)

        self._delayed_drains[provider_id] = self._spawn(_drain_later())
        logger.debug("Scheduled drain of %s in %.1fs", provider_id, delay)

    def _on_connectivity_change(self, online: bool) -> None:
        if online and self.queue.size():
            logger.info("Back online, replaying %d queued requests", self.queue.size())
            self._spawn(self.drain_queue())

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def cancel_queued(self, item_id: str) -> bool:
        self._queued_callers.pop(item_id, None)
        return await self.queue.remove(item_id)

    async def reset_circuit(self, provider_id: str) -> None:
        await self.breakers.reset(provider_id)

    async def health_check_all(self) -> dict[str, bool]:
        """Run every adapter's health check concurrently."""
        providers = sorted(self.adapters)
        results = await asyncio.gather(
            *(self.adapters[p].health_check() for p in providers),
            return_exceptions=True,
        )
        health: dict[str, bool] = {}
        for provider_id, outcome in zip(providers, results):
            if isinstance(outcome, BaseException):
                logger.warning("Health check for %s raised: %s", provider_id, outcome)
                health[provider_id] = False
            else:
                health[provider_id] = bool(outcome)
        return health

    async def get_status(self) -> dict:
        """Get comprehensive gateway status."""
        dead_letters = await self.queue.dead_letters()
        return {
            "online": self.connectivity.is_online,
            "providers": sorted(self.adapters),
            "circuits": await self.breakers.get_all_states(),
            "rate_limits": self.admission.get_all_stats(),
            "queue": self.queue.get_stats(),
            "queued_items": self.queue.list_items(),
            "dead_letters": len(dead_letters),
            "cache": self.cache.get_stats(),
            "in_flight": len(self._in_flight),
        }


# ---------------------------------------------------------------------------
# Construction from settings
# ---------------------------------------------------------------------------


def build_provider_configs(settings: Settings) -> dict[str, ProviderConfig]:
    """Per-provider quotas and breaker thresholds from settings."""
    shared = dict(
        timeout_seconds=settings.provider_timeout_seconds,
        failure_threshold=settings.breaker_failure_threshold,
        success_threshold=settings.breaker_success_threshold,
        reset_timeout=settings.breaker_reset_timeout_seconds,
        max_attempts=settings.queue_max_attempts,
    )
    return {
        "gemini": ProviderConfig(
            provider_id="gemini",
            rpm_limit=settings.gemini_rpm_limit,
            rpd_limit=settings.gemini_rpd_limit,
            **shared,
        ),
        "openai": ProviderConfig(
            provider_id="openai",
            rpm_limit=settings.openai_rpm_limit,
            rpd_limit=settings.openai_rpd_limit,
            **shared,
        ),
    }


def build_gateway(settings: Settings) -> ResilientGateway:
    """Build the gateway for every provider that has an API key configured."""
    adapters: dict[str, ProviderAdapter] = {}
    if settings.gemini_api_key:
        adapters["gemini"] = get_adapter(
            "gemini",
            settings.gemini_api_key,
            model=settings.gemini_model,
            default_timeout=settings.provider_timeout_seconds,
        )
    if settings.openai_api_key:
        adapters["openai"] = get_adapter(
            "openai",
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            default_timeout=settings.provider_timeout_seconds,
        )

    clock = SystemClock()
    return ResilientGateway(
        adapters,
        build_store(settings.store_url),
        clock=clock,
        provider_configs=build_provider_configs(settings),
        retry_policy=RetryPolicy(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            factor=settings.retry_factor,
        ),
        connectivity=ConnectivityMonitor(
            clock,
            probe_url=settings.connectivity_probe_url,
            offline_threshold=settings.connectivity_offline_threshold_seconds,
        ),
        cache_default_ttl=settings.cache_default_ttl_seconds,
        cache_memory_max_entries=settings.cache_memory_max_entries,
        queue_max_size=settings.queue_max_size,
        queue_overflow_policy=settings.queue_overflow_policy,
        queue_retry_delay=settings.queue_retry_delay_seconds,
        interactive_wait_ceiling=settings.interactive_wait_ceiling_seconds,
        probe_interval=settings.connectivity_probe_interval_seconds,
    )
