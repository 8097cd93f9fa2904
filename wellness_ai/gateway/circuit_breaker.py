"""Circuit Breaker: per-provider failure isolation.

One parametrized state machine per provider:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many consecutive failures, requests are rejected immediately
  - HALF_OPEN: probing recovery with a limited number of concurrent probes

Transitions:
  CLOSED    → OPEN       consecutive_failures >= failure_threshold
  OPEN      → HALF_OPEN  reset_timeout elapsed since the OPEN transition
                         (evaluated whenever the breaker is consulted)
  HALF_OPEN → CLOSED     consecutive_successes >= success_threshold
  HALF_OPEN → OPEN       any probe failure (counters reset, timeout restarts)

The record is persisted under ``circuit:{provider}`` and restored on first
use. Each breaker serializes its own mutations with an asyncio.Lock; breakers
for different providers never share state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from wellness_ai.core.metrics import CIRCUIT_TRANSITIONS
from wellness_ai.core.sentry import capture_gateway_event
from wellness_ai.gateway.clock import Clock
from wellness_ai.gateway.errors import CircuitOpenError
from wellness_ai.gateway.types import CircuitRecord, CircuitState, ProviderConfig
from wellness_ai.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

# Defaults for providers without an explicit ProviderConfig
FAILURE_THRESHOLD = 5
SUCCESS_THRESHOLD = 2
RESET_TIMEOUT = 60.0
HALF_OPEN_MAX_PROBES = 1

StateListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """Circuit breaker for a single provider.

    Usage:
        breaker = registry.get("gemini")

        await breaker.before_call()        # raises CircuitOpenError while OPEN
        try:
            result = await adapter.invoke(...)
        except GatewayError:
            await breaker.record_failure()
            raise
        await breaker.record_success()
    """

    def __init__(
        self,
        provider_id: str,
        store: KeyValueStore,
        clock: Clock,
        failure_threshold: int = FAILURE_THRESHOLD,
        success_threshold: int = SUCCESS_THRESHOLD,
        reset_timeout: float = RESET_TIMEOUT,
        half_open_max_probes: int = HALF_OPEN_MAX_PROBES,
        on_transition: StateListener | None = None,
    ):
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_probes = half_open_max_probes
        self.record = CircuitRecord(provider_id=provider_id)
        self._store = store
        self._clock = clock
        self._on_transition = on_transition
        self._lock = asyncio.Lock()
        self._loaded = False
        self._probes_in_flight = 0

    @property
    def _key(self) -> str:
        return f"circuit:{self.provider_id}"

    async def _load(self) -> None:
        if self._loaded:
            return
        data = await self._store.get(self._key)
        if data:
            self.record = CircuitRecord.from_dict(self.provider_id, data)
            if self.record.state != CircuitState.CLOSED:
                logger.info("Circuit for %s restored as %s", self.provider_id, self.record.state.value)
        self._loaded = True

    async def _persist(self) -> None:
        await self._store.set(self._key, self.record.to_dict())

    async def _transition(self, new_state: CircuitState) -> None:
        old_state = self.record.state
        record = self.record
        record.state = new_state
        record.last_transition_at = self._clock.now()
        record.consecutive_successes = 0
        if not (old_state == CircuitState.CLOSED and new_state == CircuitState.OPEN):
            record.consecutive_failures = 0
        self._probes_in_flight = 0
        await self._persist()

        if self._on_transition is not None:
            self._on_transition(self.provider_id, old_state, new_state)

    async def _refresh(self) -> None:
        """Load on first use and apply the timed OPEN → HALF_OPEN transition."""
        await self._load()
        if self.record.state == CircuitState.OPEN and self._clock.now() >= self.retry_at:
            await self._transition(CircuitState.HALF_OPEN)

    @property
    def retry_at(self) -> float:
        """Earliest time a probe may be sent after the last OPEN transition."""
        return self.record.last_transition_at + self.reset_timeout

    async def get_state(self) -> CircuitState:
        async with self._lock:
            await self._refresh()
            return self.record.state

    async def is_open(self) -> bool:
        """True if a call made now would be rejected."""
        async with self._lock:
            await self._refresh()
            if self.record.state == CircuitState.OPEN:
                return True
            if self.record.state == CircuitState.HALF_OPEN:
                return self._probes_in_flight >= self.half_open_max_probes
            return False

    def _raise_if_rejecting(self) -> None:
        state = self.record.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.provider_id, retry_at=self.retry_at)
        if state == CircuitState.HALF_OPEN and self._probes_in_flight >= self.half_open_max_probes:
            raise CircuitOpenError(self.provider_id, retry_at=None)

    async def check(self) -> None:
        """Raise CircuitOpenError if a call made now would be rejected. Takes no probe slot."""
        async with self._lock:
            await self._refresh()
            self._raise_if_rejecting()

    async def before_call(self) -> None:
        """Gate a call. Raises CircuitOpenError if the provider must not be invoked."""
        async with self._lock:
            await self._refresh()
            self._raise_if_rejecting()
            if self.record.state == CircuitState.HALF_OPEN:
                self._probes_in_flight += 1

    async def record_success(self) -> None:
        """Record a successful call: resets failures, may close a HALF_OPEN circuit."""
        async with self._lock:
            await self._load()
            record = self.record

            if record.state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(self._probes_in_flight - 1, 0)
                record.consecutive_successes += 1
                record.consecutive_failures = 0
                if record.consecutive_successes >= self.success_threshold:
                    logger.info("Circuit for %s CLOSED (recovered)", self.provider_id)
                    await self._transition(CircuitState.CLOSED)
                else:
                    await self._persist()
                return

            if record.state == CircuitState.CLOSED and record.consecutive_failures:
                record.consecutive_failures = 0
                await self._persist()

    async def record_failure(self) -> None:
        """Record a failed call; may open the circuit."""
        async with self._lock:
            await self._load()
            record = self.record

            if record.state == CircuitState.HALF_OPEN:
                logger.warning("Circuit for %s probe failed, back to OPEN", self.provider_id)
                await self._transition(CircuitState.OPEN)
                return

            if record.state == CircuitState.OPEN:
                # Straggler admitted before the circuit opened; timeout is not restarted
                return

            record.consecutive_failures += 1
            record.consecutive_successes = 0
            if record.consecutive_failures >= self.failure_threshold:
                logger.warning(
                    "Circuit for %s OPENED after %d consecutive failures",
                    self.provider_id,
                    record.consecutive_failures,
                )
                await self._transition(CircuitState.OPEN)
            else:
                await self._persist()

    async def abandon(self) -> None:
        """Release a HALF_OPEN probe slot for a call that never reached an outcome."""
        async with self._lock:
            if self.record.state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(self._probes_in_flight - 1, 0)

    async def reset(self) -> None:
        """Manually reset to CLOSED."""
        async with self._lock:
            await self._load()
            if self.record.state != CircuitState.CLOSED:
                await self._transition(CircuitState.CLOSED)
            else:
                self.record.consecutive_failures = 0
                self.record.consecutive_successes = 0
                await self._persist()
        logger.info("Circuit for %s manually RESET", self.provider_id)

    async def snapshot(self) -> dict:
        async with self._lock:
            await self._refresh()
            record = self.record
            return {
                "provider": self.provider_id,
                "state": record.state.value,
                "consecutive_failures": record.consecutive_failures,
                "consecutive_successes": record.consecutive_successes,
                "last_transition_at": record.last_transition_at,
                "retry_at": self.retry_at if record.state == CircuitState.OPEN else None,
                "probes_in_flight": self._probes_in_flight,
            }


class CircuitBreakerRegistry:
    """Holds one independent breaker per provider and fans out state changes.

    Usage:
        breakers = CircuitBreakerRegistry(store, clock, configs)
        unsubscribe = breakers.subscribe(lambda provider, old, new: ...)
        breaker = breakers.get("gemini")
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        configs: dict[str, ProviderConfig] | None = None,
    ):
        self._store = store
        self._clock = clock
        self._configs = dict(configs or {})
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateListener] = []

    def get(self, provider_id: str) -> CircuitBreaker:
        """Get or create the breaker for a provider."""
        if provider_id not in self._breakers:
            config = self._configs.get(provider_id) or ProviderConfig(provider_id=provider_id)
            self._breakers[provider_id] = CircuitBreaker(
                provider_id,
                self._store,
                self._clock,
                failure_threshold=config.failure_threshold,
                success_threshold=config.success_threshold,
                reset_timeout=config.reset_timeout,
                half_open_max_probes=config.half_open_max_probes,
                on_transition=self._notify,
            )
        return self._breakers[provider_id]

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, provider_id: str, old_state: CircuitState, new_state: CircuitState) -> None:
        CIRCUIT_TRANSITIONS.labels(provider=provider_id, from_state=old_state.value, to_state=new_state.value).inc()
        logger.info("Circuit for %s: %s -> %s", provider_id, old_state.value, new_state.value)
        if new_state == CircuitState.OPEN:
            capture_gateway_event(f"Circuit opened for {provider_id}", provider=provider_id)

        for listener in list(self._listeners):
            try:
                listener(provider_id, old_state, new_state)
            except Exception:
                logger.exception("Circuit state listener failed for %s", provider_id)

    async def load_all(self) -> None:
        for provider_id in self._configs:
            await self.get(provider_id).get_state()

    async def get_circuit_state(self, provider_id: str) -> dict:
        return await self.get(provider_id).snapshot()

    async def get_all_states(self) -> list[dict]:
        providers = sorted(set(self._configs) | set(self._breakers))
        return [await self.get_circuit_state(p) for p in providers]

    async def reset(self, provider_id: str) -> None:
        await self.get(provider_id).reset()
