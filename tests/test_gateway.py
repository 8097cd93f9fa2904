"""Tests for the resilient gateway orchestrator.

Covers the end-to-end flows:
  - Cache hits and per-call TTL
  - Circuit breaking, fallback and recovery
  - Offline queueing and replay on reconnect
  - Quota waits, quota deferral and provider 429s
  - Inline retry, validation, timeout and cancellation
  - Request coalescing and restart recovery
"""

from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from tests.conftest import ScriptedAdapter, spin_until
from wellness_ai.gateway.cancellation import CancelToken
from wellness_ai.gateway.errors import (
    NetworkError,
    ProviderClientError,
    ProviderServerError,
    QuotaExceededError,
)
from wellness_ai.gateway.fingerprint import fingerprint
from wellness_ai.gateway.retry import RetryPolicy
from wellness_ai.gateway.types import (
    CircuitState,
    DegradedFallback,
    Error,
    ErrorKind,
    ProviderConfig,
    Queued,
    RequestPriority,
    Success,
)

PAYLOAD = b'{"prompt": "hello"}'
OK = b'{"text": "ok"}'


def _payload(n: int) -> bytes:
    return f'{{"prompt": "hello {n}"}}'.encode()


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class StrictReply(BaseModel):
    text: str
    score: int


# ==========================================================================
# Test: basic flow and cache
# ==========================================================================


class TestCallAndCache:
    @pytest.mark.asyncio
    async def test_success_then_cached(self, make_gateway, adapter):
        gw = await make_gateway()

        first = await gw.call("gemini", PAYLOAD)
        second = await gw.call("gemini", PAYLOAD)

        assert isinstance(first, Success)
        assert first.value == OK
        assert not first.cached
        assert isinstance(second, Success)
        assert second.cached
        assert second.fingerprint == first.fingerprint
        assert len(adapter.calls) == 1

    @pytest.mark.asyncio
    async def test_result_options_change_fingerprint(self, make_gateway, adapter):
        gw = await make_gateway()

        await gw.call("gemini", PAYLOAD, {"temperature": 0.1})
        await gw.call("gemini", PAYLOAD, {"temperature": 0.9})
        await gw.call("gemini", PAYLOAD, {"temperature": 0.9, "trace_id": "abc"})

        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_ttl_zero_skips_cache(self, make_gateway, adapter):
        gw = await make_gateway()

        await gw.call("gemini", PAYLOAD, cache_ttl=0)
        result = await gw.call("gemini", PAYLOAD, cache_ttl=0)

        assert isinstance(result, Success)
        assert not result.cached
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_ttl_expiry(self, make_gateway, adapter, clock):
        gw = await make_gateway()

        await gw.call("gemini", PAYLOAD, cache_ttl=30)
        clock.advance(30)
        await gw.call("gemini", PAYLOAD)

        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_negative_cache_ttl_raises(self, make_gateway):
        gw = await make_gateway()
        with pytest.raises(ValueError):
            await gw.call("gemini", PAYLOAD, cache_ttl=-5)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, make_gateway):
        gw = await make_gateway()
        result = await gw.call("nope", PAYLOAD, fallback=b"fb")

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.UNKNOWN_PROVIDER

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self, make_gateway, adapter):
        gw = await make_gateway()
        token = CancelToken()
        token.cancel()

        result = await gw.call("gemini", PAYLOAD, cancel_token=token)

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.CANCELLED
        assert adapter.calls == []


# ==========================================================================
# Test: circuit breaker integration
# ==========================================================================


class TestCircuitIntegration:
    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_without_quota(self, make_gateway, adapter):
        adapter.script = [ProviderServerError("down", "gemini", 503) for _ in range(5)]
        gw = await make_gateway()

        for n in range(5):
            result = await gw.call("gemini", _payload(n))
            assert isinstance(result, Error)
            assert result.kind == ErrorKind.PROVIDER_5XX

        result = await gw.call("gemini", _payload(5))

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.CIRCUIT_OPEN
        assert result.retry_at is not None
        assert len(adapter.calls) == 5
        assert gw.admission.get_stats("gemini")["minute_count"] == 5

    @pytest.mark.asyncio
    async def test_open_circuit_uses_fallback(self, make_gateway, adapter):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(5)]
        gw = await make_gateway()
        for n in range(5):
            await gw.call("gemini", _payload(n))

        result = await gw.call("gemini", _payload(9), fallback=b"canned")

        assert isinstance(result, DegradedFallback)
        assert result.value == b"canned"
        assert result.reason == ErrorKind.CIRCUIT_OPEN

    @pytest.mark.asyncio
    async def test_failure_with_fallback(self, make_gateway, adapter):
        adapter.script = [ProviderServerError("down", "gemini", 500)]
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD, fallback=b"canned")

        assert isinstance(result, DegradedFallback)
        assert result.reason == ErrorKind.PROVIDER_5XX

    @pytest.mark.asyncio
    async def test_recovery_after_reset_timeout(self, make_gateway, adapter, clock):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(5)]
        gw = await make_gateway()
        for n in range(5):
            await gw.call("gemini", _payload(n))

        clock.advance(60)
        first = await gw.call("gemini", _payload(10))
        assert isinstance(first, Success)
        assert await gw.breakers.get("gemini").get_state() == CircuitState.HALF_OPEN

        second = await gw.call("gemini", _payload(11))
        assert isinstance(second, Success)
        assert await gw.breakers.get("gemini").get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_probe_failure_reopens(self, make_gateway, adapter, clock):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(6)]
        gw = await make_gateway()
        for n in range(5):
            await gw.call("gemini", _payload(n))

        clock.advance(60)
        result = await gw.call("gemini", _payload(10))

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.NETWORK
        breaker = gw.breakers.get("gemini")
        assert await breaker.get_state() == CircuitState.OPEN
        assert breaker.record.last_transition_at == clock.now()

    @pytest.mark.asyncio
    async def test_task_cancelled_during_half_open_trial_frees_slot(self, make_gateway, adapter, clock):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(5)]
        gw = await make_gateway()
        for n in range(5):
            await gw.call("gemini", _payload(n))

        clock.advance(60)
        adapter.gate = asyncio.Event()
        task = asyncio.create_task(gw.call("gemini", _payload(10)))
        await spin_until(lambda: len(adapter.calls) == 6)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        breaker = gw.breakers.get("gemini")
        snapshot = await breaker.snapshot()
        assert snapshot["state"] == CircuitState.HALF_OPEN.value
        assert snapshot["probes_in_flight"] == 0

        adapter.gate.set()
        assert isinstance(await gw.call("gemini", _payload(11)), Success)

    @pytest.mark.asyncio
    async def test_reset_circuit(self, make_gateway, adapter):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(5)]
        gw = await make_gateway()
        for n in range(5):
            await gw.call("gemini", _payload(n))

        await gw.reset_circuit("gemini")

        assert isinstance(await gw.call("gemini", _payload(10)), Success)


# ==========================================================================
# Test: offline queueing and replay
# ==========================================================================


class TestOfflineReplay:
    @pytest.mark.asyncio
    async def test_offline_call_is_queued_and_replayed(self, make_gateway, adapter):
        gw = await make_gateway()
        gw.connectivity.set_online(False)

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Queued)
        assert result.reason == "offline"
        assert adapter.calls == []
        assert gw.queue.size() == 1

        gw.connectivity.set_online(True)
        await gw.wait_idle()

        assert adapter.calls == [PAYLOAD]
        assert gw.queue.size() == 0
        assert await gw.cache.get(fingerprint("gemini", PAYLOAD)) == OK

    @pytest.mark.asyncio
    async def test_replay_keeps_fifo_order(self, make_gateway, adapter):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        for n in range(3):
            await gw.call("gemini", _payload(n), priority=RequestPriority.BACKGROUND)

        gw.connectivity.set_online(True)
        await gw.wait_idle()

        assert adapter.calls == [_payload(0), _payload(1), _payload(2)]

    @pytest.mark.asyncio
    async def test_identical_offline_calls_queue_once(self, make_gateway):
        gw = await make_gateway()
        gw.connectivity.set_online(False)

        first = await gw.call("gemini", PAYLOAD)
        second = await gw.call("gemini", PAYLOAD)

        assert first.item_id == second.item_id
        assert gw.queue.size() == 1

    @pytest.mark.asyncio
    async def test_cancel_token_removes_queued_item(self, make_gateway, adapter):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        token = CancelToken()

        result = await gw.call("gemini", PAYLOAD, cancel_token=token)
        assert isinstance(result, Queued)

        token.cancel()
        await gw.wait_idle()
        assert gw.queue.size() == 0

        gw.connectivity.set_online(True)
        await gw.wait_idle()
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_cancelling_duplicate_keeps_shared_item(self, make_gateway, adapter):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        first = await gw.call("gemini", PAYLOAD)
        token = CancelToken()
        second = await gw.call("gemini", PAYLOAD, cancel_token=token)
        assert second.item_id == first.item_id

        token.cancel()
        await gw.wait_idle()

        assert gw.queue.find(first.item_id) is not None
        gw.connectivity.set_online(True)
        await gw.wait_idle()
        assert adapter.calls == [PAYLOAD]

    @pytest.mark.asyncio
    async def test_shared_item_removed_once_every_caller_cancels(self, make_gateway):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        tokens = [CancelToken(), CancelToken()]
        results = [await gw.call("gemini", PAYLOAD, cancel_token=t) for t in tokens]

        tokens[0].cancel()
        await gw.wait_idle()
        assert gw.queue.find(results[0].item_id) is not None

        tokens[1].cancel()
        await gw.wait_idle()
        assert gw.queue.size() == 0

    @pytest.mark.asyncio
    async def test_cancel_queued_by_id(self, make_gateway):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        result = await gw.call("gemini", PAYLOAD)

        assert await gw.cancel_queued(result.item_id)
        assert not await gw.cancel_queued(result.item_id)

    @pytest.mark.asyncio
    async def test_queue_full_reject_new(self, make_gateway):
        gw = await make_gateway(queue_max_size=1, queue_overflow_policy="reject_new")
        gw.connectivity.set_online(False)

        await gw.call("gemini", _payload(1))
        result = await gw.call("gemini", _payload(2), fallback=b"canned")

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.QUEUE_FULL

    @pytest.mark.asyncio
    async def test_replay_client_error_dead_letters(self, make_gateway, adapter):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        await gw.call("gemini", PAYLOAD)

        adapter.script = [ProviderClientError("bad request", "gemini", 400)]
        gw.connectivity.set_online(True)
        await gw.wait_idle()

        letters = await gw.queue.dead_letters("gemini")
        assert len(letters) == 1
        assert letters[0].final_error.startswith("provider_4xx")
        assert gw.queue.size() == 0

    @pytest.mark.asyncio
    async def test_restart_replays_persisted_queue(self, make_gateway, store):
        first = await make_gateway()
        first.connectivity.set_online(False)
        await first.call("gemini", PAYLOAD)

        restarted_adapter = ScriptedAdapter("gemini")
        restarted = await make_gateway(adapters={"gemini": restarted_adapter})
        await restarted.wait_idle()

        assert restarted_adapter.calls == [PAYLOAD]
        assert await store.get(f"cache:{fingerprint('gemini', PAYLOAD)}") is not None
        assert await store.scan("queue:") == []


# ==========================================================================
# Test: quota handling
# ==========================================================================


class TestQuota:
    @pytest.mark.asyncio
    async def test_quota_exhausted_queues_then_drains_after_window(self, make_gateway, adapter, clock):
        gw = await make_gateway(configs={"gemini": ProviderConfig(provider_id="gemini", rpm_limit=2)})

        assert isinstance(await gw.call("gemini", _payload(1)), Success)
        assert isinstance(await gw.call("gemini", _payload(2)), Success)
        result = await gw.call("gemini", _payload(3))

        assert isinstance(result, Queued)
        assert result.reason.startswith("quota")
        assert len(adapter.calls) == 2

        await gw.wait_idle()

        assert 60 in clock.sleeps
        assert len(adapter.calls) == 3
        assert await gw.cache.get(fingerprint("gemini", _payload(3))) == OK

    @pytest.mark.asyncio
    async def test_interactive_waits_within_ceiling(self, make_gateway, adapter, clock):
        gw = await make_gateway(
            configs={"gemini": ProviderConfig(provider_id="gemini", rpm_limit=2)},
            interactive_wait_ceiling=60,
        )
        await gw.call("gemini", _payload(1))
        await gw.call("gemini", _payload(2))

        result = await gw.call("gemini", _payload(3))

        assert isinstance(result, Success)
        assert 60 in clock.sleeps
        assert gw.queue.size() == 0

    @pytest.mark.asyncio
    async def test_provider_429_queues_without_tripping_breaker(self, make_gateway, adapter):
        adapter.script = [QuotaExceededError("slow down", "gemini", retry_after=30)]
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Queued)
        assert result.reason == "provider quota exceeded"
        assert gw.breakers.get("gemini").record.consecutive_failures == 0

        await gw.wait_idle()
        assert await gw.cache.get(fingerprint("gemini", PAYLOAD)) == OK


# ==========================================================================
# Test: retry, validation, timeout, cancellation
# ==========================================================================


class TestRetryAndFailures:
    @pytest.mark.asyncio
    async def test_transient_errors_retried_with_backoff(self, make_gateway, adapter, clock):
        adapter.script = [
            ProviderServerError("busy", "gemini", 503),
            NetworkError("reset", "gemini"),
        ]
        gw = await make_gateway(retry_policy=RetryPolicy(max_retries=3))

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Success)
        assert clock.sleeps == [2.0, 4.0]
        assert len(adapter.calls) == 3
        # Each retry goes through admission again
        assert gw.admission.get_stats("gemini")["minute_count"] == 3
        assert gw.breakers.get("gemini").record.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_gateway, adapter, clock):
        adapter.script = [NetworkError("reset", "gemini") for _ in range(3)]
        gw = await make_gateway(retry_policy=RetryPolicy(max_retries=2))

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.NETWORK
        assert clock.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, make_gateway, adapter, clock):
        adapter.script = [ProviderClientError("bad request", "gemini", 400)]
        gw = await make_gateway(retry_policy=RetryPolicy(max_retries=3))

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.PROVIDER_4XX
        assert len(adapter.calls) == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_is_internal(self, make_gateway, adapter):
        adapter.script = [KeyError("boom")]
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD)

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.INTERNAL

    @pytest.mark.asyncio
    async def test_response_validation(self, make_gateway, adapter):
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD, response_model=StrictReply)

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.VALIDATION
        assert await gw.cache.get(fingerprint("gemini", PAYLOAD)) is None

    @pytest.mark.asyncio
    async def test_response_validation_with_fallback(self, make_gateway, adapter):
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD, response_model=StrictReply, fallback=b"canned")

        assert isinstance(result, DegradedFallback)
        assert result.reason == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_valid_response_model(self, make_gateway, adapter):
        adapter.default = b'{"text": "ok", "score": 3}'
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD, response_model=StrictReply)

        assert isinstance(result, Success)

    @pytest.mark.asyncio
    async def test_timeout(self, make_gateway, adapter):
        adapter.gate = asyncio.Event()
        gw = await make_gateway()

        result = await gw.call("gemini", PAYLOAD, {"timeout": 0.01})

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.TIMEOUT
        assert gw.breakers.get("gemini").record.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_cancellation_during_call(self, make_gateway, adapter):
        adapter.gate = asyncio.Event()
        gw = await make_gateway()
        token = CancelToken()

        task = asyncio.create_task(gw.call("gemini", PAYLOAD, cancel_token=token, fallback=b"canned"))
        await spin_until(lambda: len(adapter.calls) == 1)
        token.cancel()
        result = await task

        assert isinstance(result, Error)
        assert result.kind == ErrorKind.CANCELLED
        assert gw.breakers.get("gemini").record.consecutive_failures == 0
        assert await gw.cache.get(fingerprint("gemini", PAYLOAD)) is None


# ==========================================================================
# Test: coalescing
# ==========================================================================


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_identical_concurrent_calls_share_invocation(self, make_gateway, adapter):
        adapter.gate = asyncio.Event()
        gw = await make_gateway()

        first = asyncio.create_task(gw.call("gemini", PAYLOAD))
        second = asyncio.create_task(gw.call("gemini", PAYLOAD))
        await spin_until(lambda: len(adapter.calls) == 1)
        await _settle()
        adapter.gate.set()

        results = await asyncio.gather(first, second)

        assert all(isinstance(r, Success) for r in results)
        assert len(adapter.calls) == 1

    @pytest.mark.asyncio
    async def test_each_caller_gets_its_own_fallback(self, make_gateway, adapter):
        adapter.gate = asyncio.Event()
        adapter.script = [ProviderServerError("down", "gemini", 503)]
        gw = await make_gateway()

        leader = asyncio.create_task(gw.call("gemini", PAYLOAD, fallback=b"leader"))
        await spin_until(lambda: len(adapter.calls) == 1)
        follower = asyncio.create_task(gw.call("gemini", PAYLOAD, fallback=b"follower"))
        bare = asyncio.create_task(gw.call("gemini", PAYLOAD))
        await _settle()
        adapter.gate.set()

        leader_result, follower_result, bare_result = await asyncio.gather(leader, follower, bare)

        assert leader_result == DegradedFallback(b"leader", ErrorKind.PROVIDER_5XX)
        assert follower_result == DegradedFallback(b"follower", ErrorKind.PROVIDER_5XX)
        assert isinstance(bare_result, Error)
        assert bare_result.kind == ErrorKind.PROVIDER_5XX
        assert len(adapter.calls) == 1

    @pytest.mark.asyncio
    async def test_follower_reruns_after_leader_cancelled(self, make_gateway, adapter):
        adapter.gate = asyncio.Event()
        gw = await make_gateway()
        token = CancelToken()

        leader = asyncio.create_task(gw.call("gemini", PAYLOAD, cancel_token=token))
        await spin_until(lambda: len(adapter.calls) == 1)
        follower = asyncio.create_task(gw.call("gemini", PAYLOAD))
        await _settle()

        token.cancel()
        leader_result = await leader
        assert leader_result.kind == ErrorKind.CANCELLED

        await spin_until(lambda: len(adapter.calls) == 2)
        adapter.gate.set()
        assert isinstance(await follower, Success)


# ==========================================================================
# Test: management
# ==========================================================================


class TestManagement:
    @pytest.mark.asyncio
    async def test_health_check_all(self, make_gateway, adapter):
        adapter.healthy = False
        other = ScriptedAdapter("openai")
        gw = await make_gateway(adapters={"gemini": adapter, "openai": other})

        assert await gw.health_check_all() == {"gemini": False, "openai": True}

    @pytest.mark.asyncio
    async def test_get_status(self, make_gateway):
        gw = await make_gateway()
        gw.connectivity.set_online(False)
        await gw.call("gemini", PAYLOAD)

        status = await gw.get_status()

        assert status["online"] is False
        assert status["providers"] == ["gemini"]
        assert status["queue"]["total"] == 1
        assert status["queued_items"][0]["provider"] == "gemini"
        assert status["dead_letters"] == 0
        assert status["circuits"][0]["state"] == "closed"
        assert "hit_rate" in status["cache"]
        assert status["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_aclose_closes_adapters(self, make_gateway, adapter):
        gw = await make_gateway()
        await gw.aclose()
        assert adapter.closed
