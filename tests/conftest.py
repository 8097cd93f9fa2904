import asyncio
from collections.abc import Callable

import pytest

from wellness_ai.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.sentry_dsn = ""

from wellness_ai.gateway.adapters import ProviderAdapter  # noqa: E402
from wellness_ai.gateway.clock import Clock  # noqa: E402
from wellness_ai.gateway.gateway import ResilientGateway  # noqa: E402
from wellness_ai.gateway.retry import RetryPolicy  # noqa: E402
from wellness_ai.gateway.types import ProviderConfig, RequestDescriptor  # noqa: E402
from wellness_ai.storage.kv import MemoryKeyValueStore  # noqa: E402

START = 1_700_000_000.0


class ManualClock(Clock):
    """Clock whose sleeps return at once after moving time forward."""

    def __init__(self, start: float = START):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += max(seconds, 0.0)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += seconds


class ScriptedAdapter(ProviderAdapter):
    """Adapter that replays a script of responses/exceptions, then a default value.

    Set ``gate`` to an asyncio.Event to hold every invocation until it is set.
    """

    def __init__(self, provider_id: str = "gemini", responses: list | None = None, default: bytes = b'{"text": "ok"}'):
        self.provider_id = provider_id
        self.script = list(responses or [])
        self.default = default
        self.calls: list[bytes] = []
        self.healthy = True
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def invoke(self, payload, options, timeout, cancel_token=None) -> bytes:
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def health_check(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        self.closed = True


async def spin_until(condition: Callable[[], bool], rounds: int = 200) -> None:
    """Yield to the event loop until condition() holds."""
    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_descriptor(
    fingerprint: str = "fp-1",
    provider_id: str = "gemini",
    max_attempts: int = 5,
    payload: bytes = b'{"prompt": "hi"}',
) -> RequestDescriptor:
    return RequestDescriptor(
        fingerprint=fingerprint,
        provider_id=provider_id,
        payload=payload,
        created_at=START,
        max_attempts=max_attempts,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def adapter():
    return ScriptedAdapter("gemini")


@pytest.fixture
async def make_gateway(store, clock, adapter):
    """Factory for started gateways sharing the test store and clock.

    Defaults: one scripted "gemini" provider and no inline retries.
    """
    created: list[ResilientGateway] = []

    async def _make(adapters=None, configs=None, **kwargs) -> ResilientGateway:
        adapters = adapters or {"gemini": adapter}
        if configs is None:
            configs = {pid: ProviderConfig(provider_id=pid) for pid in adapters}
        kwargs.setdefault("retry_policy", RetryPolicy(max_retries=0))
        gateway = ResilientGateway(adapters, store, clock=clock, provider_configs=configs, **kwargs)
        await gateway.start()
        created.append(gateway)
        return gateway

    yield _make

    for gateway in created:
        await gateway.aclose()
