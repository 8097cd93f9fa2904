"""Core types and records for the external-service gateway.

Timestamps are wall-clock epoch seconds taken from the gateway ``Clock`` so
that persisted records (quota windows, breaker state, queue items) remain
meaningful after a process restart.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RequestPriority(int, Enum):
    """Caller priority (lower = serviced first)."""

    INTERACTIVE = 1  # A user is waiting on the result
    BACKGROUND = 2  # Sync, analytics, replay


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Probing recovery


class ErrorKind(str, Enum):
    """Error classes surfaced to callers in ``Error`` results."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_4XX = "provider_4xx"
    PROVIDER_5XX = "provider_5xx"
    CIRCUIT_OPEN = "circuit_open"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    QUEUE_FULL = "queue_full"
    UNKNOWN_PROVIDER = "unknown_provider"
    INTERNAL = "internal"


class ResultOutcome(str, Enum):
    SUCCESS = "success"
    QUEUED = "queued"
    DEGRADED_FALLBACK = "degraded_fallback"
    ERROR = "error"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Quota, timeout and breaker configuration for one provider."""

    provider_id: str
    rpm_limit: int = 60  # Requests per 60 s window
    rpd_limit: int = 1500  # Requests per 24 h window
    timeout_seconds: float = 45.0  # Per-call adapter timeout
    failure_threshold: int = 5  # Consecutive failures to open the circuit
    success_threshold: int = 2  # Probe successes to close it again
    reset_timeout: float = 60.0  # Seconds OPEN before probing
    half_open_max_probes: int = 1  # Concurrent probes allowed in HALF_OPEN
    max_attempts: int = 5  # Replay attempts before dead letter


# ---------------------------------------------------------------------------
# Request descriptor
# ---------------------------------------------------------------------------


@dataclass
class RequestDescriptor:
    """One logical request to a provider. Immutable except ``attempts``."""

    fingerprint: str
    provider_id: str
    payload: bytes
    priority: RequestPriority = RequestPriority.INTERACTIVE
    options: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    attempts: int = 0
    max_attempts: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "provider_id": self.provider_id,
            "payload": _b64encode(self.payload),
            "priority": self.priority.value,
            "options": self.options,
            "created_at": self.created_at,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestDescriptor:
        return cls(
            fingerprint=data["fingerprint"],
            provider_id=data["provider_id"],
            payload=_b64decode(data["payload"]),
            priority=RequestPriority(data.get("priority", RequestPriority.INTERACTIVE.value)),
            options=dict(data.get("options") or {}),
            created_at=float(data.get("created_at", 0.0)),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 5)),
        )


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    key: str
    value: bytes
    inserted_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": _b64encode(self.value),
            "inserted_at": self.inserted_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=key,
            value=_b64decode(data["value"]),
            inserted_at=float(data["inserted_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class CircuitRecord:
    provider_id: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_transition_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_transition_at": self.last_transition_at,
        }

    @classmethod
    def from_dict(cls, provider_id: str, data: dict[str, Any]) -> CircuitRecord:
        return cls(
            provider_id=provider_id,
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            consecutive_successes=int(data.get("consecutive_successes", 0)),
            last_transition_at=float(data.get("last_transition_at", 0.0)),
        )


@dataclass
class QuotaWindow:
    """Fixed counting window (60 s or 24 h) for one provider."""

    provider_id: str
    kind: str  # "minute" | "day"
    length: float  # seconds
    limit: int
    window_start: float = 0.0
    count: int = 0

    def roll(self, now: float) -> bool:
        """Start a fresh window if the current one has elapsed. Returns True if rolled."""
        if now - self.window_start >= self.length:
            self.window_start = now
            self.count = 0
            return True
        return False

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def resets_in(self, now: float) -> float:
        return max(self.window_start + self.length - now, 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {"window_start": self.window_start, "count": self.count}


@dataclass
class QueuedItem:
    """A request whose dispatch was deferred (offline, quota, provider 429)."""

    request: RequestDescriptor
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = 0.0
    attempts: int = 0
    handler: str = "gateway.call"
    sequence: int = 0  # FIFO tie-breaker for equal enqueued_at

    @property
    def provider_id(self) -> str:
        return self.request.provider_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_descriptor": self.request.to_dict(),
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "handler": self.handler,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedItem:
        return cls(
            request=RequestDescriptor.from_dict(data["request_descriptor"]),
            id=data["id"],
            enqueued_at=float(data.get("enqueued_at", 0.0)),
            attempts=int(data.get("attempts", 0)),
            handler=data.get("handler", "gateway.call"),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass
class DeadLetterEntry:
    """A queued request that exhausted its attempts or was evicted."""

    item: QueuedItem
    final_error: str = ""
    dead_lettered_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = self.item.to_dict()
        data["final_error"] = self.final_error
        data["dead_lettered_at"] = self.dead_lettered_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeadLetterEntry:
        return cls(
            item=QueuedItem.from_dict(data),
            final_error=data.get("final_error", ""),
            dead_lettered_at=float(data.get("dead_lettered_at", 0.0)),
        )


# ---------------------------------------------------------------------------
# Caller-facing results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    value: bytes
    fingerprint: str = ""
    cached: bool = False

    @property
    def outcome(self) -> ResultOutcome:
        return ResultOutcome.SUCCESS


@dataclass(frozen=True)
class Queued:
    """Not an error: the request is persisted and will be replayed."""

    item_id: str
    reason: str = ""

    @property
    def outcome(self) -> ResultOutcome:
        return ResultOutcome.QUEUED


@dataclass(frozen=True)
class DegradedFallback:
    value: bytes
    reason: ErrorKind = ErrorKind.CIRCUIT_OPEN

    @property
    def outcome(self) -> ResultOutcome:
        return ResultOutcome.DEGRADED_FALLBACK


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str = ""
    retry_at: float | None = None

    @property
    def outcome(self) -> ResultOutcome:
        return ResultOutcome.ERROR


GatewayResult = Union[Success, Queued, DegradedFallback, Error]
