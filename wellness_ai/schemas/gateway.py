from pydantic import BaseModel, Field


class ConnectivityUpdate(BaseModel):
    online: bool


class ConnectivityResponse(BaseModel):
    online: bool
    changed: bool


class CircuitResponse(BaseModel):
    provider: str
    state: str
    consecutive_failures: int
    consecutive_successes: int
    last_transition_at: float
    retry_at: float | None = None
    probes_in_flight: int = 0


class DrainReportResponse(BaseModel):
    provider_id: str
    dispatched: int
    failed: int
    dead_lettered: int
    deferred: bool
    retry_after: float | None = None
    skipped: bool = False

    model_config = {"from_attributes": True}


class DrainResponse(BaseModel):
    reports: list[DrainReportResponse]
    remaining: int


class DeadLetterResponse(BaseModel):
    id: str
    provider: str
    fingerprint: str
    handler: str
    attempts: int
    enqueued_at: float
    dead_lettered_at: float
    final_error: str


class HealthResponse(BaseModel):
    status: str
    providers: dict[str, bool] = Field(default_factory=dict)
