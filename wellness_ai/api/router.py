"""Gateway status endpoints: circuits, queue, dead letters, connectivity."""

from fastapi import APIRouter, Depends, HTTPException, Query

from wellness_ai.core.dependencies import get_gateway
from wellness_ai.gateway.gateway import ResilientGateway
from wellness_ai.schemas.gateway import (
    CircuitResponse,
    ConnectivityResponse,
    ConnectivityUpdate,
    DeadLetterResponse,
    DrainReportResponse,
    DrainResponse,
    HealthResponse,
)

router = APIRouter(prefix="/gateway", tags=["gateway"])


@router.get("/status")
async def gateway_status(gateway: ResilientGateway = Depends(get_gateway)):
    """Circuits, quota usage, queue contents and cache stats."""
    return await gateway.get_status()


@router.get("/health", response_model=HealthResponse)
async def provider_health(gateway: ResilientGateway = Depends(get_gateway)):
    providers = await gateway.health_check_all()
    status = "ok" if providers and all(providers.values()) else "degraded"
    return HealthResponse(status=status, providers=providers)


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    provider: str | None = Query(None),
    gateway: ResilientGateway = Depends(get_gateway),
):
    entries = await gateway.queue.dead_letters(provider)
    return [
        DeadLetterResponse(
            id=e.item.id,
            provider=e.item.provider_id,
            fingerprint=e.item.request.fingerprint,
            handler=e.item.handler,
            attempts=e.item.attempts,
            enqueued_at=e.item.enqueued_at,
            dead_lettered_at=e.dead_lettered_at,
            final_error=e.final_error,
        )
        for e in entries
    ]


@router.delete("/dead-letters")
async def clear_dead_letters(
    provider: str | None = Query(None),
    gateway: ResilientGateway = Depends(get_gateway),
):
    cleared = await gateway.queue.clear_dead_letters(provider)
    return {"cleared": cleared}


@router.post("/circuits/{provider_id}/reset", response_model=CircuitResponse)
async def reset_circuit(provider_id: str, gateway: ResilientGateway = Depends(get_gateway)):
    """Manual override: force a provider circuit back to CLOSED."""
    if provider_id not in gateway.adapters:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")
    await gateway.reset_circuit(provider_id)
    return await gateway.breakers.get_circuit_state(provider_id)


@router.post("/queue/drain", response_model=DrainResponse)
async def drain_queue(
    provider: str | None = Query(None),
    gateway: ResilientGateway = Depends(get_gateway),
):
    if provider:
        reports = [await gateway.drain_provider(provider)]
    else:
        reports = await gateway.drain_queue()
    return DrainResponse(
        reports=[DrainReportResponse.model_validate(r) for r in reports],
        remaining=gateway.queue.size(),
    )


@router.delete("/queue/{item_id}", status_code=204)
async def cancel_queued(item_id: str, gateway: ResilientGateway = Depends(get_gateway)):
    if not await gateway.cancel_queued(item_id):
        raise HTTPException(status_code=404, detail="Queued request not found (already dispatched?)")


@router.put("/connectivity", response_model=ConnectivityResponse)
async def set_connectivity(body: ConnectivityUpdate, gateway: ResilientGateway = Depends(get_gateway)):
    """Override the online flag (e.g. from a client that knows it lost its link)."""
    changed = gateway.connectivity.set_online(body.online)
    return ConnectivityResponse(online=gateway.connectivity.is_online, changed=changed)
