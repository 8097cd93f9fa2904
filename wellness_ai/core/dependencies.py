from fastapi import HTTPException, Request

from wellness_ai.gateway.gateway import ResilientGateway


def get_gateway(request: Request) -> ResilientGateway:
    """The gateway built in the app lifespan and kept on app.state."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not started")
    return gateway
