import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wellness_ai.api.router import router as gateway_router
from wellness_ai.core.config import Settings, settings, validate_settings_for_production
from wellness_ai.core.logging import setup_logging
from wellness_ai.core.metrics import metrics_response
from wellness_ai.core.sentry import init_sentry
from wellness_ai.gateway.gateway import ResilientGateway, build_gateway

logger = logging.getLogger(__name__)


def create_app(gateway: ResilientGateway | None = None, app_settings: Settings | None = None) -> FastAPI:
    """Build the status app. Pass a prebuilt gateway to skip settings-based construction."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging()
        if gateway is None:
            validate_settings_for_production()
            init_sentry()
        app.state.gateway = gateway or build_gateway(app_settings)
        await app.state.gateway.start()
        logger.info("Wellness AI gateway started (env=%s)", app_settings.app_env)

        yield

        # Shutdown
        await app.state.gateway.aclose()
        logger.info("Wellness AI gateway shut down")

    app = FastAPI(
        title="Wellness AI Gateway",
        description="Resilient gateway for rate-limited AI providers",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs" if app_settings.app_debug else None,
        redoc_url=None,
    )

    # Log unhandled exceptions with their traceback
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
        return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})

    app.include_router(gateway_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return metrics_response()

    @app.get("/health")
    async def health(request: Request):
        current = getattr(request.app.state, "gateway", None)
        return {
            "status": "ok",
            "online": current.connectivity.is_online if current is not None else False,
        }

    return app
