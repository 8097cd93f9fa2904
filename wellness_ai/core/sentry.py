"""Sentry error tracking integration.

Initializes Sentry SDK if SENTRY_DSN env variable is set; otherwise every
function here is a no-op. Gateway components report conditions that need a
human (dead-lettered requests, a provider circuit opening) through
``capture_gateway_event`` so they show up next to unhandled exceptions.
"""

import logging

from wellness_ai.core.config import settings

logger = logging.getLogger(__name__)

_enabled = False


def init_sentry() -> None:
    """Initialize Sentry if SENTRY_DSN is configured."""
    global _enabled

    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured: skipping")
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,  # payloads may contain journal text or images
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
    )
    _enabled = True
    logger.info("Sentry initialized (env=%s)", settings.app_env)


def capture_gateway_event(message: str, level: str = "warning", **tags: str) -> None:
    """Send a gateway condition to Sentry as a tagged message."""
    if not _enabled:
        return

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        scope.capture_message(message, level=level)
