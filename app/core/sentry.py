"""Optional Sentry error tracking, enabled by SENTRY_DSN."""

import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def _drop_caller_errors(event, hint):
    # Caller-side gateway errors (401/400/402) are expected traffic, not incidents
    exc_info = hint.get("exc_info")
    if exc_info:
        from app.core.exceptions import GatewayError

        exc = exc_info[1]
        if isinstance(exc, GatewayError) and exc.status_code < 500:
            return None
    return event


def init_sentry() -> None:
    if not settings.sentry_dsn:
        logger.debug("SENTRY_DSN not set, error tracking disabled")
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=_drop_caller_errors,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            SqlalchemyIntegration(),
        ],
    )
    logger.info("Sentry enabled for %s", settings.app_env)
