"""Error reporting to Sentry, enabled by SENTRY_DSN."""

import logging

from studio import __version__
from studio.core.config import settings

logger = logging.getLogger(__name__)


def _drop_credentials(event, hint):
    """Strip bearer tokens from captured outgoing request headers."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() == "authorization":
                headers[name] = "[Filtered]"
    return event


def init_sentry() -> bool:
    """Initialize the SDK once at import of the app. Returns whether reporting is on."""
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=f"imagine-studio@{__version__}",
        traces_sample_rate=0.05 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=_drop_credentials,
        integrations=[FastApiIntegration(transaction_style="endpoint"), HttpxIntegration()],
    )
    logger.info("Sentry reporting enabled for %s", settings.app_env)
    return True