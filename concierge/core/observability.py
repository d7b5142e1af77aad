"""Observer capability passed into services instead of global telemetry calls.

Services report what happened (``event``) and what went wrong unexpectedly
(``exception``). The production observer writes to the log and, when Sentry
is configured, records breadcrumbs and captures exceptions. Tests pass a
recording observer and assert on the captured calls.

Fields must be PHI-safe: ids, counters, statuses. Never message text,
patient names or raw addresses.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from concierge.core.config import settings

logger = logging.getLogger(__name__)


class Observer(Protocol):
    def event(self, name: str, **fields: Any) -> None:
        """Record a domain event."""

    def exception(self, exc: BaseException, **fields: Any) -> None:
        """Surface an unexpected failure to operators."""


class LoggingObserver:
    """Logs events and forwards them to Sentry when enabled."""

    def __init__(self, *, sentry_enabled: bool | None = None) -> None:
        self._sentry_enabled = (
            settings.sentry_enabled if sentry_enabled is None else sentry_enabled
        )

    def event(self, name: str, **fields: Any) -> None:
        logger.info("%s", name, extra={"event_fields": fields})
        if self._sentry_enabled:
            import sentry_sdk

            sentry_sdk.add_breadcrumb(category="concierge", message=name, data=fields)

    def exception(self, exc: BaseException, **fields: Any) -> None:
        logger.error(
            "Unexpected %s: %s",
            type(exc).__name__,
            fields,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        if self._sentry_enabled:
            import sentry_sdk

            with sentry_sdk.new_scope() as scope:
                for key, value in fields.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_exception(exc)


default_observer = LoggingObserver()


def init_sentry(*, web: bool = False) -> bool:
    """Initialize Sentry when a DSN is configured outside dev. Returns True if enabled."""
    if not settings.sentry_enabled:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations = [SqlalchemyIntegration()]
    if web:
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        integrations.append(FastApiIntegration(transaction_style="endpoint"))

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        release=settings.VERSION,
        integrations=integrations,
        traces_sample_rate=0.1,
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logger.info("Sentry initialized for error tracking")
    return True
