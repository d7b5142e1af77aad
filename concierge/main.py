"""FastAPI application entry point."""
import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from concierge.core.config import settings
from concierge.core.observability import init_sentry
from concierge.core.rate_limit import limiter
from concierge.routers import webhooks

logger = logging.getLogger(__name__)

# Sentry (optional, for production error tracking)
init_sentry(web=True)

app = FastAPI(
    title="Concierge Messaging API",
    description="Delivery confirmations for reviewed patient messages",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
