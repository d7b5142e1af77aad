"""Rate limiting for inbound webhooks (shared across instances via Redis)."""

import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from concierge.core.config import settings
from concierge.core.redis_client import REDIS_DISABLED_URL, get_redis_url

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Client-Id"


def webhook_client_key(request: Request) -> str:
    """Identify a webhook caller by its declared client id, else its address."""
    client_id = request.headers.get(CLIENT_ID_HEADER, "").strip()
    if client_id:
        return f"client:{client_id[:128]}"
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{get_remote_address(request)}"


def webhook_limits() -> str:
    """Per-client limits, read at request time so settings overrides apply."""
    return (
        f"{settings.WEBHOOK_RATE_LIMIT_PER_MINUTE}/minute;"
        f"{settings.WEBHOOK_RATE_LIMIT_PER_HOUR}/hour"
    )


def _storage_uri() -> str:
    url = get_redis_url()
    if url:
        return url
    if settings.is_production:
        raise RuntimeError("REDIS_URL must be set in production; rate limits must be shared")
    logger.warning("REDIS_URL not set, webhook rate limits are per-process (dev/test only)")
    return REDIS_DISABLED_URL


limiter = Limiter(
    key_func=webhook_client_key,
    storage_uri=_storage_uri(),
    default_limits=[],
)
