"""Advisory edit locks kept in Redis so every instance sees the same holder."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.exceptions import LockUnavailableError
from concierge.core.permissions import Actor
from concierge.core.redis_client import require_sync_redis_client

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "edit-lock"

# Compare-and-delete: only remove the lock if it still holds the caller's value
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class LockHolder:
    user_id: str
    email: str | None
    locked_at: str


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    holder: LockHolder | None


def _parse_holder(raw) -> LockHolder | None:
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    return LockHolder(
        user_id=data["user_id"], email=data.get("email"), locked_at=data["locked_at"]
    )


class EditLockService:
    """
    One holder per entity; acquisition never blocks.

    Locks expire after the TTL even if never released, so a crashed session
    cannot lock an entity forever.
    """

    def __init__(self, client=None, *, ttl: timedelta | None = None, clock: Clock = utcnow) -> None:
        self.client = client if client is not None else require_sync_redis_client()
        self.ttl = ttl or timedelta(minutes=settings.EDIT_LOCK_TTL_MINUTES)
        self.clock = clock

    @staticmethod
    def _key(entity_type: str, entity_id: UUID | str) -> str:
        return f"{LOCK_KEY_PREFIX}:{entity_type}:{entity_id}"

    def _ttl_ms(self) -> int:
        return int(self.ttl.total_seconds() * 1000)

    def holder(self, entity_type: str, entity_id: UUID | str) -> LockHolder | None:
        return _parse_holder(self.client.get(self._key(entity_type, entity_id)))

    def acquire(self, entity_type: str, entity_id: UUID | str, actor: Actor) -> LockResult:
        """Take or refresh the lock. Denied results carry the current holder."""
        key = self._key(entity_type, entity_id)
        mine = LockHolder(
            user_id=str(actor.user_id),
            email=actor.email,
            locked_at=self.clock().isoformat(),
        )
        value = json.dumps(
            {"user_id": mine.user_id, "email": mine.email, "locked_at": mine.locked_at}
        )

        # Second pass covers a lock that expired between SET and GET
        for _ in range(2):
            if self.client.set(key, value, nx=True, px=self._ttl_ms()):
                logger.info("Edit lock acquired on %s:%s", entity_type, entity_id)
                return LockResult(acquired=True, holder=mine)
            current = self.holder(entity_type, entity_id)
            if current is None:
                continue
            if current.user_id == mine.user_id:
                self.client.set(key, value, xx=True, px=self._ttl_ms())
                return LockResult(acquired=True, holder=mine)
            return LockResult(acquired=False, holder=current)
        return LockResult(acquired=False, holder=self.holder(entity_type, entity_id))

    def release(self, entity_type: str, entity_id: UUID | str, actor: Actor) -> bool:
        """Only the holder may unlock. Returns False when nothing was held."""
        key = self._key(entity_type, entity_id)
        raw = self.client.get(key)
        current = _parse_holder(raw)
        if current is None:
            return False
        if current.user_id != str(actor.user_id):
            raise LockUnavailableError(current.email)
        if not self.client.eval(RELEASE_SCRIPT, 1, key, raw):
            # expired and taken by someone else since the read
            return False
        logger.info("Edit lock released on %s:%s", entity_type, entity_id)
        return True

    def ensure_editable(self, entity_type: str, entity_id: UUID | str, actor: Actor) -> None:
        """Raise when someone other than ``actor`` holds the lock."""
        current = self.holder(entity_type, entity_id)
        if current is not None and current.user_id != str(actor.user_id):
            raise LockUnavailableError(current.email)
