from __future__ import annotations

import time
from collections.abc import Callable

import redis
from pydantic import BaseModel, ConfigDict, Field, ValidationError

LEADER_STORAGE_KEY = "contestant-app:mqtt-leader"
LEADER_CHANNEL = "contestant-app:mqtt-leader:changes"

# Short TTL so stale leases expire quickly.
LEADER_LOCK_TTL_MS = 3_000


def now_ms() -> int:
    return int(time.time() * 1000)


class LeaderLease(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tab_id: str = Field(alias="tabId")
    expires_at: int = Field(alias="expiresAt")

    def expired(self, at_ms: int) -> bool:
        return self.expires_at < at_ms


def parse_lease(raw: str | None) -> LeaderLease | None:
    if not raw:
        return None
    try:
        return LeaderLease.model_validate_json(raw)
    except ValidationError:
        return None


class LeaseStore:
    """Shared `{tabId, expiresAt}` record that every tab on a station can read.

    Every write or delete is announced on LEADER_CHANNEL so peers update their
    belief without waiting for their next poll.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        key: str = LEADER_STORAGE_KEY,
        channel: str = LEADER_CHANNEL,
        ttl_ms: int = LEADER_LOCK_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.r = r
        self.key = key
        self.channel = channel
        self.ttl_ms = ttl_ms
        self.clock = clock

    def read(self) -> LeaderLease | None:
        return parse_lease(self.r.get(self.key))

    def write(self, *, tab_id: str) -> LeaderLease:
        lease = LeaderLease(tab_id=tab_id, expires_at=self.clock() + self.ttl_ms)
        raw = lease.model_dump_json(by_alias=True)
        # The record itself carries the expiry; the redis TTL only garbage-collects abandoned keys.
        self.r.set(self.key, raw, px=self.ttl_ms * 10)
        self.r.publish(self.channel, raw)
        return lease

    def remove_if_owner(self, *, tab_id: str) -> bool:
        """Delete the lease only when `tab_id` still owns it."""

        def _txn(pipe: redis.client.Pipeline) -> bool:
            current = parse_lease(pipe.get(self.key))
            if current is None or current.tab_id != tab_id:
                pipe.multi()
                return False
            pipe.multi()
            pipe.delete(self.key)
            return True

        removed = bool(self.r.transaction(_txn, self.key, value_from_callable=True))
        if removed:
            self.r.publish(self.channel, "")
        return removed
