"""Per-wallet Redis token bucket for the minting endpoints."""

from time import time


class TokenBucketRateLimiter:
    """Capacity and refill rate both equal `limit_per_minute`."""

    def __init__(self, rdb, limit_per_minute: int, prefix: str = "tokenbucket:mint") -> None:
        self.rdb = rdb
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    def allow(self, wallet_address: str) -> bool:
        if self.limit_per_minute <= 0:
            return True
        key = f"{self.prefix}:{wallet_address.lower()}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, 120)
        return allowed
