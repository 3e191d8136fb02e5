import time


def _num(data: dict, field: str, default: float) -> float:
    raw = data.get(field.encode()) if field.encode() in data else data.get(field)
    return float(raw) if raw is not None else default


async def allow_request(redis, key: str, capacity: int, refill_per_sec: float, now: float | None = None) -> bool:
    """Token bucket per scanner client. Returns False once the bucket is empty."""
    now = time.time() if now is None else now
    bucket_key = f"rl:{key}"

    data = await redis.hgetall(bucket_key)
    tokens = _num(data, "tokens", capacity)
    last = _num(data, "last", now)

    tokens = min(capacity, tokens + max(0.0, now - last) * refill_per_sec)
    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    pipe = redis.pipeline()
    pipe.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    pipe.expire(bucket_key, 3600)
    await pipe.execute()
    return allowed
