import json

from .schemas import Decision, ValidationOutcome


def _key(client: str, idem_key: str) -> str:
    return f"idem:{client}:{idem_key}"


async def get_cached_outcome(redis, client: str, idem_key: str) -> dict | None:
    raw = await redis.get(_key(client, idem_key))
    return json.loads(raw) if raw else None


async def cache_outcome(redis, client: str, idem_key: str, outcome: ValidationOutcome, ttl_seconds: int = 300) -> None:
    # A retry after an outage must reach the engine again.
    if outcome.status == Decision.ERROR:
        return
    await redis.setex(_key(client, idem_key), ttl_seconds, outcome.model_dump_json())
