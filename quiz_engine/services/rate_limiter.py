"""Redis leaky-bucket throttle for starting and submitting attempts.

Every (actor, action) pair owns one bucket holding up to
``RATE_LIMIT_ATTEMPT_BURST`` tokens, refilled at
``RATE_LIMIT_ATTEMPT_RPM / 60`` tokens per second.  Starting and submitting
draw from separate buckets so that a burst of retried submissions cannot
block the student from opening the next attempt.

Anonymous calls (no authenticated actor on ``request.state``) are keyed on
the client IP.  When Redis is unreachable the limiter lets requests through.
"""

import logging
import time

import redis
from fastapi import HTTPException, Request, status

from quiz_engine.config import settings

logger = logging.getLogger(__name__)

_pool: redis.ConnectionPool | None = None

# KEYS[1] bucket, ARGV = burst, tokens/sec, now.  Returns 1 when allowed.
_LEAKY_BUCKET = """
local burst  = tonumber(ARGV[1])
local rate   = tonumber(ARGV[2])
local now    = tonumber(ARGV[3])
local state  = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or burst
local ts     = tonumber(state[2]) or now

tokens = math.min(burst, tokens + math.max(0, now - ts) * rate)
local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.ceil(burst / rate) + 60)
return allowed
"""


def _get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=10,
        )
    return redis.Redis(connection_pool=_pool)


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _action(request: Request) -> str:
    return "submit" if request.url.path.rstrip("/").endswith("/submit") else "start"


def _client_key(request: Request) -> str:
    action = _action(request)
    actor_id = getattr(request.state, "actor_id", None)
    if actor_id:
        return f"rl:attempt:{action}:u:{actor_id}"
    return f"rl:attempt:{action}:ip:{client_ip(request) or 'unknown'}"


def _check(bucket_key: str) -> bool:
    rpm = settings.RATE_LIMIT_ATTEMPT_RPM
    if rpm <= 0:
        return True

    try:
        allowed = _get_redis().eval(
            _LEAKY_BUCKET, 1, bucket_key,
            settings.RATE_LIMIT_ATTEMPT_BURST, rpm / 60.0, time.time(),
        )
    except redis.RedisError as e:
        logger.warning("Attempt throttle unavailable, allowing %s: %s", bucket_key, e)
        return True
    return bool(allowed)


def require_attempt_rate_limit(request: Request) -> None:
    """FastAPI dependency — 429 once the caller's bucket for this action is empty."""
    key = _client_key(request)
    if not _check(key):
        logger.info("Attempt throttled: %s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many attempt requests, wait a moment and try again.",
        )
