import hashlib
import json
from abc import ABC, abstractmethod
from time import time
from typing import Callable, Dict, Optional, Tuple
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import logging

from auth import extract_api_key
from config.settings import settings
from utils.responses import error_response

logger = logging.getLogger(__name__)

# Paths that never count against a credential's bucket
EXEMPT_PATHS = {"/health", "/webhook"}


class TokenBucketBackend(ABC):
    """
    Token bucket storage keyed by an arbitrary identity.
    ``consume`` returns True when a token was taken, False when the bucket is empty.
    """

    def __init__(self, capacity: int, refill_time_window: float = 60.0, clock: Callable[[], float] = time):
        self.capacity = capacity
        self.refill_time_window = refill_time_window
        self.clock = clock

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.refill_time_window) * self.capacity
        return min(self.capacity, tokens + refill)

    @abstractmethod
    async def consume(self, key: str) -> bool:
        ...


class InMemoryTokenBucket(TokenBucketBackend):
    """Process-local buckets. Each instance of a multi-instance deployment limits independently."""

    def __init__(self, capacity: int, refill_time_window: float = 60.0, clock: Callable[[], float] = time):
        super().__init__(capacity, refill_time_window, clock)
        # key -> (tokens, last_refill_ts)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._last_sweep = clock()

    def _evict_idle(self, now: float) -> None:
        """Drop buckets untouched for a full window; they would be full again anyway."""
        if now - self._last_sweep < self.refill_time_window:
            return
        self._last_sweep = now
        idle = [k for k, (_, last_refill) in self._buckets.items() if now - last_refill >= self.refill_time_window]
        for k in idle:
            del self._buckets[k]

    async def consume(self, key: str) -> bool:
        now = self.clock()
        self._evict_idle(now)
        tokens, last_refill = self._buckets.get(key, (float(self.capacity), now))
        tokens = self._refill(tokens, last_refill, now)

        if tokens < 1.0:
            self._buckets[key] = (tokens, now)
            return False

        # Consume a token and store
        self._buckets[key] = (tokens - 1.0, now)
        return True


class RedisTokenBucket(TokenBucketBackend):
    """
    Buckets shared through Redis so every instance sees the same counts.
    Falls back to an in-memory bucket when Redis errors.
    """

    def __init__(self, client, capacity: int, refill_time_window: float = 60.0, clock: Callable[[], float] = time):
        super().__init__(capacity, refill_time_window, clock)
        self.client = client
        self.fallback = InMemoryTokenBucket(capacity, refill_time_window, clock)

    def _get_redis_key(self, key: str) -> str:
        """Generate Redis key for rate limiting"""
        return f"rate_limit:{key}"

    async def consume(self, key: str) -> bool:
        try:
            redis_key = self._get_redis_key(key)
            now = self.clock()

            # Stored data: {"tokens": float, "last_refill": float}
            bucket_data = self.client.get(redis_key)
            if bucket_data:
                data = json.loads(bucket_data)
                tokens = float(data.get("tokens", 0))
                last_refill = float(data.get("last_refill", now))
            else:
                tokens = float(self.capacity)
                last_refill = now

            tokens = self._refill(tokens, last_refill, now)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0

            # Expire after the refill window; an idle bucket is full again by then
            self.client.setex(
                redis_key,
                int(self.refill_time_window) + 10,
                json.dumps({"tokens": tokens, "last_refill": now}),
            )
            return allowed
        except Exception as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return await self.fallback.consume(key)


def build_token_bucket(capacity: int, redis_url: Optional[str] = None) -> TokenBucketBackend:
    """Redis-backed buckets when REDIS_URL is reachable, in-memory otherwise."""
    if not redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return InMemoryTokenBucket(capacity)
    try:
        import redis
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
        logger.info("Redis connected successfully for rate limiting")
        return RedisTokenBucket(client, capacity)
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory rate limiting.")
        return InMemoryTokenBucket(capacity)


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Per-credential rate limiter using the Token Bucket Algorithm.
    Requests are keyed by API key, or by client IP when no key is sent
    (the auth dependency rejects those anyway).
    """

    def __init__(self, app, backend: Optional[TokenBucketBackend] = None):
        super().__init__(app)
        self.backend = backend or build_token_bucket(settings.rate_limit_per_minute, settings.redis_url)

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            # Take first IP in the list
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _identity(self, request: Request) -> str:
        api_key = extract_api_key(request.headers.get("x-api-key"), request.headers.get("authorization"))
        if api_key:
            # Hash so raw credentials never end up as Redis keys
            return f"key:{hashlib.sha256(api_key.encode()).hexdigest()[:24]}"
        return f"ip:{self._get_client_ip(request)}"

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        allowed = await self.backend.consume(self._identity(request))
        if not allowed:
            retry_after = int(self.backend.refill_time_window / max(self.backend.capacity, 1)) + 1
            return error_response(
                "rate_limited",
                status=429,
                message="Too many requests. Try again shortly.",
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)
