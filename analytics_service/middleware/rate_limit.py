from fastapi import Request, status
from fastapi.responses import JSONResponse
import time
import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RateLimiter:
    """Redis-backed sliding window rate limiter with an in-memory token bucket fallback"""

    def __init__(self, rate: int, period: int, redis_url: str | None = None):
        """
        Args:
            rate: Number of requests allowed
            period: Time period in seconds
            redis_url: Redis to share limits across workers; None keeps them in memory
        """
        self.rate = rate
        self.period = period
        self.redis_url = redis_url
        self.redis_client: redis.Redis | None = None
        self.use_redis = False
        self.buckets: dict[str, dict[str, float]] = {}
        self.last_sweep = time.time()

    async def connect(self) -> None:
        if not self.redis_url:
            logger.info("rate_limiter_using_memory")
            return
        try:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=False)
            await self.redis_client.ping()
            self.use_redis = True
            logger.info("rate_limiter_using_redis")
        except Exception as e:
            logger.warning("rate_limiter_redis_failed_using_memory", error=str(e))
            self.use_redis = False

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    async def is_allowed(self, key: str) -> bool:
        """
        Check if request is allowed for given key

        Args:
            key: Identifier (API key or IP address)

        Returns:
            True if allowed, False if rate limit exceeded
        """
        if self.use_redis:
            return await self._is_allowed_redis(key)
        return self._is_allowed_memory(key)

    async def _is_allowed_redis(self, key: str) -> bool:
        redis_key = f"rate_limit:{key}"
        now = time.time()
        window_start = now - self.period

        pipe = self.redis_client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, self.period)
        results = await pipe.execute()

        # results[1] is the count before adding current request
        return results[1] < self.rate

    def _evict_stale(self, now: float) -> None:
        # Idle for a whole period means a full bucket, same as a new one
        if now - self.last_sweep < self.period:
            return
        self.last_sweep = now
        cutoff = now - self.period
        for key in [k for k, bucket in self.buckets.items() if bucket["last_update"] <= cutoff]:
            del self.buckets[key]

    def _is_allowed_memory(self, key: str) -> bool:
        now = time.time()
        self._evict_stale(now)
        bucket = self.buckets.setdefault(key, {"tokens": self.rate, "last_update": now})

        # Refill tokens based on time passed
        time_passed = now - bucket["last_update"]
        bucket["last_update"] = now
        bucket["tokens"] = min(self.rate, bucket["tokens"] + (time_passed / self.period) * self.rate)

        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True
        return False

    async def get_remaining(self, key: str) -> int:
        if self.use_redis:
            now = time.time()
            count = await self.redis_client.zcount(f"rate_limit:{key}", now - self.period, now)
            return max(0, self.rate - count)
        bucket = self.buckets.get(key)
        if not bucket:
            return self.rate
        return int(bucket["tokens"])


def _limit_headers(limiter: RateLimiter, remaining: int) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limiter.rate),
        "X-RateLimit-Remaining": str(max(0, remaining)),
        "X-RateLimit-Reset": str(limiter.period),
    }


async def rate_limit_middleware(request: Request, call_next):
    """
    Rate limiting middleware

    Limits requests per API key (i.e. per tenant credential), else per IP address
    """
    services = getattr(request.app.state, "services", None)
    limiter = services.rate_limiter if services else None

    if limiter is None or request.url.path.startswith("/health"):
        return await call_next(request)

    api_key = request.headers.get("X-API-Key")
    if api_key:
        rate_limit_key = f"api_key:{api_key}"
    else:
        client_ip = request.client.host if request.client else "unknown"
        rate_limit_key = f"ip:{client_ip}"

    if not await limiter.is_allowed(rate_limit_key):
        remaining = await limiter.get_remaining(rate_limit_key)

        logger.warning(
            "rate_limit_exceeded",
            path=request.url.path,
            remaining=remaining
        )

        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "Rate limit exceeded. Please try again later.",
                "retry_after": limiter.period
            },
            headers={**_limit_headers(limiter, remaining), "Retry-After": str(limiter.period)}
        )

    response = await call_next(request)

    remaining = await limiter.get_remaining(rate_limit_key)
    response.headers.update(_limit_headers(limiter, remaining))
    return response
