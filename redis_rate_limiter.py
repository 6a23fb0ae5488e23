"""Redis-backed rate limiter."""
import hashlib
import logging
import time
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auth import extract_token
from config import RATE_LIMIT_PER_MINUTE_IP, RATE_LIMIT_PER_MINUTE_USER
from monitoring import rate_limit_exceeded_counter, suspicious_activity_counter

logger = logging.getLogger(__name__)

SUSPICIOUS_WINDOW_SECONDS = 300

# (status predicate, pattern name, threshold within the window)
SUSPICIOUS_PATTERNS = (
    (lambda status: status == 401, "credential_stuffing", 5),
    (lambda status: status == 404, "endpoint_scanning", 10),
    (lambda status: 400 <= status < 500, "abuse", 20),
)


def token_fingerprint(token: str) -> str:
    """Short stable hash of a bearer token, used as the per-account key."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Rate limiter using Redis for limits shared across service instances.

    Implements dual-tier sliding window rate limiting:
    - Per IP: higher limit, handles shared IPs
    - Per account token: lower limit, prevents individual abuse

    Redis failures never block traffic.
    """

    def __init__(
        self,
        app,
        redis_client: redis.Redis,
        requests_per_minute_ip: int = RATE_LIMIT_PER_MINUTE_IP,
        requests_per_minute_user: int = RATE_LIMIT_PER_MINUTE_USER,
        window_seconds: int = 60
    ):
        """
        Initialize Redis-backed rate limiter.

        Args:
            app: FastAPI application
            redis_client: Redis connection
            requests_per_minute_ip: Max requests per IP per window
            requests_per_minute_user: Max requests per account token per window
            window_seconds: Sliding window size in seconds
        """
        super().__init__(app)
        self.redis = redis_client
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds

    def _check_rate_limit(self, key: str, limit: int, window: int) -> Tuple[bool, int]:
        """
        Check rate limit using a Redis sorted set (sliding window).

        Args:
            key: Redis key for this limit (e.g., "rate:ip:192.168.1.1")
            limit: Maximum requests allowed
            window: Time window in seconds

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            current_time = time.time()

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, current_time - window)
            pipe.zcard(key)
            pipe.zadd(key, {str(current_time): current_time})
            pipe.expire(key, window + 1)
            results = pipe.execute()

            # Count before the current request
            count = results[1]
            return count < limit, count + 1

        except redis.RedisError as e:
            logger.error("Redis rate limit error", extra={"key": key, "error": str(e)})
            # Fail open
            return True, 0

    def _reject(self, limit_type: str, limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": f"Rate limit exceeded. Maximum {limit} requests per minute.",
                "details": {"limit_type": limit_type}
            },
            headers={"Retry-After": str(self.window_seconds)}
        )

    async def dispatch(self, request: Request, call_next):
        """
        Process request with Redis-backed dual-tier rate limiting.

        Returns:
            Response or 429 if rate limited
        """
        client_ip = request.client.host if request.client else "unknown"
        if "x-forwarded-for" in request.headers:
            client_ip = request.headers["x-forwarded-for"].split(",")[0].strip()

        token = extract_token(request.headers.get("authorization"))
        user_key = token_fingerprint(token) if token else None

        ip_allowed, ip_count = self._check_rate_limit(
            f"rate:ip:{client_ip}",
            self.requests_per_minute_ip,
            self.window_seconds
        )
        if not ip_allowed:
            rate_limit_exceeded_counter.add(1, {"limit_type": "ip"})
            logger.warning("Rate limit exceeded for IP", extra={
                "client_ip": client_ip,
                "count": ip_count,
                "limit": self.requests_per_minute_ip
            })
            return self._reject("ip", self.requests_per_minute_ip)

        if user_key:
            user_allowed, user_count = self._check_rate_limit(
                f"rate:user:{user_key}",
                self.requests_per_minute_user,
                self.window_seconds
            )
            if not user_allowed:
                rate_limit_exceeded_counter.add(1, {"limit_type": "user"})
                logger.warning("Rate limit exceeded for account token", extra={
                    "token_fingerprint": user_key,
                    "count": user_count,
                    "limit": self.requests_per_minute_user
                })
                return self._reject("user", self.requests_per_minute_user)

        response = await call_next(request)

        self._detect_suspicious_activity(response.status_code, client_ip)

        return response

    def _detect_suspicious_activity(self, status_code: int, client_ip: str) -> Optional[str]:
        """
        Track error bursts per client IP.

        Patterns:
        - Credential stuffing: 5+ 401s in 5 minutes
        - Endpoint scanning: 10+ 404s in 5 minutes
        - Abuse: 20+ 4xx errors in 5 minutes

        Returns:
            Name of the last pattern whose threshold was reached, if any
        """
        detected = None
        try:
            current_time = time.time()
            for matches, pattern, threshold in SUSPICIOUS_PATTERNS:
                if not matches(status_code):
                    continue
                key = f"suspicious:{pattern}:{client_ip}"
                self.redis.zadd(key, {str(current_time): current_time})
                self.redis.expire(key, SUSPICIOUS_WINDOW_SECONDS + 1)

                count = self.redis.zcount(key, current_time - SUSPICIOUS_WINDOW_SECONDS, current_time)
                if count >= threshold:
                    detected = pattern
                    suspicious_activity_counter.add(1, {"type": pattern})
                    logger.warning("Suspicious activity detected", extra={
                        "type": pattern,
                        "client_ip": client_ip,
                        "count": count,
                        "window_seconds": SUSPICIOUS_WINDOW_SECONDS
                    })
        except redis.RedisError as e:
            logger.error("Error detecting suspicious activity", extra={"error": str(e)})
        return detected
