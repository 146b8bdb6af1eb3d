import json
import logging
import time
from collections import defaultdict, deque

logger = logging.getLogger(__name__)

WINDOWS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}

def parse_rate_limit(rate_limit_str: str):
    """Parse strings like ``"100 per minute"`` into ``(limit, seconds)``."""
    try:
        limit, per = rate_limit_str.split(" per ")
        limit = int(limit)
        if limit <= 0 or per.strip() not in WINDOWS:
            raise ValueError(rate_limit_str)
        return limit, WINDOWS[per.strip()]
    except (AttributeError, ValueError):
        logger.error(f"Invalid RATE_LIMIT format: {rate_limit_str}, defaulting to 100 per minute")
        return 100, 60

class RateLimiter:
    """Sliding-window request counter per client.

    Counts are per process; each instance behind a load balancer limits
    its own share of the traffic.
    """

    def __init__(self, limit, per_seconds, clock=time.monotonic):
        self.limit = limit
        self.per_seconds = per_seconds
        self.clock = clock
        self.requests = defaultdict(deque)
        self._last_sweep = clock()

    def _evict_idle(self, now):
        # Forget clients whose newest request has left the window.
        if now - self._last_sweep < self.per_seconds:
            return
        self._last_sweep = now
        idle = [key for key, window in self.requests.items()
                if not window or now - window[-1] >= self.per_seconds]
        for key in idle:
            del self.requests[key]

    def is_allowed(self, client_key) -> bool:
        now = self.clock()
        self._evict_idle(now)
        window = self.requests[client_key]
        # Remove requests older than the time window
        while window and now - window[0] >= self.per_seconds:
            window.popleft()
        if len(window) >= self.limit:
            logger.warning(f"Rate limit exceeded for {client_key}: {len(window)} requests")
            return False
        window.append(now)
        return True

class RateLimitMiddleware:
    def __init__(self, app, rate_limit: str = "100 per minute", exempt_paths=("/api/v1/health",)):
        self.app = app
        limit, per = parse_rate_limit(rate_limit)
        self.limiter = RateLimiter(limit, per)
        self.exempt_paths = set(exempt_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        client = scope.get("client") or ("unknown", 0)
        if not self.limiter.is_allowed(client[0]):
            body = json.dumps({"error": "Rate limit exceeded", "code": "RateLimited", "status": 429}).encode()
            await send({
                "type": "http.response.start",
                "status": 429,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                    (b"retry-after", str(self.limiter.per_seconds).encode()),
                ],
            })
            await send({"type": "http.response.body", "body": body})
            return

        await self.app(scope, receive, send)
