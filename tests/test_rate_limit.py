import pytest
from httpx import ASGITransport, AsyncClient
from campus_fulfillment.middleware.rate_limit import RateLimiter, RateLimitMiddleware, parse_rate_limit

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

def test_parse_rate_limit():
    assert parse_rate_limit("100 per minute") == (100, 60)
    assert parse_rate_limit("5 per second") == (5, 1)
    assert parse_rate_limit("lots") == (100, 60)
    assert parse_rate_limit("0 per hour") == (100, 60)

def test_sliding_window():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, clock=clock)
    assert limiter.is_allowed("10.0.0.1")
    assert limiter.is_allowed("10.0.0.1")
    assert not limiter.is_allowed("10.0.0.1")
    assert limiter.is_allowed("10.0.0.2")

    clock.now += 60
    assert limiter.is_allowed("10.0.0.1")

async def ok_app(scope, receive, send):
    await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"text/plain")]})
    await send({"type": "http.response.body", "body": b"ok"})

@pytest.mark.asyncio
async def test_middleware_returns_429():
    app = RateLimitMiddleware(ok_app, "2 per minute")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.get("/api/v1/wallet")).status_code == 200
        assert (await client.get("/api/v1/wallet")).status_code == 200
        response = await client.get("/api/v1/wallet")
        assert response.status_code == 429
        assert response.json()["code"] == "RateLimited"
        assert response.headers["retry-after"] == "60"

        assert (await client.get("/api/v1/health")).status_code == 200

def test_idle_clients_are_forgotten():
    clock = FakeClock()
    limiter = RateLimiter(5, 60, clock=clock)
    limiter.is_allowed("10.0.0.1")
    limiter.is_allowed("10.0.0.2")

    clock.now += 30
    limiter.is_allowed("10.0.0.2")
    assert set(limiter.requests) == {"10.0.0.1", "10.0.0.2"}

    clock.now += 60
    limiter.is_allowed("10.0.0.3")
    assert set(limiter.requests) == {"10.0.0.3"}
