import httpx
import pytest
from fastapi import Depends, FastAPI

from notify_hub.services.public_rate_limit import (
    CLEANUP_INTERVAL_MS,
    PublicRateLimiter,
    RateLimitExceeded,
    RateLimitPreset,
    anonymize_ip,
    rate_limit_exceeded_handler,
    rate_limit_public,
)


def test_window_counts_and_blocks():
    limiter = PublicRateLimiter()
    now = 1_000_000
    decisions = [limiter.hit("api", "1.2.3.4", 3, 60_000, now=now + i) for i in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    blocked = decisions[-1]
    assert blocked.retry_after == 60
    assert blocked.reset_at == now + 60_000


def test_window_resets_after_expiry():
    limiter = PublicRateLimiter()
    limiter.hit("api", "ip", 1, 1000, now=0)
    assert limiter.hit("api", "ip", 1, 1000, now=500).allowed is False
    assert limiter.hit("api", "ip", 1, 1000, now=1001).allowed is True


def test_identifiers_and_ips_are_independent():
    limiter = PublicRateLimiter()
    limiter.hit("a", "ip1", 1, 1000, now=0)
    assert limiter.hit("b", "ip1", 1, 1000, now=1).allowed is True
    assert limiter.hit("a", "ip2", 1, 1000, now=1).allowed is True


def test_skip_ips_are_never_counted():
    limiter = PublicRateLimiter(skip_ips=["10.0.0.1"])
    assert all(limiter.hit("a", "10.0.0.1", 1, 1000, now=i).allowed for i in range(5))
    assert limiter.status("a", "10.0.0.1") is None


def test_stale_entries_are_cleaned_up():
    limiter = PublicRateLimiter()
    limiter._last_cleanup = 0
    limiter.hit("a", "ip", 5, 1000, now=1)
    assert limiter.stats()["totalKeys"] == 1
    limiter.hit("b", "ip", 5, 1000, now=CLEANUP_INTERVAL_MS + 10)
    assert limiter.status("a", "ip") is None
    assert limiter.stats()["totalKeys"] == 1


def test_anonymize_ip():
    assert anonymize_ip("192.168.1.77") == "192.168.1.0"
    assert anonymize_ip("2001:db8:85a3:8d3:1319:8a2e:370:7348") == "2001:db8:85a3:8d3::"
    assert anonymize_ip("unknown") == "unknown"


@pytest.mark.asyncio
async def test_dependency_sets_headers_and_answers_429():
    limiter = PublicRateLimiter()
    app = FastAPI()
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.get("/ping", dependencies=[Depends(rate_limit_public("ping", RateLimitPreset(2, 60_000), limiter=limiter))])
    async def ping():
        return {"ok": True}

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        headers = {"X-Forwarded-For": "5.6.7.8, 10.0.0.1"}
        first = await client.get("/ping", headers=headers)
        await client.get("/ping", headers=headers)
        blocked = await client.get("/ping", headers=headers)

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1
    body = blocked.json()
    assert set(body) == {"error", "message", "retryAfter", "limit", "windowMs"}
    assert body["error"] == "rate_limit_exceeded"
    assert body["limit"] == 2
    assert body["windowMs"] == 60_000
    assert body["retryAfter"] == int(blocked.headers["Retry-After"])
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    assert limiter.status("ping", "5.6.7.8").count == 3
