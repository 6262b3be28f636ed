"""
Request admission for public HTTP endpoints.

Counts requests per ``identifier:client_ip`` in a fixed window and answers
429 with Retry-After once the window's budget is spent. Independent of the
token buckets that gate outbound sends.
"""
import logging
import math
from dataclasses import dataclass

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from notify_hub.core.clock import now_ms
from notify_hub.core.config import settings


logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class RateLimitPreset:
    max_requests: int
    window_ms: int


PUBLIC_STRICT = RateLimitPreset(60, 15 * 60 * 1000)
PUBLIC_MODERATE = RateLimitPreset(100, 15 * 60 * 1000)
AUTHENTICATED = RateLimitPreset(300, 15 * 60 * 1000)
WRITE_STRICT = RateLimitPreset(20, 5 * 60 * 1000)


@dataclass
class WindowEntry:
    count: int
    reset_at: int
    first_request: int


class RateLimitExceeded(Exception):
    """Raised by the admission dependency; rendered by ``rate_limit_exceeded_handler``."""

    def __init__(self, body: dict, headers: dict[str, str]):
        super().__init__(body.get("message"))
        self.body = body
        self.headers = headers


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content=exc.body, headers=exc.headers)


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0


def anonymize_ip(ip: str) -> str:
    if ip == "unknown":
        return ip
    if "." in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            return ".".join(parts[:3] + ["0"])
    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 4:
            return ":".join(parts[:4]) + "::"
    return ip


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class PublicRateLimiter:
    def __init__(self, skip_ips: list[str] | None = None):
        self.skip_ips = set(skip_ips or [])
        self._entries: dict[str, WindowEntry] = {}
        self._last_cleanup = now_ms()

    def _cleanup(self, now: int) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_MS:
            return
        self._last_cleanup = now
        stale = [k for k, e in self._entries.items() if now > e.reset_at]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.info("Cleaned up %d stale rate limit entries", len(stale))

    def hit(self, identifier: str, client_ip: str, max_requests: int, window_ms: int,
            now: int | None = None) -> RateLimitDecision:
        now = now if now is not None else now_ms()
        self._cleanup(now)

        if client_ip in self.skip_ips:
            return RateLimitDecision(True, 0, max_requests, max_requests, now + window_ms)

        key = f"{identifier}:{client_ip}"
        entry = self._entries.get(key)
        if entry is None or now > entry.reset_at:
            entry = WindowEntry(count=1, reset_at=now + window_ms, first_request=now)
            self._entries[key] = entry
            return RateLimitDecision(True, 1, max_requests, max_requests - 1, entry.reset_at)

        entry.count += 1
        if entry.count > max_requests:
            retry_after = max(1, math.ceil((entry.reset_at - now) / 1000))
            logger.warning(
                "Rate limit blocked %s on %s", anonymize_ip(client_ip), identifier,
                extra={"extra": {"identifier": identifier, "count": entry.count, "limit": max_requests}},
            )
            return RateLimitDecision(False, entry.count, max_requests, 0, entry.reset_at, retry_after)

        return RateLimitDecision(True, entry.count, max_requests, max_requests - entry.count, entry.reset_at)

    def status(self, identifier: str, client_ip: str) -> WindowEntry | None:
        return self._entries.get(f"{identifier}:{client_ip}")

    def reset(self, identifier: str, client_ip: str) -> bool:
        return self._entries.pop(f"{identifier}:{client_ip}", None) is not None

    def stats(self) -> dict[str, int]:
        return {"totalKeys": len(self._entries)}


public_limiter = PublicRateLimiter(skip_ips=settings.PUBLIC_RATE_LIMIT_SKIP_IPS)


def rate_limit_public(identifier: str, preset: RateLimitPreset = PUBLIC_MODERATE,
                      message: str | None = None, limiter: PublicRateLimiter | None = None):
    """
    FastAPI dependency factory for unauthenticated routes.
    Usage: dependencies=[Depends(rate_limit_public("review-submit", WRITE_STRICT))]
    The app must register ``rate_limit_exceeded_handler`` for ``RateLimitExceeded``.
    """
    def dependency(request: Request, response: Response) -> None:
        active = limiter or public_limiter
        decision = active.hit(identifier, get_client_ip(request), preset.max_requests, preset.window_ms)
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_at),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after)
            raise RateLimitExceeded(
                body={
                    "error": "rate_limit_exceeded",
                    "message": message or "Too many requests, please try again later",
                    "retryAfter": decision.retry_after,
                    "limit": preset.max_requests,
                    "windowMs": preset.window_ms,
                },
                headers=headers,
            )
        response.headers.update(headers)

    return dependency
