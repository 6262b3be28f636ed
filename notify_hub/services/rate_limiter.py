"""
Token-bucket admission control for outbound SMS/email sends.

Buckets live in a RateLimiter instance owned by the process (see
``get_rate_limiter``). They are not shared between instances, so the
effective global limit grows with the number of running processes.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from notify_hub.core.config import Settings, settings


logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    capacity: float
    refill_per_sec: float
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        self.last_refill = now


@dataclass(frozen=True)
class BucketLimit:
    capacity: float
    refill_per_sec: float


@dataclass(frozen=True)
class ChannelPolicy:
    provider: str
    global_limit: BucketLimit
    store_limit: BucketLimit
    provider_limit: BucketLimit


def policies_from_settings(cfg: Settings) -> dict[str, ChannelPolicy]:
    return {
        "sms": ChannelPolicy(
            provider=cfg.SMS_PROVIDER_NAME,
            global_limit=BucketLimit(cfg.SMS_GLOBAL_CAPACITY, cfg.SMS_GLOBAL_RPS),
            store_limit=BucketLimit(cfg.SMS_STORE_CAPACITY, cfg.SMS_STORE_RPS),
            provider_limit=BucketLimit(cfg.SMS_PROVIDER_CAPACITY, cfg.SMS_PROVIDER_RPS),
        ),
        "email": ChannelPolicy(
            provider=cfg.EMAIL_PROVIDER_NAME,
            global_limit=BucketLimit(cfg.EMAIL_GLOBAL_CAPACITY, cfg.EMAIL_GLOBAL_RPS),
            store_limit=BucketLimit(cfg.EMAIL_STORE_CAPACITY, cfg.EMAIL_STORE_RPS),
            provider_limit=BucketLimit(cfg.EMAIL_PROVIDER_CAPACITY, cfg.EMAIL_PROVIDER_RPS),
        ),
    }


class RateLimiter:
    def __init__(
        self,
        policies: dict[str, ChannelPolicy] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies = policies if policies is not None else policies_from_settings(settings)
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def _bucket(self, key: str, capacity: float, refill_per_sec: float, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity=capacity, refill_per_sec=refill_per_sec, tokens=capacity, last_refill=now)
            self._buckets[key] = bucket
        bucket.refill(now)
        return bucket

    def try_consume(self, key: str, capacity: float, refill_per_sec: float, cost: float = 1) -> bool:
        bucket = self._bucket(key, capacity, refill_per_sec, self._clock())
        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return True
        return False

    def try_consume_all(self, requests: Iterable[tuple[str, BucketLimit]], cost: float = 1) -> bool:
        """Admit only if every bucket has ``cost`` tokens; deduct from all or none."""
        now = self._clock()
        buckets = [self._bucket(key, limit.capacity, limit.refill_per_sec, now) for key, limit in requests]
        if all(b.tokens >= cost for b in buckets):
            for b in buckets:
                b.tokens -= cost
            return True
        return False

    def scope_keys(self, kind: str, store_uid: str) -> list[tuple[str, BucketLimit]]:
        policy = self.policies[kind]
        return [
            (f"{kind}:global", policy.global_limit),
            (f"{kind}:store:{store_uid}", policy.store_limit),
            (f"{kind}:provider:{policy.provider}", policy.provider_limit),
        ]

    def can_send(self, store_uid: str, kind: str) -> bool:
        admitted = self.try_consume_all(self.scope_keys(kind, store_uid))
        if not admitted:
            logger.info("Send rate limited", extra={"extra": {"channel": kind, "store_uid": store_uid}})
        return admitted

    def can_send_sms(self, store_uid: str) -> bool:
        return self.can_send(store_uid, "sms")

    def can_send_email(self, store_uid: str) -> bool:
        return self.can_send(store_uid, "email")

    def snapshot(self, key: str) -> TokenBucket | None:
        return self._buckets.get(key)

    def reset(self) -> None:
        self._buckets.clear()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """The process-wide limiter, created on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
