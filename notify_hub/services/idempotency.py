"""
Idempotency guard for webhook events and invite creation.

A claim is a primary-key insert into ``processed_events``. The database's
uniqueness check is the transactional check-then-set: of any number of
concurrent claimants for the same key, exactly one insert commits.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.models.idempotency import InviteKey, ProcessedEvent


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class EventOnceResult(Generic[T]):
    ok: bool = True
    skipped: bool = False
    out: T | None = None


def make_idempotency_key(signature: str | None, raw_body: bytes) -> str:
    """Stable key from the platform signature plus the raw body."""
    h = hashlib.sha256()
    h.update(f"{signature or ''}|".encode("utf-8"))
    h.update(raw_body)
    return h.hexdigest()


def invite_key(store_uid: str, order_id: str) -> str:
    return f"invite:{store_uid}:{order_id}"


async def _claim(session: AsyncSession, row: Any) -> bool:
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def with_event_once(
    session: AsyncSession,
    key: str,
    fn: Callable[[], Awaitable[T]],
) -> EventOnceResult[T]:
    """
    Run ``fn`` only for the first caller that claims ``key``.

    The claim is committed before ``fn`` runs. If ``fn`` raises, the key stays
    claimed and the exception propagates: at-most-once, never twice.
    """
    if not await _claim(session, ProcessedEvent(key=key)):
        logger.info("Duplicate event skipped", extra={"extra": {"idempotency_key": key}})
        return EventOnceResult(ok=True, skipped=True)

    out = await fn()
    return EventOnceResult(ok=True, out=out)


async def ensure_single_invite_key(session: AsyncSession, store_uid: str, order_id: str,
                                   commit: bool = True) -> tuple[str, bool]:
    """
    Create ``invite:{store_uid}:{order_id}`` if it does not exist yet.
    Returns the key and whether this call created it.

    With ``commit=False`` the key is only flushed, so the caller can commit it
    together with the invite it guards.
    """
    key = invite_key(store_uid, order_id)
    if await session.get(InviteKey, key) is not None:
        return key, False
    if commit:
        return key, await _claim(session, InviteKey(key=key))

    session.add(InviteKey(key=key))
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        return key, False
    return key, True
