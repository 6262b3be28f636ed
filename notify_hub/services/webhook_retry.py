"""
Retry queue for inbound webhooks whose processing failed, and the Dead
Letter Queue (DLQ) that holds them once the retry budget is spent.

Entries in ``webhook_retry_queue`` are retried on a fixed backoff schedule.
After ``max_attempts`` failed retries an entry is copied to
``webhook_dead_letter`` and removed from the retry queue. The retry processor
never reads the DLQ: only an operator brings an entry back.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.clock import now_ms
from notify_hub.core.config import settings
from notify_hub.models.webhook import PRIORITY_RANK, DeadLetterEntry, WebhookRetryEntry
from .logger_service import log_event


logger = logging.getLogger(__name__)

RetryHandler = Callable[[str, dict[str, str]], Awaitable[Any]]

DAY_MS = 24 * 60 * 60 * 1000
# an entry being processed is pushed out of the due window for this long
CLAIM_MS = 5 * 60 * 1000
CLEANUP_BATCH = 500

RETRY_QUEUE_LIMIT = 1000
DLQ_LIMIT = 500
UNREVIEWED_LIMIT = 100
STALE_AGE_MS = DAY_MS


class DLQError(Exception):
    pass


class DLQEntryNotFound(DLQError):
    pass


class DLQEntryResolved(DLQError):
    pass


@dataclass
class RetryRunResult:
    ok: bool = True
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    moved_to_dlq: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "movedToDLQ": self.moved_to_dlq,
            "errors": self.errors,
        }


def normalize_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    """Keep the first value of multi-valued headers; everything becomes a string."""
    out: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        out[str(key)] = "" if value is None else str(value)
    return out


class WebhookRetryService:
    def __init__(self, session: AsyncSession, max_attempts: int | None = None,
                 backoff_ms: list[int] | None = None, batch_size: int | None = None):
        self.session = session
        self.max_attempts = max_attempts if max_attempts is not None else settings.MAX_DELIVERY_ATTEMPTS
        self.backoff_ms = list(backoff_ms or settings.WEBHOOK_RETRY_BACKOFF_MS)
        self.batch_size = batch_size or settings.WEBHOOK_RETRY_BATCH

    def backoff_for(self, attempts: int) -> int:
        """Delay before the next retry; the last step repeats."""
        return self.backoff_ms[min(max(attempts, 0), len(self.backoff_ms) - 1)]

    # ----- retry queue -----

    async def enqueue_webhook_retry(
        self,
        event: str,
        raw_body: bytes | str,
        headers: Mapping[str, Any] | None,
        error: BaseException | str,
        merchant: Any = None,
        order_id: Any = None,
        store_uid: str | None = None,
        priority: str = "normal",
        idempotency_key: str | None = None,
        now: int | None = None,
    ) -> str | None:
        """Persist a failed webhook for a later retry. Returns the retry id, or None when retries are off."""
        if not settings.WEBHOOK_RETRY_ENABLED:
            logger.warning("Webhook retry disabled, failed event dropped", extra={"extra": {"event": event}})
            return None

        now = now if now is not None else now_ms()
        if priority not in PRIORITY_RANK:
            priority = "normal"
        retry_id = f"retry_{now}_{uuid.uuid4().hex[:9]}"
        message = str(error) or error.__class__.__name__

        entry = WebhookRetryEntry(
            id=retry_id,
            event=event,
            merchant=None if merchant is None else str(merchant),
            order_id=None if order_id is None else str(order_id),
            raw_body=raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body,
            headers=normalize_headers(headers),
            idempotency_key=idempotency_key,
            attempts=0,
            max_attempts=self.max_attempts,
            next_retry_at=now + self.backoff_for(0),
            last_error=message,
            last_attempt_at=now,
            errors=[{"attempt": 0, "timestamp": now, "error": message}],
            store_uid=store_uid,
            priority=priority,
            priority_rank=PRIORITY_RANK[priority],
            tags=[t for t in (event, store_uid or "unknown") if t],
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        await self.session.commit()

        logger.info("Webhook enqueued for retry", extra={"extra": {"retry_id": retry_id, "event": event,
                                                                   "store_uid": store_uid, "error": message}})
        await log_event(step="webhook_retry.enqueue", status="QUEUED", details={"retry_id": retry_id, "event": event})
        return retry_id

    async def _claim(self, entry_id: str, now: int) -> bool:
        """Push a due entry out of the window so an overlapping run skips it."""
        result = await self.session.execute(
            update(WebhookRetryEntry)
            .where(WebhookRetryEntry.id == entry_id, WebhookRetryEntry.next_retry_at <= now)
            .values(next_retry_at=now + CLAIM_MS)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def _load_entry(self, entry_id: str) -> WebhookRetryEntry | None:
        return await self.session.get(WebhookRetryEntry, entry_id, populate_existing=True)

    async def process_retry_queue(self, handler: RetryHandler, now: int | None = None) -> RetryRunResult:
        """
        Re-run every due entry once.

        Success deletes the entry. Failure records the error and reschedules
        it, or moves it to the DLQ when the retry budget is spent.
        """
        now = now if now is not None else now_ms()
        result = RetryRunResult()

        stmt = (
            select(WebhookRetryEntry.id)
            .where(WebhookRetryEntry.next_retry_at <= now)
            .order_by(WebhookRetryEntry.priority_rank.asc(), WebhookRetryEntry.next_retry_at.asc())
            .limit(self.batch_size)
        )
        ids = list((await self.session.execute(stmt)).scalars().all())
        if not ids:
            logger.debug("No pending webhook retries")
            return result

        logger.info("Processing webhook retries", extra={"extra": {"count": len(ids)}})
        for entry_id in ids:
            try:
                if not await self._claim(entry_id, now):
                    continue
                entry = await self._load_entry(entry_id)
                if entry is None:
                    continue
                result.processed += 1

                try:
                    await handler(entry.raw_body, dict(entry.headers or {}))
                except Exception as e:
                    await self.session.rollback()
                    entry = await self._load_entry(entry_id)
                    if entry is None:
                        continue
                    if await self._record_failure(entry, e, now):
                        result.moved_to_dlq += 1
                    else:
                        result.failed += 1
                    continue

                await self.session.execute(delete(WebhookRetryEntry).where(WebhookRetryEntry.id == entry_id))
                await self.session.commit()
                result.succeeded += 1
                logger.info("Webhook retry succeeded", extra={"extra": {"retry_id": entry_id,
                                                                        "attempt": entry.attempts + 1}})
            except Exception as e:
                await self.session.rollback()
                result.errors.append(f"{entry_id}: {e}")
                logger.error("Error processing webhook retry %s: %s", entry_id, e, exc_info=True)

        await log_event(step="webhook_retry.run", status="OK" if not result.errors else "PARTIAL",
                        details=result.to_dict())
        return result

    async def _record_failure(self, entry: WebhookRetryEntry, error: BaseException, now: int) -> bool:
        """Returns True when the entry went to the DLQ."""
        attempts = entry.attempts + 1
        message = str(error) or error.__class__.__name__
        entry.attempts = attempts
        entry.last_error = message
        entry.last_attempt_at = now
        entry.updated_at = now
        entry.errors = [*(entry.errors or []), {"attempt": attempts, "timestamp": now, "error": message}]

        if attempts >= entry.max_attempts:
            await self._move_to_dlq(entry, now)
            return True

        entry.next_retry_at = now + self.backoff_for(attempts)
        await self.session.commit()
        logger.info("Webhook retry failed, rescheduled",
                    extra={"extra": {"retry_id": entry.id, "attempts": attempts, "max_attempts": entry.max_attempts,
                                     "next_retry_at": entry.next_retry_at, "error": message}})
        return False

    async def _move_to_dlq(self, entry: WebhookRetryEntry, now: int) -> None:
        """Copy the entry with its payload to the DLQ and drop it from the retry queue in one commit."""
        if not settings.WEBHOOK_DLQ_ENABLED:
            # nowhere to park it: keep it in the retry queue on the slowest schedule
            entry.next_retry_at = now + self.backoff_ms[-1]
            await self.session.commit()
            logger.warning("DLQ disabled, entry kept in retry queue", extra={"extra": {"retry_id": entry.id}})
            return

        dlq_id = f"dlq_{entry.id}"
        self.session.add(DeadLetterEntry(
            id=dlq_id,
            event=entry.event,
            merchant=entry.merchant,
            order_id=entry.order_id,
            raw_body=entry.raw_body,
            headers=dict(entry.headers or {}),
            idempotency_key=entry.idempotency_key,
            total_attempts=entry.attempts,
            errors=list(entry.errors or []),
            store_uid=entry.store_uid,
            priority=entry.priority,
            tags=list(entry.tags or []),
            failed_at=now,
            created_at=entry.created_at,
            updated_at=now,
        ))
        await self.session.delete(entry)
        await self.session.commit()

        logger.error("Webhook moved to DLQ after %d attempts", entry.attempts,
                     extra={"extra": {"dlq_id": dlq_id, "event": entry.event, "store_uid": entry.store_uid,
                                      "error": entry.last_error}})
        await log_event(step="webhook_retry.dlq", status="DEAD", retry_count=entry.attempts,
                        details={"dlq_id": dlq_id, "event": entry.event, "error": entry.last_error})

    # ----- DLQ remediation -----

    async def _get_unresolved(self, dlq_id: str) -> DeadLetterEntry:
        entry = await self.session.get(DeadLetterEntry, dlq_id, populate_existing=True)
        if entry is None:
            raise DLQEntryNotFound(f"Webhook not found in DLQ: {dlq_id}")
        if entry.resolution is not None:
            raise DLQEntryResolved(f"DLQ entry already resolved as {entry.resolution}")
        return entry

    async def manual_retry_webhook(self, dlq_id: str, operator_id: str, handler: RetryHandler,
                                   now: int | None = None) -> dict[str, Any]:
        """
        Re-run a parked webhook right away.
        Success resolves the entry as ``retried``; failure records the error and
        leaves the entry unresolved.
        """
        now = now if now is not None else now_ms()
        entry = await self._get_unresolved(dlq_id)
        raw_body, headers = entry.raw_body, dict(entry.headers or {})

        try:
            await handler(raw_body, headers)
        except Exception as e:
            await self.session.rollback()
            entry = await self._get_unresolved(dlq_id)
            message = str(e) or e.__class__.__name__
            entry.total_attempts += 1
            entry.errors = [*(entry.errors or []),
                            {"attempt": entry.total_attempts, "timestamp": now, "error": message,
                             "manual": True, "operator": operator_id}]
            entry.updated_at = now
            await self.session.commit()
            logger.warning("Manual webhook retry failed", extra={"extra": {"dlq_id": dlq_id,
                                                                           "operator_id": operator_id,
                                                                           "error": message}})
            return {"ok": False, "error": message}

        entry.total_attempts += 1
        entry.reviewed_at = now
        entry.reviewed_by = operator_id
        entry.resolution = "retried"
        entry.notes = "Manually retried by admin"
        entry.updated_at = now
        await self.session.commit()
        logger.info("Manual webhook retry succeeded", extra={"extra": {"dlq_id": dlq_id, "operator_id": operator_id}})
        await log_event(step="webhook_retry.manual", status="OK", details={"dlq_id": dlq_id, "operator": operator_id})
        return {"ok": True}

    async def resolve_dlq_entry(self, dlq_id: str, operator_id: str, resolution: str,
                                notes: str | None = None, now: int | None = None) -> DeadLetterEntry:
        """Close an entry without reprocessing it."""
        if resolution not in ("ignored", "manual_fix"):
            raise ValueError(f"Invalid resolution: {resolution}")
        now = now if now is not None else now_ms()
        entry = await self.session.get(DeadLetterEntry, dlq_id, populate_existing=True)
        if entry is None:
            raise DLQEntryNotFound(f"Webhook not found in DLQ: {dlq_id}")
        # only the review annotation may change on a DLQ entry
        entry.reviewed_at = now
        entry.reviewed_by = operator_id
        entry.resolution = resolution
        entry.notes = notes
        entry.updated_at = now
        await self.session.commit()
        logger.info("DLQ entry resolved", extra={"extra": {"dlq_id": dlq_id, "resolution": resolution,
                                                           "operator_id": operator_id}})
        return entry

    # ----- queries -----

    async def get_retry_queue_status(self, now: int | None = None) -> dict[str, Any]:
        now = now if now is not None else now_ms()
        total, pending, oldest = (await self.session.execute(
            select(
                func.count(WebhookRetryEntry.id),
                func.count(WebhookRetryEntry.id).filter(WebhookRetryEntry.next_retry_at <= now),
                func.min(WebhookRetryEntry.created_at),
            )
        )).one()
        rows = (await self.session.execute(
            select(WebhookRetryEntry.priority, func.count()).group_by(WebhookRetryEntry.priority)
        )).all()
        by_priority = {"high": 0, "normal": 0, "low": 0}
        by_priority.update({p: c for p, c in rows})
        return {
            "ok": True,
            "total": total,
            "pending": pending,
            "scheduled": total - pending,
            "byPriority": by_priority,
            "oldestEntry": oldest,
        }

    async def get_dlq_status(self) -> dict[str, Any]:
        unresolved = DeadLetterEntry.resolution.is_(None)
        total, unreviewed, oldest, oldest_unresolved = (await self.session.execute(
            select(
                func.count(DeadLetterEntry.id),
                func.count(DeadLetterEntry.id).filter(unresolved),
                func.min(DeadLetterEntry.failed_at),
                func.min(DeadLetterEntry.failed_at).filter(unresolved),
            )
        )).one()
        rows = (await self.session.execute(
            select(DeadLetterEntry.resolution, func.count())
            .where(DeadLetterEntry.resolution.is_not(None))
            .group_by(DeadLetterEntry.resolution)
        )).all()
        return {
            "ok": True,
            "total": total,
            "unreviewed": unreviewed,
            "reviewed": total - unreviewed,
            "byResolution": {r: c for r, c in rows},
            "oldestEntry": oldest,
            "oldestUnresolved": oldest_unresolved,
        }

    async def list_dlq_entries(self, limit: int = 50, start_after: str | None = None,
                               only_unreviewed: bool = False) -> tuple[list[DeadLetterEntry], bool]:
        """Newest failures first. ``start_after`` is the id of the last entry of the previous page."""
        stmt = select(DeadLetterEntry)
        if only_unreviewed:
            stmt = stmt.where(DeadLetterEntry.resolution.is_(None))
        if start_after:
            cursor = await self.session.get(DeadLetterEntry, start_after)
            if cursor is not None:
                stmt = stmt.where(
                    (DeadLetterEntry.failed_at < cursor.failed_at)
                    | ((DeadLetterEntry.failed_at == cursor.failed_at) & (DeadLetterEntry.id > cursor.id))
                )
        stmt = stmt.order_by(DeadLetterEntry.failed_at.desc(), DeadLetterEntry.id.asc()).limit(limit + 1)
        rows = list((await self.session.execute(stmt)).scalars().all())
        return rows[:limit], len(rows) > limit

    async def cleanup_old_dlq_entries(self, older_than_days: int = 90, now: int | None = None) -> int:
        """Delete resolved entries reviewed before the cutoff. Unresolved entries are never deleted."""
        now = now if now is not None else now_ms()
        cutoff = now - older_than_days * DAY_MS
        ids = (await self.session.execute(
            select(DeadLetterEntry.id)
            .where(DeadLetterEntry.resolution.is_not(None), DeadLetterEntry.reviewed_at <= cutoff)
            .limit(CLEANUP_BATCH)
        )).scalars().all()
        if ids:
            await self.session.execute(delete(DeadLetterEntry).where(DeadLetterEntry.id.in_(ids)))
            await self.session.commit()
        logger.info("Old DLQ entries cleaned up", extra={"extra": {"deleted": len(ids), "older_than_days": older_than_days}})
        return len(ids)

    async def check_retry_system_health(self, now: int | None = None) -> dict[str, Any]:
        now = now if now is not None else now_ms()
        retry = await self.get_retry_queue_status(now)
        dlq = await self.get_dlq_status()

        issues: list[str] = []
        if retry["total"] > RETRY_QUEUE_LIMIT:
            issues.append(f"Retry queue is large: {retry['total']} entries")
        if dlq["total"] > DLQ_LIMIT:
            issues.append(f"DLQ is large: {dlq['total']} entries")
        if dlq["unreviewed"] > UNREVIEWED_LIMIT:
            issues.append(f"Many unreviewed DLQ entries: {dlq['unreviewed']}")
        if retry["oldestEntry"] is not None and now - retry["oldestEntry"] > STALE_AGE_MS:
            issues.append("Retry queue has entries older than 24 hours")

        oldest_unresolved_age = None
        if dlq["oldestUnresolved"] is not None:
            oldest_unresolved_age = now - dlq["oldestUnresolved"]
            if oldest_unresolved_age > STALE_AGE_MS:
                issues.append("DLQ has unreviewed entries older than 24 hours")

        return {
            "ok": True,
            "healthy": not issues,
            "issues": issues,
            "metrics": {
                "retry_queue_size": retry["total"],
                "retry_pending": retry["pending"],
                "dlq_size": dlq["total"],
                "dlq_unreviewed": dlq["unreviewed"],
                "oldest_retry": retry["oldestEntry"],
                "oldest_dlq": dlq["oldestEntry"],
                "oldest_unresolved_age_ms": oldest_unresolved_age,
            },
        }
