"""
Durable outbox of notification jobs with soft leases.

A lease is a (locked_by, locked_at) stamp. It is active while
``locked_at > now - lease_ms``; after that the job may be leased again by
any worker. Leasing is a conditional UPDATE, so two workers polling the same
rows can never both win a job while its lease is active.
"""
import logging
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.clock import now_ms
from notify_hub.core.config import settings
from notify_hub.models.outbox import OutboxJob, OutboxStatus
from notify_hub.schemas.outbox import JobPayload


logger = logging.getLogger(__name__)

CHANNELS = ("sms", "email")
MAX_BACKOFF_MINUTES = 15


def compute_next_backoff_ms(attempts: int) -> int:
    """1, 2, 4, 8 minutes, then capped at 15."""
    return min(MAX_BACKOFF_MINUTES, 2 ** max(0, attempts)) * 60_000


def normalize_channels(channels: Iterable[str]) -> list[str]:
    ordered: list[str] = []
    for ch in channels:
        if ch not in CHANNELS:
            raise ValueError(f"Unknown channel: {ch}")
        if ch not in ordered:
            ordered.append(ch)
    if not ordered:
        raise ValueError("An outbox job needs at least one channel")
    return ordered


class OutboxQueue:
    def __init__(self, session: AsyncSession, lease_ms: int | None = None, max_attempts: int | None = None):
        self.session = session
        self.lease_ms = lease_ms if lease_ms is not None else settings.OUTBOX_LEASE_MS
        self.max_attempts = max_attempts if max_attempts is not None else settings.MAX_DELIVERY_ATTEMPTS

    def _lease_is_free(self, cutoff: int):
        return or_(OutboxJob.locked_at.is_(None), OutboxJob.locked_at <= cutoff)

    async def enqueue_invite_job(
        self,
        invite_id: str,
        store_uid: str,
        channels: Iterable[str],
        payload: JobPayload | dict[str, Any],
        now: int | None = None,
        commit: bool = True,
    ) -> str:
        now = now if now is not None else now_ms()
        if isinstance(payload, dict):
            payload = JobPayload.model_validate(payload)
        job = OutboxJob(
            invite_id=invite_id,
            store_uid=store_uid,
            channels=normalize_channels(channels),
            payload=payload.model_dump(exclude_none=True),
            status=OutboxStatus.PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(job)
        if commit:
            await self.session.commit()
        else:
            await self.session.flush()
        logger.info("Outbox job enqueued", extra={"extra": {"job_id": job.id, "invite_id": invite_id,
                                                             "store_uid": store_uid, "channels": job.channels}})
        return job.id

    async def lease_pending_jobs(self, worker_id: str, limit: int = 20, now: int | None = None) -> list[OutboxJob]:
        now = now if now is not None else now_ms()
        cutoff = now - self.lease_ms

        candidates = (
            select(OutboxJob.id)
            .where(
                OutboxJob.status.in_(OutboxStatus.LEASABLE),
                OutboxJob.next_attempt_at <= now,
                self._lease_is_free(cutoff),
            )
            .order_by(OutboxJob.next_attempt_at.asc())
            .limit(limit)
        )
        ids = (await self.session.execute(candidates)).scalars().all()

        leased_ids: list[str] = []
        for job_id in ids:
            result = await self.session.execute(
                update(OutboxJob)
                .where(
                    OutboxJob.id == job_id,
                    OutboxJob.status.in_(OutboxStatus.LEASABLE),
                    self._lease_is_free(cutoff),
                )
                .values(status=OutboxStatus.LEASED, locked_by=worker_id, locked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                leased_ids.append(job_id)
        await self.session.commit()

        if not leased_ids:
            return []

        stmt = (
            select(OutboxJob)
            .where(OutboxJob.id.in_(leased_ids))
            .order_by(OutboxJob.next_attempt_at.asc())
            .execution_options(populate_existing=True)
        )
        jobs = list((await self.session.execute(stmt)).scalars().all())
        logger.info("Leased outbox jobs", extra={"extra": {"worker_id": worker_id, "count": len(jobs),
                                                            "candidates": len(ids)}})
        return jobs

    async def complete_job(self, job_id: str, status: str, last_error: str | None = None,
                           worker_id: str | None = None, now: int | None = None) -> bool:
        """Write the final status/error and clear the lease."""
        now = now if now is not None else now_ms()
        stmt = update(OutboxJob).where(OutboxJob.id == job_id)
        if worker_id is not None:
            stmt = stmt.where(OutboxJob.locked_by == worker_id)
        result = await self.session.execute(
            stmt.values(status=status, last_error=last_error, locked_by=None, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount != 1:
            logger.warning("Outbox job not completed (lease lost or missing)",
                           extra={"extra": {"job_id": job_id, "status": status, "worker_id": worker_id}})
            return False
        return True

    async def fail_job(self, job: OutboxJob, error: str, worker_id: str | None = None,
                       now: int | None = None) -> str:
        """
        Record a failed attempt.
        Returns the new status: ``fail`` (rescheduled with backoff) or ``dead``.
        """
        now = now if now is not None else now_ms()
        attempts = (job.attempts or 0) + 1

        if attempts >= self.max_attempts:
            values = dict(status=OutboxStatus.DEAD, attempts=attempts, last_error=error)
        else:
            next_at = max(job.next_attempt_at or now, now + compute_next_backoff_ms(attempts - 1))
            values = dict(status=OutboxStatus.FAIL, attempts=attempts, last_error=error, next_attempt_at=next_at)

        stmt = update(OutboxJob).where(OutboxJob.id == job.id)
        if worker_id is not None:
            stmt = stmt.where(OutboxJob.locked_by == worker_id)
        result = await self.session.execute(
            stmt.values(locked_by=None, locked_at=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if result.rowcount != 1:
            logger.warning("Outbox failure not recorded (lease lost or missing)",
                           extra={"extra": {"job_id": job.id, "worker_id": worker_id}})
            return job.status
        if values["status"] == OutboxStatus.DEAD:
            logger.error("Outbox job is dead after %d attempts", attempts,
                         extra={"extra": {"job_id": job.id, "error": error}})
        else:
            logger.info("Outbox job rescheduled", extra={"extra": {"job_id": job.id, "attempts": attempts,
                                                                   "next_attempt_at": values["next_attempt_at"]}})
        return values["status"]

    async def release_job(self, job_id: str, delay_ms: int, worker_id: str | None = None,
                          now: int | None = None) -> bool:
        """Give a leased job back without spending an attempt."""
        now = now if now is not None else now_ms()
        stmt = update(OutboxJob).where(OutboxJob.id == job_id, OutboxJob.status == OutboxStatus.LEASED)
        if worker_id is not None:
            stmt = stmt.where(OutboxJob.locked_by == worker_id)
        result = await self.session.execute(
            stmt.values(status=OutboxStatus.PENDING, next_attempt_at=now + delay_ms,
                        locked_by=None, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def get_job(self, job_id: str) -> OutboxJob | None:
        stmt = select(OutboxJob).where(OutboxJob.id == job_id).execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalars().first()

    async def list_dead_jobs(self, limit: int = 50, offset: int = 0,
                             store_uid: str | None = None) -> list[OutboxJob]:
        stmt = select(OutboxJob).where(OutboxJob.status == OutboxStatus.DEAD)
        if store_uid:
            stmt = stmt.where(OutboxJob.store_uid == store_uid)
        stmt = stmt.order_by(OutboxJob.updated_at.desc()).limit(limit).offset(offset)
        return list((await self.session.execute(stmt)).scalars().all())

    async def requeue_dead_job(self, job_id: str, operator_id: str | None = None,
                               now: int | None = None) -> bool:
        """
        Put a dead job back in the queue. Attempts are kept, so a requeued job
        gets a single new attempt before it is dead again.
        """
        now = now if now is not None else now_ms()
        result = await self.session.execute(
            update(OutboxJob)
            .where(OutboxJob.id == job_id, OutboxJob.status == OutboxStatus.DEAD)
            .values(status=OutboxStatus.PENDING, next_attempt_at=now, locked_by=None, locked_at=None,
                    updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        success = result.rowcount == 1
        if success:
            logger.info("Dead outbox job requeued", extra={"extra": {"job_id": job_id, "operator_id": operator_id}})
        return success

    async def cancel_job(self, job_id: str, operator_id: str | None = None, now: int | None = None) -> bool:
        now = now if now is not None else now_ms()
        result = await self.session.execute(
            update(OutboxJob)
            .where(OutboxJob.id == job_id, OutboxJob.status.not_in(OutboxStatus.TERMINAL))
            .values(status=OutboxStatus.CANCELLED, locked_by=None, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        success = result.rowcount == 1
        if success:
            logger.info("Outbox job cancelled", extra={"extra": {"job_id": job_id, "operator_id": operator_id}})
        return success

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(OutboxJob.status, func.count()).group_by(OutboxJob.status)
        return {status: count for status, count in (await self.session.execute(stmt)).all()}
