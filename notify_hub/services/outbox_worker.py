import logging
import time
import uuid

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.config import settings
from notify_hub.core.logging import set_worker_id
from notify_hub.core.observability import log_step
from notify_hub.integrations.senders import ChannelSenders
from notify_hub.models.invite import Store
from notify_hub.models.outbox import OutboxJob, OutboxStatus
from notify_hub.schemas.outbox import JobPayload
from .channels import Attempt, record_invite_channel
from .logger_service import log_event
from .outbox_queue import OutboxQueue
from .rate_limiter import RateLimiter, get_rate_limiter


logger = logging.getLogger(__name__)

WORKER_ID = f"w_{uuid.uuid4().hex[:6]}"
# handle() outcome when the lease expired and another worker owns the job
LEASE_LOST = "lease_lost"


class OutboxWorker:
    PROCESS_NAME = "OutboxWorker"

    def __init__(
        self,
        session: AsyncSession,
        rate_limiter: RateLimiter | None = None,
        senders: ChannelSenders | None = None,
        worker_id: str | None = None,
        queue: OutboxQueue | None = None,
    ):
        self.session = session
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.senders = senders
        self.worker_id = worker_id or WORKER_ID
        self.queue = queue or OutboxQueue(session)

    @log_step("outbox.run_once")
    async def run_once(self, limit: int | None = None) -> int:
        """Lease one batch and handle every job in it. Returns the number of handled jobs."""
        set_worker_id(self.worker_id)
        limit = limit or settings.OUTBOX_BATCH_SIZE
        jobs = await self.queue.lease_pending_jobs(self.worker_id, limit)
        if not jobs:
            logger.debug("No outbox jobs due")
            return 0

        own_senders = self.senders is None
        senders = self.senders or ChannelSenders()
        processed = 0
        try:
            for job in jobs:
                job_id = job.id
                try:
                    await self.handle(job, senders)
                    processed += 1
                except Exception as e:
                    logger.error("Outbox job %s crashed: %s", job_id, e, exc_info=True)
                    await self.session.rollback()
                    # rollback expired the instance
                    job = await self.queue.get_job(job_id)
                    if job is not None:
                        await self.queue.fail_job(job, f"worker_error: {e}", worker_id=self.worker_id)
                    processed += 1
        finally:
            if own_senders:
                await senders.close()
        return processed

    async def handle(self, job: OutboxJob, senders: ChannelSenders) -> str:
        """Dispatch every channel of a leased job and record the outcome."""
        t0 = time.perf_counter()
        job_id, invite_id, store_uid, attempts = job.id, job.invite_id, job.store_uid, job.attempts or 0
        payload = JobPayload.model_validate(job.payload or {})
        errors: list[str] = []
        any_ok = False
        attempted = 0

        for ch in job.channels:
            if not self.rate_limiter.can_send(store_uid, ch):
                errors.append(f"RateLimited:{ch}")
                continue

            attempted += 1
            attempt = await self._send_channel(ch, payload, senders)
            await record_invite_channel(self.session, invite_id, ch, attempt)
            if attempt.ok:
                any_ok = True
            else:
                errors.append(f"{ch}:{attempt.error}")

        error_text = "; ".join(errors) or None
        if any_ok:
            await self._increment_usage(store_uid)
            completed = await self.queue.complete_job(job_id, OutboxStatus.OK, last_error=error_text,
                                                      worker_id=self.worker_id)
            status = OutboxStatus.OK if completed else LEASE_LOST
        elif attempted == 0:
            # every channel was rate limited: not a delivery failure
            released = await self.queue.release_job(job_id, settings.OUTBOX_RATE_LIMITED_DELAY_MS,
                                                    worker_id=self.worker_id)
            status = OutboxStatus.PENDING if released else LEASE_LOST
        else:
            status = await self.queue.fail_job(job, error_text or "delivery_failed", worker_id=self.worker_id)
            if status == OutboxStatus.LEASED:
                status = LEASE_LOST
            else:
                fresh = await self.queue.get_job(job_id)
                attempts = fresh.attempts if fresh is not None else attempts + 1

        dt = round((time.perf_counter() - t0) * 1000)
        extra = {"job_id": job_id, "status": status, "attempts": attempts, "elapsed_ms": dt, "errors": errors}
        if status == LEASE_LOST:
            logger.warning("Outbox job lease lost before its result was written", extra={"extra": extra})
        else:
            logger.info("Outbox job handled", extra={"extra": extra})
        await log_event(step="outbox.job", status=status.upper(), elapsed_ms=dt, retry_count=attempts,
                        job_id=job_id, details={"invite_id": invite_id, "store_uid": store_uid,
                                                "errors": errors})
        return status

    async def _send_channel(self, channel: str, payload: JobPayload, senders: ChannelSenders) -> Attempt:
        try:
            if channel == "sms":
                if not payload.phone or not payload.smsText:
                    raise ValueError("missing_sms_fields")
                r = await senders.send_sms(payload.phone, payload.smsText)
            elif channel == "email":
                if not payload.emailTo or not payload.emailHtml:
                    raise ValueError("missing_email_fields")
                subject = payload.emailSubject or settings.EMAIL_DEFAULT_SUBJECT
                r = await senders.send_email(payload.emailTo, subject, payload.emailHtml)
            else:
                raise ValueError(f"unknown_channel:{channel}")
        except Exception as e:
            return Attempt(channel=channel, ok=False, error=str(e))
        return Attempt(channel=channel, ok=bool(r.ok), id=r.id, error=r.error)

    async def _increment_usage(self, store_uid: str) -> None:
        """Atomic invites_used += 1; a usage failure never fails the delivery."""
        try:
            result = await self.session.execute(
                update(Store).where(Store.uid == store_uid)
                .values(invites_used=Store.invites_used + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.session.add(Store(uid=store_uid, invites_used=1))
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            await self._increment_usage(store_uid)
        except Exception as e:
            await self.session.rollback()
            logger.warning("Usage increment failed: %s", e, extra={"extra": {"store_uid": store_uid}})
