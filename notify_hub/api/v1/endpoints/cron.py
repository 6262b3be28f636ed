import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.security import require_cron_secret
from notify_hub.db.session import get_session
from notify_hub.services.outbox_worker import OutboxWorker
from notify_hub.services.webhook_handler import webhook_replayer
from notify_hub.services.webhook_retry import WebhookRetryService


logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_cron_secret)])

DEFAULT_BATCH = 50
MAX_BATCH = 200


def clamp_batch(n: int | None) -> int:
    if n is None:
        return DEFAULT_BATCH
    return max(1, min(MAX_BATCH, n))


@router.api_route("/cron/webhook-retry", methods=["GET", "POST"], summary="Process due webhook retries")
async def run_webhook_retry(db: AsyncSession = Depends(get_session)):
    t0 = time.perf_counter()
    try:
        result = await WebhookRetryService(db).process_retry_queue(webhook_replayer(db))
    except Exception as e:
        logger.error("Webhook retry cron failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail={"ok": False, "error": str(e)})
    duration = round((time.perf_counter() - t0) * 1000)
    return {**result.to_dict(), "duration": duration}


@router.api_route("/jobs/worker-run-once", methods=["GET", "POST"], summary="Run one outbox worker batch")
async def worker_run_once(
    response: Response,
    n: int | None = Query(default=None, description="Batch size, 1..200"),
    db: AsyncSession = Depends(get_session),
):
    response.headers["Cache-Control"] = "no-store"
    batch = clamp_batch(n)
    t0 = time.perf_counter()
    try:
        processed = await OutboxWorker(session=db).run_once(batch)
    except Exception as e:
        logger.error("Worker run failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail={"ok": False, "error": str(e)},
                            headers={"Cache-Control": "no-store"})
    return {"ok": True, "processed": processed, "batchSize": batch,
            "tookMs": round((time.perf_counter() - t0) * 1000)}
