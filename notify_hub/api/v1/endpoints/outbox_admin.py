from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.security import require_admin
from notify_hub.db.session import get_session
from notify_hub.schemas.outbox import OutboxJobOut
from notify_hub.services.outbox_queue import OutboxQueue


router = APIRouter(prefix="/admin/outbox")


@router.get("/dead", summary="List dead outbox jobs")
async def list_dead(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    storeUid: str | None = Query(default=None),
    _operator: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    queue = OutboxQueue(db)
    jobs = await queue.list_dead_jobs(limit, offset, storeUid)
    return {
        "ok": True,
        "jobs": [OutboxJobOut.model_validate(j.to_dict()).model_dump() for j in jobs],
        "counts": await queue.count_by_status(),
    }


@router.post("/{job_id}/requeue", summary="Put a dead job back in the queue")
async def requeue(job_id: str, operator: str = Depends(require_admin), db: AsyncSession = Depends(get_session)):
    if not await OutboxQueue(db).requeue_dead_job(job_id, operator):
        raise HTTPException(status_code=409, detail="Job is not dead or does not exist")
    return {"ok": True, "jobId": job_id}


@router.post("/{job_id}/cancel", summary="Cancel a job that has not finished")
async def cancel(job_id: str, operator: str = Depends(require_admin), db: AsyncSession = Depends(get_session)):
    if not await OutboxQueue(db).cancel_job(job_id, operator):
        raise HTTPException(status_code=409, detail="Job is already finished or does not exist")
    return {"ok": True, "jobId": job_id}
