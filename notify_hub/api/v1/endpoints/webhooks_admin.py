import logging
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.security import require_admin
from notify_hub.db.session import get_session
from notify_hub.schemas.webhooks import ManualRetryRequest, ResolveRequest
from notify_hub.services.webhook_handler import webhook_replayer
from notify_hub.services.webhook_retry import DLQEntryNotFound, DLQEntryResolved, WebhookRetryService


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/webhooks/retry", summary="Retry queue / DLQ status and health")
async def retry_status(
    action: Literal["status", "dlq_status", "health"] = Query(default="status"),
    _operator: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    service = WebhookRetryService(db)
    if action == "health":
        return await service.check_retry_system_health()
    if action == "dlq_status":
        return await service.get_dlq_status()
    return await service.get_retry_queue_status()


@router.post("/webhooks/retry", summary="Manually retry or resolve a DLQ entry")
async def retry_action(
    action: Literal["retry", "resolve"] = Query(default="retry"),
    body: dict[str, Any] = Body(...),
    operator: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    service = WebhookRetryService(db)
    try:
        if action == "resolve":
            req = ResolveRequest.model_validate(body)
            entry = await service.resolve_dlq_entry(req.dlqId, operator, req.resolution, req.notes)
            return {"ok": True, "entry": entry.to_dict()}

        req = ManualRetryRequest.model_validate(body)
        result = await service.manual_retry_webhook(req.dlqId, operator, webhook_replayer(db))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False))
    except DLQEntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DLQEntryResolved as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result["ok"]:
        raise HTTPException(status_code=500, detail=result)
    return result


@router.get("/webhooks/failed", summary="List DLQ entries, newest first")
async def list_failed(
    limit: int = Query(default=50, ge=1, le=200),
    startAfter: str | None = Query(default=None),
    onlyUnreviewed: bool = Query(default=False),
    _operator: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    entries, has_more = await WebhookRetryService(db).list_dlq_entries(limit, startAfter, onlyUnreviewed)
    return {
        "ok": True,
        "entries": [e.to_dict() for e in entries],
        "hasMore": has_more,
        "nextCursor": entries[-1].id if has_more and entries else None,
    }
