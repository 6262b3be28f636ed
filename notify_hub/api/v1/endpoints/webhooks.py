import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.config import settings
from notify_hub.core.logging import set_request_id
from notify_hub.core.security import verify_hmac_sha256
from notify_hub.db.session import get_session
from notify_hub.services.idempotency import make_idempotency_key, with_event_once
from notify_hub.services.webhook_handler import (
    WebhookPayloadError,
    parse_webhook,
    process_store_webhook,
    store_uid_for,
)
from notify_hub.services.webhook_retry import WebhookRetryService


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/webhooks/salla",
    status_code=202,
    summary="Receive a Salla store webhook",
)
async def salla_webhook(
    request: Request,
    x_salla_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_session),
):
    """
    Verifies the signature, runs the event once per idempotency key and
    answers 202. A processing failure is queued for retry instead of being
    returned to the platform, so the platform does not redeliver it.
    """
    request_id = set_request_id(str(uuid4()))
    raw = await request.body()
    if not verify_hmac_sha256(raw, x_salla_signature, settings.SALLA_WEBHOOK_SECRET):
        logger.warning("Webhook signature mismatch", extra={"extra": {"request_id": request_id}})
        raise HTTPException(status_code=401, detail="invalid signature")

    try:
        webhook = parse_webhook(raw)
    except WebhookPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e))

    key = make_idempotency_key(x_salla_signature, raw)
    try:
        result = await with_event_once(db, key, lambda: process_store_webhook(db, raw))
    except Exception as e:
        logger.error("Webhook processing failed: %s", e, exc_info=True,
                     extra={"extra": {"event": webhook.event, "merchant": webhook.merchant}})
        await db.rollback()
        retry_id = await WebhookRetryService(db).enqueue_webhook_retry(
            event=webhook.event,
            raw_body=raw,
            headers=dict(request.headers),
            error=e,
            merchant=webhook.merchant,
            order_id=(webhook.data or {}).get("id"),
            store_uid=store_uid_for(webhook.merchant),
            idempotency_key=key,
        )
        return {"ok": False, "queuedForRetry": retry_id is not None, "retryId": retry_id}

    if result.skipped:
        return {"ok": True, "skipped": True}
    return {"ok": True, **(result.out or {})}
