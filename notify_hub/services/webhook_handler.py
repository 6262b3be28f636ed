import json
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.config import settings
from notify_hub.models.invite import ReviewInvite
from notify_hub.schemas.webhooks import SallaOrder, SallaWebhook
from .channels import EMAIL_SUBJECT, build_review_email, build_review_sms
from .idempotency import ensure_single_invite_key
from .outbox_queue import OutboxQueue


logger = logging.getLogger(__name__)

ORDER_CREATED_EVENTS = {"order.created", "orders.create"}
ORDER_STATUS_EVENTS = {"order.status.updated", "orders.status_updated"}
COMPLETED_STATUSES = {"completed", "delivered", "تم التنفيذ", "تم التوصيل"}


class WebhookPayloadError(ValueError):
    """The body is not a webhook this service understands."""


def store_uid_for(merchant: Any) -> str:
    return f"salla:{merchant}"


def parse_webhook(raw_body: bytes | str) -> SallaWebhook:
    try:
        return SallaWebhook.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError) as e:
        raise WebhookPayloadError(f"invalid webhook body: {e}") from e


def _wants_invite(event: str, order: SallaOrder) -> bool:
    if event in ORDER_CREATED_EVENTS:
        return True
    if event in ORDER_STATUS_EVENTS:
        return (order.status_slug or "").strip().lower() in COMPLETED_STATUSES
    return False


async def create_invite_for_order(session: AsyncSession, store_uid: str, order: SallaOrder,
                                  queue: OutboxQueue | None = None) -> dict[str, Any]:
    """
    Create the review invite for an order and queue its notification job.

    The invite key, the invite row and the outbox job commit together, so a
    failed attempt leaves nothing behind and can be retried.
    """
    customer = order.customer
    phone = customer.phone if customer else None
    email = customer.email if customer else None
    channels = [ch for ch, contact in (("sms", phone), ("email", email)) if contact]
    if not channels:
        return {"handled": False, "reason": "no_contact"}

    order_id = str(order.id)
    key, created = await ensure_single_invite_key(session, store_uid, order_id, commit=False)
    if not created:
        return {"handled": False, "reason": "duplicate_invite", "inviteKey": key}

    queue = queue or OutboxQueue(session)
    name = customer.full_name if customer else None
    invite = ReviewInvite(store_uid=store_uid, order_id=order_id, customer_name=name, phone=phone, email=email,
                          review_url="")
    session.add(invite)
    await session.flush()
    invite.review_url = f"{settings.REVIEW_BASE_URL.rstrip('/')}/{invite.id}"

    payload = {}
    if phone:
        payload.update(phone=phone, smsText=build_review_sms(name, None, invite.review_url))
    if email:
        payload.update(emailTo=email, emailSubject=EMAIL_SUBJECT,
                       emailHtml=build_review_email(name, None, invite.review_url))

    try:
        job_id = await queue.enqueue_invite_job(invite.id, store_uid, channels, payload, commit=False)
        invite.job_id = job_id
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Review invite created", extra={"extra": {"invite_id": invite.id, "job_id": job_id,
                                                          "store_uid": store_uid, "order_id": order_id,
                                                          "phone": phone}})
    return {"handled": True, "inviteId": invite.id, "jobId": job_id}


async def process_store_webhook(session: AsyncSession, raw_body: bytes | str,
                                queue: OutboxQueue | None = None) -> dict[str, Any]:
    """Business logic for one verified Salla webhook. Raises on processing failure."""
    webhook = parse_webhook(raw_body)
    event = webhook.event
    if event not in ORDER_CREATED_EVENTS | ORDER_STATUS_EVENTS:
        logger.info("Webhook event acknowledged", extra={"extra": {"event": event}})
        return {"handled": False, "event": event, "reason": "ignored_event"}

    try:
        order = SallaOrder.model_validate(webhook.data or {})
    except ValidationError as e:
        raise WebhookPayloadError(f"invalid order payload: {e}") from e

    if not _wants_invite(event, order):
        return {"handled": False, "event": event, "reason": "status_not_final"}

    result = await create_invite_for_order(session, store_uid_for(webhook.merchant), order, queue)
    result["event"] = event
    return result


def webhook_replayer(session: AsyncSession) -> Callable[[str, dict[str, str]], Awaitable[dict[str, Any]]]:
    """Handler used by the retry queue to re-run a stored webhook."""
    async def replay(raw_body: str, headers: dict[str, str]) -> dict[str, Any]:
        return await process_store_webhook(session, raw_body)
    return replay
