import html
import logging
from typing import Literal

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.clock import now_ms
from notify_hub.core.config import settings
from notify_hub.integrations.senders import ChannelSenders
from notify_hub.models.invite import ReviewInvite


logger = logging.getLogger(__name__)

DEFAULT_ORDER = ["sms", "email"]
EMAIL_SUBJECT = "وش رأيك؟ نبي نسمع منك"


class Attempt(BaseModel):
    channel: str
    ok: bool
    id: str | None = None
    error: str | None = None


class TryChannelsResult(BaseModel):
    ok: bool
    firstSuccessChannel: str | None = None
    attempts: list[Attempt] = Field(default_factory=list)


def build_review_sms(customer_name: str | None, store_name: str | None, url: str) -> str:
    name = customer_name or "العميل"
    store = store_name or "المتجر"
    if settings.INVITE_SMS_TEMPLATE:
        return (settings.INVITE_SMS_TEMPLATE
                .replace("{{name}}", name).replace("{{store}}", store).replace("{{link}}", url))
    return f"مرحباً {name}، قيم تجربتك من {store}:: {url} وساهم في إسعاد يتيم!"


def build_review_email(customer_name: str | None, store_name: str | None, url: str) -> str:
    name = html.escape(customer_name or "العميل")
    store = html.escape(store_name or "المتجر")
    link = html.escape(url, quote=True)
    return f"""
    <div dir="rtl" style="font-family:Tahoma,Arial,sans-serif;line-height:1.8">
      <p>مرحباً {name}،</p>
      <p>يعطيك العافية على طلبك من <strong>{store}</strong>.</p>
      <p>وش رأيك تشاركنا رأيك؟ تقييمك يهمنا ويساعد غيرك</p>
      <p>
        <a href="{link}" style="background:#16a34a;color:#fff;padding:10px 18px;border-radius:8px;text-decoration:none;display:inline-block">
          اضغط للتقييم الآن
        </a>
      </p>
    </div>
    """.strip()


async def record_invite_channel(session: AsyncSession, invite_id: str, channel: str, attempt: Attempt) -> None:
    """Merge one channel outcome into review_invites.sent_channels."""
    invite = await session.get(ReviewInvite, invite_id)
    if invite is None:
        logger.warning("Invite not found while recording channel", extra={"extra": {"invite_id": invite_id}})
        return
    at = now_ms()
    sent = dict(invite.sent_channels or {})
    sent[channel] = {"ok": attempt.ok, "id": attempt.id, "error": attempt.error, "at": at}
    invite.sent_channels = sent
    invite.last_sent_at = at
    await session.commit()


async def try_channels(
    senders: ChannelSenders,
    url: str,
    phone: str | None = None,
    email: str | None = None,
    store_name: str | None = None,
    customer_name: str | None = None,
    invite_id: str | None = None,
    strategy: Literal["all", "first_success"] = "all",
    order: list[str] | None = None,
    session: AsyncSession | None = None,
) -> TryChannelsResult:
    """
    Deliver one invite over the available channels.

    ``first_success`` stops at the first channel that succeeds, ``all`` tries
    every channel. Channels without a contact field are skipped. Every real
    attempt is kept in ``attempts`` whatever the overall outcome.
    """
    channel_order = order or DEFAULT_ORDER
    attempts: list[Attempt] = []
    first_success: str | None = None

    for ch in channel_order:
        if strategy == "first_success" and first_success is not None:
            break
        try:
            if ch == "sms":
                if not phone:
                    continue
                r = await senders.send_sms(phone, build_review_sms(customer_name, store_name, url))
            elif ch == "email":
                if not email:
                    continue
                r = await senders.send_email(email, EMAIL_SUBJECT, build_review_email(customer_name, store_name, url))
            else:
                logger.warning("Unknown channel skipped", extra={"extra": {"channel": ch}})
                continue
            attempt = Attempt(channel=ch, ok=bool(r.ok), id=r.id, error=r.error)
        except Exception as e:
            logger.warning("%s.send.failed", ch, extra={"extra": {"error": str(e), "invite_id": invite_id,
                                                                 "phone": phone}})
            attempt = Attempt(channel=ch, ok=False, error=str(e))

        attempts.append(attempt)
        if invite_id and session is not None:
            await record_invite_channel(session, invite_id, ch, attempt)
        if attempt.ok and first_success is None:
            first_success = ch

    return TryChannelsResult(ok=first_success is not None, firstSuccessChannel=first_success, attempts=attempts)
