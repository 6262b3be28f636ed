from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from notify_hub.core.security import require_admin
from notify_hub.db.session import get_session
from notify_hub.integrations.senders import ChannelSenders
from notify_hub.services.channels import TryChannelsResult, try_channels


router = APIRouter(prefix="/admin/notifications")


class TestNotifyRequest(BaseModel):
    url: str
    phone: str | None = None
    email: str | None = None
    storeName: str | None = None
    customerName: str | None = None
    inviteId: str | None = None
    strategy: Literal["all", "first_success"] = "all"
    order: list[Literal["sms", "email"]] | None = None


@router.post("/test", response_model=TryChannelsResult, summary="Send a review invite over the given channels")
async def test_notify(req: TestNotifyRequest, _operator: str = Depends(require_admin),
                      db: AsyncSession = Depends(get_session)):
    if not req.phone and not req.email:
        raise HTTPException(status_code=400, detail="phone or email is required")
    senders = ChannelSenders()
    try:
        return await try_channels(
            senders,
            url=req.url,
            phone=req.phone,
            email=req.email,
            store_name=req.storeName,
            customer_name=req.customerName,
            invite_id=req.inviteId,
            strategy=req.strategy,
            order=req.order,
            session=db,
        )
    finally:
        await senders.close()
