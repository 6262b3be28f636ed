import uuid
from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from notify_hub.db.base_class import Base, TimestampMixin


class ReviewInvite(Base, TimestampMixin):
    __tablename__ = "review_invites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_uid: Mapped[str] = mapped_column(String(64), index=True)
    order_id: Mapped[str] = mapped_column(String(64), index=True)
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    review_url: Mapped[str] = mapped_column(Text)
    sent_channels: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    last_sent_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class Store(Base, TimestampMixin):
    __tablename__ = "stores"

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    invites_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
