from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from notify_hub.db.base_class import Base, TimestampMixin


PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}


class WebhookRetryEntry(Base, TimestampMixin):
    __tablename__ = "webhook_retry_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event: Mapped[str] = mapped_column(String(100), index=True)
    merchant: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_body: Mapped[str] = mapped_column(Text)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer)
    next_retry_at: Mapped[int] = mapped_column(BigInteger, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    store_uid: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    priority: Mapped[str] = mapped_column(String(10), default="normal")
    # 0 = high, 2 = low; lets the processor order by priority without a CASE
    priority_rank: Mapped[int] = mapped_column(Integer, default=1)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "merchant": self.merchant,
            "orderId": self.order_id,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "nextRetryAt": self.next_retry_at,
            "lastError": self.last_error,
            "lastAttemptAt": self.last_attempt_at,
            "storeUid": self.store_uid,
            "priority": self.priority,
            "tags": list(self.tags or []),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class DeadLetterEntry(Base, TimestampMixin):
    __tablename__ = "webhook_dead_letter"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    event: Mapped[str] = mapped_column(String(100), index=True)
    merchant: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_body: Mapped[str] = mapped_column(Text)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    total_attempts: Mapped[int] = mapped_column(Integer)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    store_uid: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    priority: Mapped[str] = mapped_column(String(10), default="normal")
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)

    failed_at: Mapped[int] = mapped_column(BigInteger, index=True)

    reviewed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "merchant": self.merchant,
            "orderId": self.order_id,
            "rawBody": self.raw_body,
            "headers": dict(self.headers or {}),
            "totalAttempts": self.total_attempts,
            "errors": list(self.errors or []),
            "storeUid": self.store_uid,
            "priority": self.priority,
            "tags": list(self.tags or []),
            "failedAt": self.failed_at,
            "createdAt": self.created_at,
            "reviewedAt": self.reviewed_at,
            "reviewedBy": self.reviewed_by,
            "resolution": self.resolution,
            "notes": self.notes,
        }
