import uuid
from typing import Any

from sqlalchemy import JSON, BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from notify_hub.db.base_class import Base, TimestampMixin


class OutboxStatus:
    PENDING = "pending"
    LEASED = "leased"
    OK = "ok"
    FAIL = "fail"
    DEAD = "dead"
    CANCELLED = "cancelled"

    LEASABLE = (PENDING, FAIL, LEASED)
    TERMINAL = (OK, DEAD, CANCELLED)


class OutboxJob(Base, TimestampMixin):
    __tablename__ = "outbox_jobs"
    __table_args__ = (
        Index("ix_outbox_jobs_status_next_attempt_at", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invite_id: Mapped[str] = mapped_column(String(64), index=True)
    store_uid: Mapped[str] = mapped_column(String(64), index=True)
    channels: Mapped[list[str]] = mapped_column(JSON)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=OutboxStatus.PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[int] = mapped_column(BigInteger)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "inviteId": self.invite_id,
            "storeUid": self.store_uid,
            "channels": list(self.channels or []),
            "status": self.status,
            "attempts": self.attempts,
            "nextAttemptAt": self.next_attempt_at,
            "lastError": self.last_error,
            "lockedBy": self.locked_by,
            "lockedAt": self.locked_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
