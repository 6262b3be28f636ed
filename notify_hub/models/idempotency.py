from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from notify_hub.core.clock import now_ms
from notify_hub.db.base_class import Base


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)


class InviteKey(Base):
    __tablename__ = "invite_unique"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)
