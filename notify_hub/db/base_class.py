from sqlalchemy import BigInteger
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from notify_hub.core.clock import now_ms


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class TimestampMixin:
    """Adds created_at and updated_at as epoch milliseconds."""
    created_at: Mapped[int] = mapped_column(
        BigInteger, default=now_ms, nullable=False
    )
    updated_at: Mapped[int] = mapped_column(
        BigInteger, default=now_ms, onupdate=now_ms, nullable=False
    )
