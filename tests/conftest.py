"""Global pytest configuration and fixtures."""
import os
import tempfile

# must be set before notify_hub settings are imported
_TMP = tempfile.mkdtemp(prefix="notify_hub_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ["LOG_DB_WRITE"] = "false"
os.environ["LOG_FORMAT"] = "text"
os.environ.setdefault("CRON_SECRET", "cron-secret")
os.environ.setdefault("ADMIN_API_TOKEN", "admin-token")
os.environ.setdefault("SALLA_WEBHOOK_SECRET", "salla-secret")
os.environ.setdefault("OURSMS_API_KEY", "sms-key")
os.environ.setdefault("SENDGRID_API_KEY", "mail-key")
os.environ["OUTBOX_SCHEDULER_ENABLED"] = "false"
os.environ["WEBHOOK_RETRY_SCHEDULER_ENABLED"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notify_hub.db.base_class import Base
from notify_hub.models import idempotency, invite, log, outbox, webhook  # noqa: F401
from notify_hub.models.invite import ReviewInvite


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite file database per test."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def make_invite(session):
    async def _make(invite_id: str = "inv-1", store_uid: str = "salla:1", order_id: str = "o-1") -> ReviewInvite:
        inv = ReviewInvite(id=invite_id, store_uid=store_uid, order_id=order_id,
                           review_url=f"https://example.test/review/{invite_id}")
        session.add(inv)
        await session.commit()
        return inv
    return _make
