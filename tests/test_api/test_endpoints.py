import hashlib
import hmac
import json

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select

from notify_hub.core.clock import now_ms
from notify_hub.core.config import settings
from notify_hub.db.session import get_session
from notify_hub.integrations.oursms_client import SendResult
from notify_hub.main import app
from notify_hub.models.invite import ReviewInvite
from notify_hub.models.outbox import OutboxJob, OutboxStatus
from notify_hub.models.webhook import DeadLetterEntry, WebhookRetryEntry
from notify_hub.services.outbox_queue import OutboxQueue
from notify_hub.services.public_rate_limit import RateLimitExceeded, rate_limit_exceeded_handler

CRON = {"Authorization": f"Bearer {settings.CRON_SECRET}"}
ADMIN = {"X-Admin-Token": settings.ADMIN_API_TOKEN or "", "X-Operator-Id": "ops-7"}


def order_body(order_id=501):
    return json.dumps({
        "event": "order.created",
        "merchant": 9,
        "data": {"id": order_id, "customer": {"name": "Sara", "mobile": "+966500000009", "email": "s@example.test"}},
    }).encode()


def sign(body: bytes) -> str:
    return hmac.new(settings.SALLA_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


@pytest_asyncio.fixture
async def client(session_factory):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _dlq(session, dlq_id="dlq_retry_1", body=None, resolution=None):
    session.add(DeadLetterEntry(id=dlq_id, event="order.created", raw_body=(body or order_body()).decode(),
                                headers={}, total_attempts=5, errors=[], tags=[], failed_at=now_ms(),
                                resolution=resolution))
    await session.commit()


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_app_renders_rate_limit_rejections():
    assert app.exception_handlers[RateLimitExceeded] is rate_limit_exceeded_handler


# ----- cron -----

@pytest.mark.asyncio
async def test_cron_requires_secret(client):
    assert (await client.post("/api/jobs/worker-run-once")).status_code == 401
    assert (await client.post("/api/jobs/worker-run-once", headers={"Authorization": "Bearer nope"})).status_code == 401
    assert (await client.get("/api/cron/webhook-retry")).status_code == 401


@pytest.mark.asyncio
async def test_worker_run_once_clamps_batch(client):
    response = await client.post("/api/jobs/worker-run-once?n=5000", headers=CRON)
    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "no-store"
    body = response.json()
    assert body["ok"] is True
    assert body["processed"] == 0
    assert body["batchSize"] == 200
    assert "tookMs" in body

    assert (await client.get(f"/api/jobs/worker-run-once?n=0&key={settings.CRON_SECRET}")).json()["batchSize"] == 1
    default = await client.get("/api/jobs/worker-run-once", headers={"X-Cron-Secret": settings.CRON_SECRET})
    assert default.json()["batchSize"] == 50


@pytest.mark.asyncio
async def test_worker_run_once_delivers_jobs(client, session, make_invite):
    await make_invite("inv-1", "store-1")
    job_id = await OutboxQueue(session).enqueue_invite_job("inv-1", "store-1", ["sms"],
                                                           {"phone": "+966500000001", "smsText": "hi"})
    senders = MagicMock()
    senders.send_sms = AsyncMock(return_value=SendResult(ok=True, id="m1"))
    senders.close = AsyncMock()

    with patch("notify_hub.services.outbox_worker.ChannelSenders", return_value=senders):
        response = await client.post("/api/jobs/worker-run-once", headers=CRON)

    assert response.json()["processed"] == 1
    job = await OutboxQueue(session).get_job(job_id)
    assert job.status == OutboxStatus.OK


@pytest.mark.asyncio
async def test_webhook_retry_cron_replays_due_entries(client, session):
    session.add(WebhookRetryEntry(id="retry_1", event="order.created", raw_body=order_body().decode(), headers={},
                                  attempts=1, max_attempts=5, next_retry_at=now_ms() - 1000, errors=[],
                                  priority="normal", priority_rank=1, tags=[]))
    await session.commit()

    response = await client.post("/api/cron/webhook-retry", headers=CRON)

    assert response.status_code == 200
    body = response.json()
    assert (body["processed"], body["succeeded"], body["movedToDLQ"]) == (1, 1, 0)
    assert "duration" in body
    jobs = (await session.execute(select(OutboxJob))).scalars().all()
    assert len(jobs) == 1


# ----- inbound webhook -----

@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client):
    response = await client.post("/api/webhooks/salla", content=order_body(), headers={"X-Salla-Signature": "bad"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_webhook_creates_invite_once(client, session):
    body = order_body()
    headers = {"X-Salla-Signature": sign(body), "Content-Type": "application/json"}

    first = await client.post("/api/webhooks/salla", content=body, headers=headers)
    second = await client.post("/api/webhooks/salla", content=body, headers=headers)

    assert first.status_code == 202
    assert first.json()["handled"] is True
    assert second.status_code == 202
    assert second.json() == {"ok": True, "skipped": True}
    assert len((await session.execute(select(OutboxJob))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_webhook_processing_failure_is_queued_for_retry(client, session):
    body = order_body()
    with patch("notify_hub.api.v1.endpoints.webhooks.process_store_webhook",
               AsyncMock(side_effect=RuntimeError("db down"))):
        response = await client.post("/api/webhooks/salla", content=body, headers={"X-Salla-Signature": sign(body)})

    assert response.status_code == 202
    assert response.json()["queuedForRetry"] is True
    entry = (await session.execute(select(WebhookRetryEntry))).scalars().one()
    assert entry.last_error == "db down"
    assert entry.store_uid == "salla:9"
    assert entry.order_id == "501"
    assert entry.raw_body == body.decode()


@pytest.mark.asyncio
async def test_webhook_invalid_json(client):
    body = b"{broken"
    response = await client.post("/api/webhooks/salla", content=body, headers={"X-Salla-Signature": sign(body)})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_burst_from_one_platform_ip_creates_every_invite(client, session):
    headers = {"X-Forwarded-For": "203.0.113.10"}
    codes = []
    for order_id in range(1000, 1025):
        body = order_body(order_id)
        response = await client.post("/api/webhooks/salla", content=body,
                                     headers={**headers, "X-Salla-Signature": sign(body)})
        codes.append(response.status_code)

    assert codes == [202] * 25
    invites = (await session.execute(select(ReviewInvite))).scalars().all()
    assert len(invites) == 25
    assert (await session.execute(select(WebhookRetryEntry))).scalars().all() == []


# ----- DLQ admin -----

@pytest.mark.asyncio
async def test_admin_requires_token(client):
    assert (await client.get("/api/webhooks/retry")).status_code == 401
    assert (await client.get("/api/webhooks/failed", headers={"X-Admin-Token": "wrong"})).status_code == 401
    with patch.object(settings, "ADMIN_API_TOKEN", None):
        assert (await client.get("/api/webhooks/retry", headers=ADMIN)).status_code == 403


@pytest.mark.asyncio
async def test_status_actions(client, session):
    await _dlq(session)
    status = (await client.get("/api/webhooks/retry", headers=ADMIN)).json()
    assert status["total"] == 0

    dlq = (await client.get("/api/webhooks/retry?action=dlq_status", headers=ADMIN)).json()
    assert (dlq["total"], dlq["unreviewed"]) == (1, 1)

    health = (await client.get("/api/webhooks/retry?action=health",
                               headers={"Authorization": f"Bearer {settings.ADMIN_API_TOKEN}"})).json()
    assert health["healthy"] is True
    assert health["metrics"]["dlq_size"] == 1


@pytest.mark.asyncio
async def test_failed_listing_paginates(client, session):
    for i in range(3):
        await _dlq(session, f"dlq_{i}")

    page = (await client.get("/api/webhooks/failed?limit=2", headers=ADMIN)).json()
    assert len(page["entries"]) == 2
    assert page["hasMore"] is True
    rest = (await client.get(f"/api/webhooks/failed?limit=2&startAfter={page['nextCursor']}", headers=ADMIN)).json()
    assert len(rest["entries"]) == 1
    assert rest["hasMore"] is False
    seen = {e["id"] for e in page["entries"]} | {e["id"] for e in rest["entries"]}
    assert seen == {"dlq_0", "dlq_1", "dlq_2"}
    assert "rawBody" in rest["entries"][0]


@pytest.mark.asyncio
async def test_manual_retry_from_dlq(client, session):
    await _dlq(session, "dlq_a")

    response = await client.post("/api/webhooks/retry", json={"dlqId": "dlq_a"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    entry = await session.get(DeadLetterEntry, "dlq_a", populate_existing=True)
    assert entry.resolution == "retried"
    assert entry.reviewed_by == "ops-7"
    assert len((await session.execute(select(OutboxJob))).scalars().all()) == 1

    again = await client.post("/api/webhooks/retry", json={"dlqId": "dlq_a"}, headers=ADMIN)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_manual_retry_failure_and_errors(client, session):
    await _dlq(session, "dlq_bad", body=b"not json")

    failed = await client.post("/api/webhooks/retry", json={"dlqId": "dlq_bad"}, headers=ADMIN)
    assert failed.status_code == 500
    assert failed.json()["detail"]["ok"] is False

    assert (await client.post("/api/webhooks/retry", json={"dlqId": "missing"}, headers=ADMIN)).status_code == 404
    assert (await client.post("/api/webhooks/retry", json={}, headers=ADMIN)).status_code == 400


@pytest.mark.asyncio
async def test_resolve_dlq_entry(client, session):
    await _dlq(session, "dlq_r")

    response = await client.post("/api/webhooks/retry?action=resolve", headers=ADMIN,
                                 json={"dlqId": "dlq_r", "resolution": "manual_fix", "notes": "fixed by hand"})

    assert response.status_code == 200
    entry = response.json()["entry"]
    assert (entry["resolution"], entry["notes"], entry["reviewedBy"]) == ("manual_fix", "fixed by hand", "ops-7")

    bad = await client.post("/api/webhooks/retry?action=resolve", headers=ADMIN,
                            json={"dlqId": "dlq_r", "resolution": "retried"})
    assert bad.status_code == 400


# ----- outbox admin -----

@pytest.mark.asyncio
async def test_outbox_dead_requeue_and_cancel(client, session):
    queue = OutboxQueue(session, max_attempts=1)
    job_id = await queue.enqueue_invite_job("inv-9", "store-9", ["email"], {"emailTo": "x@example.test"})
    [job] = await queue.lease_pending_jobs("w1", 1)
    await queue.fail_job(job, "boom", worker_id="w1")

    dead = (await client.get("/api/admin/outbox/dead", headers=ADMIN)).json()
    assert [j["id"] for j in dead["jobs"]] == [job_id]
    assert dead["counts"] == {"dead": 1}

    assert (await client.post(f"/api/admin/outbox/{job_id}/requeue", headers=ADMIN)).status_code == 200
    assert (await client.post(f"/api/admin/outbox/{job_id}/requeue", headers=ADMIN)).status_code == 409
    assert (await client.post(f"/api/admin/outbox/{job_id}/cancel", headers=ADMIN)).status_code == 200
    assert (await client.post(f"/api/admin/outbox/{job_id}/cancel", headers=ADMIN)).status_code == 409


# ----- test notification -----

@pytest.mark.asyncio
async def test_admin_test_notification(client):
    senders = MagicMock()
    senders.send_sms = AsyncMock(return_value=SendResult(ok=False, error="rejected"))
    senders.send_email = AsyncMock(return_value=SendResult(ok=True))
    senders.close = AsyncMock()

    with patch("notify_hub.api.v1.endpoints.notify_admin.ChannelSenders", return_value=senders):
        response = await client.post("/api/admin/notifications/test", headers=ADMIN, json={
            "url": "https://example.test/r/1", "phone": "+966500000001", "email": "c@example.test",
        })

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["firstSuccessChannel"] == "email"
    assert [a["channel"] for a in body["attempts"]] == ["sms", "email"]
    senders.close.assert_awaited_once()
