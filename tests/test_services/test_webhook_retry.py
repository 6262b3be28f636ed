import pytest
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from notify_hub.models.webhook import DeadLetterEntry, WebhookRetryEntry
from notify_hub.services.webhook_retry import (
    DLQEntryNotFound,
    DLQEntryResolved,
    WebhookRetryService,
    normalize_headers,
)

T0 = 1_700_000_000_000
MINUTE = 60_000
HOUR = 60 * MINUTE


@pytest.fixture
def service(session):
    return WebhookRetryService(session, max_attempts=3,
                               backoff_ms=[MINUTE, 5 * MINUTE, 15 * MINUTE, HOUR, 6 * HOUR])


async def _enqueue(service, now=T0, priority="normal", event="order.created"):
    return await service.enqueue_webhook_retry(
        event=event, raw_body=b'{"event":"order.created"}', headers={"x-salla-signature": ["abc", "def"]},
        error=RuntimeError("db down"), merchant=42, order_id=7, store_uid="salla:42", priority=priority,
        idempotency_key="k1", now=now,
    )


async def _exhaust(service, retry_id, handler, now=T0):
    """Fail an entry until it lands in the DLQ. Returns the time of the last run."""
    for _ in range(service.max_attempts):
        entry = await service.session.get(WebhookRetryEntry, retry_id, populate_existing=True)
        now = entry.next_retry_at
        await service.process_retry_queue(handler, now=now)
    return now


def test_headers_are_normalised_to_strings():
    assert normalize_headers({"a": ["1", "2"], "b": None, "c": 3, "d": []}) == {"a": "1", "b": "", "c": "3", "d": ""}


@pytest.mark.asyncio
async def test_enqueue_schedules_first_retry(service):
    retry_id = await _enqueue(service)
    entry = await service.session.get(WebhookRetryEntry, retry_id)

    assert retry_id.startswith(f"retry_{T0}_")
    assert entry.next_retry_at == T0 + MINUTE
    assert entry.attempts == 0
    assert entry.max_attempts == 3
    assert entry.headers == {"x-salla-signature": "abc"}
    assert entry.merchant == "42" and entry.order_id == "7"
    assert entry.tags == ["order.created", "salla:42"]


@pytest.mark.asyncio
async def test_enqueue_disabled_returns_none(service):
    with patch("notify_hub.services.webhook_retry.settings") as cfg:
        cfg.WEBHOOK_RETRY_ENABLED = False
        assert await _enqueue(service) is None


@pytest.mark.asyncio
async def test_success_removes_entry(service):
    retry_id = await _enqueue(service)
    handler = AsyncMock(return_value={"handled": True})

    result = await service.process_retry_queue(handler, now=T0 + MINUTE)

    assert (result.processed, result.succeeded, result.failed, result.moved_to_dlq) == (1, 1, 0, 0)
    handler.assert_awaited_once_with('{"event":"order.created"}', {"x-salla-signature": "abc"})
    assert await service.session.get(WebhookRetryEntry, retry_id) is None


@pytest.mark.asyncio
async def test_entries_not_due_are_left_alone(service):
    await _enqueue(service)
    handler = AsyncMock()
    result = await service.process_retry_queue(handler, now=T0 + MINUTE - 1)
    assert result.processed == 0
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_failure_reschedules_with_next_backoff_step(service):
    retry_id = await _enqueue(service)
    handler = AsyncMock(side_effect=RuntimeError("still down"))

    result = await service.process_retry_queue(handler, now=T0 + MINUTE)

    assert result.failed == 1
    entry = await service.session.get(WebhookRetryEntry, retry_id, populate_existing=True)
    assert entry.attempts == 1
    assert entry.next_retry_at == T0 + MINUTE + 5 * MINUTE
    assert entry.last_error == "still down"
    assert entry.errors[-1]["error"] == "still down"


@pytest.mark.asyncio
async def test_high_priority_goes_first(service):
    service.batch_size = 1
    await _enqueue(service, priority="low", now=T0 - 1000)
    high = await _enqueue(service, priority="high", now=T0)
    seen = []

    async def handler(raw_body, headers):
        seen.append(raw_body)

    await service.process_retry_queue(handler, now=T0 + HOUR)
    remaining = (await service.session.execute(select(WebhookRetryEntry.id))).scalars().all()
    assert high not in remaining
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_exhausted_entry_moves_to_dlq_with_payload(service):
    retry_id = await _enqueue(service)
    handler = AsyncMock(side_effect=RuntimeError("bad payload"))

    await _exhaust(service, retry_id, handler)

    assert await service.session.get(WebhookRetryEntry, retry_id) is None
    dlq = await service.session.get(DeadLetterEntry, f"dlq_{retry_id}")
    assert dlq.total_attempts == 3
    assert dlq.raw_body == '{"event":"order.created"}'
    assert dlq.headers == {"x-salla-signature": "abc"}
    assert dlq.idempotency_key == "k1"
    assert dlq.resolution is None
    assert [e["attempt"] for e in dlq.errors] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_dlq_is_never_retried_automatically(service):
    retry_id = await _enqueue(service)
    failing = AsyncMock(side_effect=RuntimeError("x"))
    last = await _exhaust(service, retry_id, failing)

    handler = AsyncMock()
    result = await service.process_retry_queue(handler, now=last + 365 * 24 * HOUR)
    assert result.processed == 0
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_manual_retry_success_resolves_entry(service):
    retry_id = await _enqueue(service)
    await _exhaust(service, retry_id, AsyncMock(side_effect=RuntimeError("x")))
    handler = AsyncMock()

    assert await service.manual_retry_webhook(f"dlq_{retry_id}", "ops-1", handler, now=T0 + 2 * HOUR) == {"ok": True}

    dlq = await service.session.get(DeadLetterEntry, f"dlq_{retry_id}", populate_existing=True)
    assert dlq.resolution == "retried"
    assert dlq.reviewed_by == "ops-1"
    assert dlq.reviewed_at == T0 + 2 * HOUR
    handler.assert_awaited_once()

    with pytest.raises(DLQEntryResolved):
        await service.manual_retry_webhook(f"dlq_{retry_id}", "ops-1", handler)


@pytest.mark.asyncio
async def test_manual_retry_failure_keeps_entry_unresolved(service):
    retry_id = await _enqueue(service)
    await _exhaust(service, retry_id, AsyncMock(side_effect=RuntimeError("x")))

    result = await service.manual_retry_webhook(f"dlq_{retry_id}", "ops-1", AsyncMock(side_effect=ValueError("nope")))

    assert result == {"ok": False, "error": "nope"}
    dlq = await service.session.get(DeadLetterEntry, f"dlq_{retry_id}", populate_existing=True)
    assert dlq.resolution is None
    assert dlq.total_attempts == 4
    assert dlq.errors[-1]["error"] == "nope"


@pytest.mark.asyncio
async def test_manual_retry_unknown_entry(service):
    with pytest.raises(DLQEntryNotFound):
        await service.manual_retry_webhook("dlq_missing", "ops", AsyncMock())


@pytest.mark.asyncio
async def test_resolve_sets_reviewer_metadata(service):
    retry_id = await _enqueue(service)
    await _exhaust(service, retry_id, AsyncMock(side_effect=RuntimeError("x")))

    entry = await service.resolve_dlq_entry(f"dlq_{retry_id}", "ops-2", "ignored", "order cancelled", now=T0 + HOUR)
    assert (entry.resolution, entry.reviewed_by, entry.notes, entry.reviewed_at) == (
        "ignored", "ops-2", "order cancelled", T0 + HOUR)
    assert entry.raw_body == '{"event":"order.created"}'

    with pytest.raises(ValueError):
        await service.resolve_dlq_entry(f"dlq_{retry_id}", "ops-2", "retried")


async def _add_dlq(session, dlq_id, failed_at, resolution=None):
    session.add(DeadLetterEntry(id=dlq_id, event="order.created", raw_body="{}", headers={}, total_attempts=5,
                                errors=[], tags=[], failed_at=failed_at, resolution=resolution,
                                reviewed_at=failed_at if resolution else None))
    await session.commit()


@pytest.mark.asyncio
async def test_listing_is_newest_first_with_cursor(service, session):
    for i in range(5):
        await _add_dlq(session, f"dlq_{i}", T0 + i * MINUTE, resolution="ignored" if i == 3 else None)

    page1, more1 = await service.list_dlq_entries(limit=2)
    assert [e.id for e in page1] == ["dlq_4", "dlq_3"] and more1
    page2, more2 = await service.list_dlq_entries(limit=2, start_after="dlq_3")
    assert [e.id for e in page2] == ["dlq_2", "dlq_1"] and more2
    page3, more3 = await service.list_dlq_entries(limit=2, start_after="dlq_1")
    assert [e.id for e in page3] == ["dlq_0"] and not more3

    unreviewed, _ = await service.list_dlq_entries(limit=10, only_unreviewed=True)
    assert "dlq_3" not in [e.id for e in unreviewed]


@pytest.mark.asyncio
async def test_status_and_health(service, session):
    await _enqueue(service, now=T0, priority="high")
    await _enqueue(service, now=T0 + 10 * MINUTE)
    await _add_dlq(session, "dlq_old", T0 - 2 * 24 * HOUR)
    await _add_dlq(session, "dlq_done", T0, resolution="manual_fix")

    status = await service.get_retry_queue_status(now=T0 + 2 * MINUTE)
    assert (status["total"], status["pending"], status["scheduled"]) == (2, 1, 1)
    assert status["byPriority"] == {"high": 1, "normal": 1, "low": 0}
    assert status["oldestEntry"] == T0

    dlq = await service.get_dlq_status()
    assert (dlq["total"], dlq["unreviewed"], dlq["reviewed"]) == (2, 1, 1)
    assert dlq["byResolution"] == {"manual_fix": 1}

    health = await service.check_retry_system_health(now=T0 + MINUTE)
    assert health["healthy"] is False
    assert health["issues"] == ["DLQ has unreviewed entries older than 24 hours"]
    assert health["metrics"]["retry_queue_size"] == 2
    assert health["metrics"]["dlq_unreviewed"] == 1
    assert health["metrics"]["oldest_unresolved_age_ms"] == 2 * 24 * HOUR + MINUTE


@pytest.mark.asyncio
async def test_healthy_when_empty(service):
    health = await service.check_retry_system_health(now=T0)
    assert health == {
        "ok": True, "healthy": True, "issues": [],
        "metrics": {"retry_queue_size": 0, "retry_pending": 0, "dlq_size": 0, "dlq_unreviewed": 0,
                    "oldest_retry": None, "oldest_dlq": None, "oldest_unresolved_age_ms": None},
    }


@pytest.mark.asyncio
async def test_cleanup_deletes_only_old_resolved_entries(service, session):
    day = 24 * HOUR
    await _add_dlq(session, "dlq_old_resolved", T0 - 100 * day, resolution="ignored")
    await _add_dlq(session, "dlq_old_open", T0 - 100 * day)
    await _add_dlq(session, "dlq_new_resolved", T0 - day, resolution="ignored")

    assert await service.cleanup_old_dlq_entries(90, now=T0) == 1
    ids = (await session.execute(select(DeadLetterEntry.id))).scalars().all()
    assert sorted(ids) == ["dlq_new_resolved", "dlq_old_open"]
