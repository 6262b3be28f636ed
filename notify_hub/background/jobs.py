import logging

from notify_hub.core.logging import set_job_id
from notify_hub.db.session import async_session_factory
from notify_hub.services.outbox_worker import OutboxWorker
from notify_hub.services.webhook_handler import webhook_replayer
from notify_hub.services.webhook_retry import WebhookRetryService


logger = logging.getLogger(__name__)


async def process_outbox_job():
    """
    APScheduler job: one outbox worker run.
    A failed run is logged here so the scheduler keeps its interval.
    """
    set_job_id("process_outbox_job")
    try:
        async with async_session_factory() as session:
            await OutboxWorker(session=session).run_once()
    except Exception as e:
        logger.error("Outbox job run failed: %s", e, exc_info=True)


async def process_webhook_retry_job():
    """APScheduler job: one pass over the webhook retry queue."""
    set_job_id("process_webhook_retry_job")
    try:
        async with async_session_factory() as session:
            service = WebhookRetryService(session)
            await service.process_retry_queue(webhook_replayer(session))
    except Exception as e:
        logger.error("Webhook retry run failed: %s", e, exc_info=True)
