import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException
from sqlalchemy import text

from notify_hub.api.v1.endpoints import cron, notify_admin, outbox_admin, webhooks, webhooks_admin
from notify_hub.background.jobs import process_outbox_job, process_webhook_retry_job
from notify_hub.core.config import settings
from notify_hub.core.logging import configure_logging, set_run_id
from notify_hub.db.session import async_session_factory
from notify_hub.services.public_rate_limit import RateLimitExceeded, rate_limit_exceeded_handler


# Initialize logging before anything else
configure_logging()
set_run_id()

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def startup_event():
    if settings.OUTBOX_SCHEDULER_ENABLED:
        scheduler.add_job(process_outbox_job, "interval", seconds=settings.OUTBOX_POLL_SECONDS,
                          id="process_outbox", max_instances=1, coalesce=True, replace_existing=True)
    if settings.WEBHOOK_RETRY_SCHEDULER_ENABLED and settings.WEBHOOK_RETRY_ENABLED:
        scheduler.add_job(process_webhook_retry_job, "interval", seconds=settings.WEBHOOK_RETRY_POLL_SECONDS,
                          id="process_webhook_retry", max_instances=1, coalesce=True, replace_existing=True)
    if scheduler.get_jobs():
        scheduler.start()
        logger.info("Scheduler started", extra={"extra": {"jobs": [j.id for j in scheduler.get_jobs()]}})


async def shutdown_event():
    if scheduler.running:
        logger.info("Shutting down scheduler")
        scheduler.shutdown(wait=False)


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    on_startup=[startup_event],
    on_shutdown=[shutdown_event],
)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.get("/", tags=["Health Check"])
def read_root():
    return {"status": "ok", "project_name": settings.PROJECT_NAME}


@app.get("/health/db", tags=["Health Check"])
async def health_db():
    """Database connectivity check."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        return {"db": "ok"}
    except Exception as e:
        raise HTTPException(status_code=503, detail={"db": "error", "message": str(e)})


app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(cron.router, prefix="/api", tags=["Cron"])
app.include_router(webhooks_admin.router, prefix="/api", tags=["Webhook DLQ"])
app.include_router(outbox_admin.router, prefix="/api", tags=["Outbox Admin"])
app.include_router(notify_admin.router, prefix="/api", tags=["Notifications Admin"])
