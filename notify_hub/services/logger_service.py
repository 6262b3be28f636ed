import json
import logging
import os
from typing import Any

from sqlalchemy import insert

from notify_hub.core.clock import now_ms
from notify_hub.core.logging import job_id_var, job_name_var, run_id_var, request_id_var
from notify_hub.models.log import PipelineLog


logger = logging.getLogger(__name__)


def _ensure_jsonable(value: Any) -> Any:
    if value is None:
        return None
    try:
        json.dumps(value, ensure_ascii=False)
        return value
    except (TypeError, ValueError):
        try:
            return json.loads(json.dumps(value, ensure_ascii=False, default=str))
        except Exception:
            return {"_repr": str(value)}


async def log_event(*, step: str, status: str, external_system: str | None = None,
                    elapsed_ms: int | None = None, retry_count: int | None = None,
                    details: dict[str, Any] | None = None, job_id: str | None = None,
                    job_name: str | None = None):
    """
    Write one standardized row to pipeline_logs.
    The audit trail must never break delivery, so DB failures are only logged.
    """
    if os.getenv("LOG_DB_WRITE", "true").lower() not in ("1", "true", "yes"):
        return

    from notify_hub.db.session import async_session_factory

    rec = {
        "ts": now_ms(),
        "run_id": run_id_var.get(),
        "request_id": request_id_var.get(),
        "job_id": job_id or job_id_var.get(),
        "job_name": job_name or job_name_var.get(),
        "step": step,
        "status": status,
        "external_system": external_system or "INTERNAL",
        "elapsed_ms": elapsed_ms,
        "retry_count": retry_count,
        "details": _ensure_jsonable(details or {}),
    }

    try:
        async with async_session_factory() as sess:
            await sess.execute(insert(PipelineLog).values(**rec))
            await sess.commit()
    except Exception as e:
        logger.warning("pipeline_logs write failed: %s", e, extra={"extra": {"step": step, "status": status}})
