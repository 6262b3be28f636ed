import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict

# Context vars for request tracing
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
job_name_var: ContextVar[str | None] = ContextVar("job_name", default=None)
worker_id_var: ContextVar[str | None] = ContextVar("worker_id", default=None)

_CONTEXT = (
    ("run_id", run_id_var),
    ("request_id", request_id_var),
    ("job_id", job_id_var),
    ("job_name", job_name_var),
    ("worker_id", worker_id_var),
)


def _keys(env: str, default: str) -> set[str]:
    return {k.strip().lower() for k in os.getenv(env, default).split(",") if k.strip()}


# secrets are replaced, customer contacts are masked
REDACT_KEYS = _keys("LOG_REDACT_KEYS",
                    "password,authorization,apikey,x-api-key,token,x-admin-token,x-cron-secret,x-salla-signature")
PHONE_KEYS = _keys("LOG_PHONE_KEYS", "phone,mobile,dests")
EMAIL_KEYS = _keys("LOG_EMAIL_KEYS", "email,emailto")

LOG_FORMAT = os.getenv("LOG_FORMAT", "json").lower()
LOG_BODY_MAX = int(os.getenv("LOG_BODY_MAX", "2000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# third-party loggers that flood INFO with per-request lines
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "aiosqlite")


def mask_phone(phone: str | None) -> str | None:
    """Keep the last three digits of a phone number for log lines."""
    if not phone:
        return phone
    return "*" * max(0, len(phone) - 3) + phone[-3:]


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def _mask(value: Any, masker) -> Any:
    if isinstance(value, str):
        return masker(value)
    if isinstance(value, (list, tuple)):
        return [masker(v) if isinstance(v, str) else v for v in value]
    return value


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            key = str(k).lower()
            if key in REDACT_KEYS:
                out[k] = "***"
            elif key in PHONE_KEYS:
                out[k] = _mask(v, mask_phone)
            elif key in EMAIL_KEYS:
                out[k] = _mask(v, mask_email)
            else:
                out[k] = _redact(v)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    if isinstance(value, str) and len(value) > LOG_BODY_MAX:
        return value[:LOG_BODY_MAX] + f"...(+{len(value)-LOG_BODY_MAX} chars)"
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per line; unset context fields are left out."""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": round(time.time() * 1000),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in _CONTEXT:
            value = var.get()
            if value is not None:
                base[name] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            base.update(_redact(extra))
        return json.dumps(base, ensure_ascii=False, default=str)


def configure_logging():
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_run_id(value: str | None = None) -> str:
    rid = value or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def set_request_id(value: str | None) -> str | None:
    request_id_var.set(value)
    return value


def set_job_id(value: str | None) -> str | None:
    """A UUID goes to job_id, anything else (scheduler job names) to job_name."""
    job_name_var.set(None)
    job_id_var.set(None)
    if value is None:
        return None
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        job_name_var.set(str(value))
        return value
    job_id_var.set(str(value))
    return job_id_var.get()


def set_worker_id(value: str | None) -> str | None:
    worker_id_var.set(value)
    return value
