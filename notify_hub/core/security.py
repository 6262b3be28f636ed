import hashlib
import hmac

from fastapi import Header, HTTPException, Query

from notify_hub.core.config import settings


def safe_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _bearer(authorization: str | None) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return ""


def verify_hmac_sha256(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a hex HMAC-SHA256 signature of the raw request body."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return safe_equals(signature.strip(), expected)


def require_cron_secret(
    authorization: str | None = Header(default=None),
    x_cron_secret: str | None = Header(default=None),
    key: str | None = Query(default=None, description="Cron secret for schedulers that cannot send headers"),
) -> None:
    secret = settings.CRON_SECRET.strip()
    provided = _bearer(authorization) or (x_cron_secret or "") or (key or "")
    if not secret or not provided or not safe_equals(provided, secret):
        raise HTTPException(status_code=401, detail="unauthorized")


def require_admin(
    authorization: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
    x_operator_id: str | None = Header(default=None),
) -> str:
    """Returns the operator id used for DLQ audit fields."""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(403, "Admin API disabled")
    provided = x_admin_token or _bearer(authorization)
    if not provided or not safe_equals(provided, settings.ADMIN_API_TOKEN):
        raise HTTPException(401, "Unauthorized")
    return (x_operator_id or "").strip() or "admin"
