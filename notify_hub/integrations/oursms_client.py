import re
from dataclasses import dataclass

from .base_client import BaseApiClient, DeliveryError
from notify_hub.core.config import settings


@dataclass
class SendResult:
    ok: bool
    id: str | None = None
    error: str | None = None


def normalize_phone(raw: str, default_country: str | None = None) -> str:
    """Simplified E.164 normalisation for Saudi and Egyptian numbers."""
    digits = re.sub(r"[^\d+]", "", str(raw))
    if digits.startswith("+"):
        return digits
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    prefix = {"SA": "+966", "EG": "+20"}.get((default_country or "").upper())
    if digits.startswith("0") and prefix:
        return f"{prefix}{digits[1:]}"
    if prefix:
        return f"{prefix}{digits}"
    return digits


class OurSmsApiClient(BaseApiClient):
    def __init__(self):
        super().__init__(base_url=f"{settings.OURSMS_BASE_URL.rstrip('/')}/",
                         timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.client.headers["Authorization"] = f"Bearer {settings.OURSMS_API_KEY}"

    async def send_sms(self, to: str | list[str], text: str, request_dlr: bool = True,
                       msg_class: str = "transactional") -> SendResult:
        """
        Send one message to one or more numbers through OurSMS.
        Raises DeliveryError when the provider rejects the request.
        """
        if not settings.OURSMS_API_KEY:
            raise DeliveryError("OURSMS_API_KEY is missing", permanent=True)

        dests = [normalize_phone(n, settings.SMS_DEFAULT_COUNTRY) for n in (to if isinstance(to, list) else [to])]
        body = {
            "src": settings.OURSMS_SENDER,
            "dests": dests,
            "body": text,
            "priority": 0,
            "delay": 0,
            "validity": 0,
            "maxParts": 0,
            "dlr": 1 if request_dlr else 0,
            "prevDups": 0,
            "msgClass": msg_class or None,
        }
        data = await self._request_or_raise("POST", "msgs/sms", json=body)

        accepted = int(data.get("accepted") or 0)
        if data and accepted == 0 and int(data.get("rejected") or 0) > 0:
            return SendResult(ok=False, id=str(data.get("jobId") or "") or None,
                              error=str(data.get("statusDesc") or data.get("message") or "rejected"))
        return SendResult(ok=True, id=str(data.get("jobId") or "") or None)
