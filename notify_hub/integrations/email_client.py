import re

from .base_client import BaseApiClient, DeliveryError
from .oursms_client import SendResult
from notify_hub.core.config import settings


def strip_html(html: str) -> str:
    text = re.sub(r"<style[\s\S]*?</style>", "", html, flags=re.IGNORECASE)
    text = re.sub(r"<script[\s\S]*?</script>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", text).strip()


class EmailApiClient(BaseApiClient):
    """SendGrid v3 mail/send over plain HTTP."""

    def __init__(self):
        super().__init__(base_url=settings.SENDGRID_BASE_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.client.headers["Authorization"] = f"Bearer {settings.SENDGRID_API_KEY}"

    async def send_email(self, to: str, subject: str, html: str, text_fallback: str | None = None) -> SendResult:
        if not settings.SENDGRID_API_KEY:
            raise DeliveryError("SENDGRID_API_KEY is missing", permanent=True)

        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": settings.EMAIL_FROM},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_fallback or strip_html(html)},
                {"type": "text/html", "value": html},
            ],
            "categories": ["review-invite"],
        }
        await self._request_or_raise("POST", "mail/send", json=body)
        # SendGrid answers 202 with an empty body; the message id is only in headers
        return SendResult(ok=True)
