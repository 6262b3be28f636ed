from .email_client import EmailApiClient
from .oursms_client import OurSmsApiClient, SendResult


class ChannelSenders:
    """The SMS and email providers behind one object, opened per worker run."""

    def __init__(self, sms_client: OurSmsApiClient | None = None, email_client: EmailApiClient | None = None):
        self.sms_client = sms_client or OurSmsApiClient()
        self.email_client = email_client or EmailApiClient()

    async def send_sms(self, to: str, text: str) -> SendResult:
        return await self.sms_client.send_sms(to, text)

    async def send_email(self, to: str, subject: str, html: str) -> SendResult:
        return await self.email_client.send_email(to, subject, html)

    async def close(self):
        await self.sms_client.close()
        await self.email_client.close()
