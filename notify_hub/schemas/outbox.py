from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Channel = Literal["sms", "email"]


class JobPayload(BaseModel):
    """
    Channel content stored on an outbox job.
    Each sender reads only its own fields:
    {
      "smsText": "...", "phone": "+9665...",
      "emailHtml": "<p>...</p>", "emailTo": "a@b.c", "emailSubject": "..."
    }
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    smsText: str | None = None
    phone: str | None = None
    emailHtml: str | None = None
    emailTo: str | None = None
    emailSubject: str | None = None


class EnqueueJobRequest(BaseModel):
    inviteId: str
    storeUid: str
    channels: list[Channel] = Field(min_length=1)
    payload: JobPayload


class OutboxJobOut(BaseModel):
    id: str
    inviteId: str
    storeUid: str
    channels: list[str]
    status: str
    attempts: int
    nextAttemptAt: int
    lastError: str | None = None
    lockedBy: str | None = None
    lockedAt: int | None = None
    createdAt: int
    updatedAt: int
