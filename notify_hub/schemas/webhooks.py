from typing import Literal

from pydantic import BaseModel


class ManualRetryRequest(BaseModel):
    dlqId: str


class ResolveRequest(BaseModel):
    dlqId: str
    resolution: Literal["ignored", "manual_fix"]
    notes: str | None = None


class SallaCustomer(BaseModel):
    id: str | int | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    mobile: str | int | None = None
    mobile_code: str | None = None

    @property
    def full_name(self) -> str | None:
        if self.name:
            return self.name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    @property
    def phone(self) -> str | None:
        if self.mobile in (None, ""):
            return None
        mobile = str(self.mobile)
        if self.mobile_code and not mobile.startswith("+"):
            return f"{self.mobile_code}{mobile}"
        return mobile


class SallaOrderStatus(BaseModel):
    slug: str | None = None
    name: str | None = None


class SallaOrder(BaseModel):
    """The subset of a Salla order that review invites need."""
    id: str | int
    reference_id: str | int | None = None
    status: SallaOrderStatus | str | None = None
    customer: SallaCustomer | None = None

    @property
    def status_slug(self) -> str | None:
        if isinstance(self.status, SallaOrderStatus):
            return self.status.slug or self.status.name
        return self.status


class SallaWebhook(BaseModel):
    event: str
    merchant: str | int | None = None
    created_at: str | None = None
    data: dict | None = None
