import uuid
from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field, HttpUrl

from app.webhooks.dispatcher import EVENT_CATALOG


def _check_events(events: list[str]) -> list[str]:
    unknown = sorted(set(events) - set(EVENT_CATALOG))
    if unknown:
        raise ValueError(f"Unknown event(s): {', '.join(unknown)}")
    # de-duplicate, keep catalog order
    return [e for e in EVENT_CATALOG if e in events]


EventList = Annotated[list[str], Field(min_length=1), AfterValidator(_check_events)]


# ── Request schemas ─────────────────────────────────────────────────────────────


class WebhookCreate(BaseModel):
    url: HttpUrl
    events: EventList


class WebhookUpdate(BaseModel):
    url: Optional[HttpUrl] = None
    events: Optional[EventList] = None
    is_active: Optional[bool] = None


# ── Response schemas ────────────────────────────────────────────────────────────


class WebhookResponse(BaseModel):
    id: uuid.UUID
    url: str
    events: list[str]
    is_active: bool
    secret: str
    created_at: datetime
    updated_at: datetime


class WebhookDeliveryResponse(BaseModel):
    id: uuid.UUID
    webhook_id: uuid.UUID
    event_type: str
    payload: dict
    attempts: int
    response_code: Optional[int]
    response_body: Optional[str]
    delivered_at: Optional[datetime]
    next_retry_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}
