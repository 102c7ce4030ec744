"""Pydantic schemas for subscription endpoints."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionCreate(BaseModel):
    """Request body for registering a mailbox subscription."""
    mailbox: str = Field(..., min_length=3, max_length=320, description="Mailbox address to watch")
    notification_url: Optional[str] = Field(None, description="Override for the webhook URL")
    change_type: Optional[str] = Field(None, description="Graph change type (default: created)")
    ttl_hours: Optional[float] = Field(None, gt=0, description="Requested lifetime, clamped to the provider maximum")
    created_by: str = Field("API", max_length=255)

    @field_validator("mailbox")
    @classmethod
    def validate_mailbox(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("mailbox must be an email address")
        return v


class SubscriptionAction(BaseModel):
    """Optional body for renew/delete, naming who performed the action."""
    performed_by: str = Field("API", max_length=255)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: Optional[str] = None
    watched_mailbox: str
    resource_path: str
    change_type: str
    notification_url: Optional[str] = None
    status: str
    active: bool
    expires_at: datetime
    renewal_count: int
    created_by: str
    last_renewed_at: Optional[datetime] = None
    renewed_by: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class SubscriptionListResponse(BaseModel):
    items: list[SubscriptionResponse]
    total: int


class VerificationResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: UUID
    external_id: Optional[str] = None
    mailbox: str
    status: str = Field(..., description="valid | gone | error")
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    running: bool
    scheduled: int
    in_flight: int
    lead_time_minutes: float
    sweep_interval_hours: float
    sweep_threshold_hours: float
    next_renewal_at: Optional[datetime] = None
    last_sweep_at: Optional[datetime] = None
    next_sweep_at: Optional[datetime] = None


class SweepResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    checked: int
    renewed: list[UUID]
    failed: list[UUID]
    expired: list[UUID]
    ran_at: Optional[datetime] = None
