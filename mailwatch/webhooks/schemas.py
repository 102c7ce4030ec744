"""Pydantic schemas for webhook maintenance endpoints."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProcessingResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    subscription_id: str
    message_id: Optional[str] = None
    record_id: Optional[UUID] = None
    reason: Optional[str] = None
    target_service: Optional[str] = None
    error: Optional[str] = None


class ReprocessResponse(BaseModel):
    total: int = Field(..., description="Records picked up for reprocessing")
    forwarded: int
    failed: int
    results: list[ProcessingResultResponse]


class PurgeResponse(BaseModel):
    deleted: int
    days_to_keep: int
