"""FastAPI router for subscription management.

Operator entry points for the subscription lifecycle and the auto-renewal
scheduler. Provider errors propagate to the exception handlers in main.py.
"""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_scheduler, get_subscription_manager
from .errors import SubscriptionGoneError, SubscriptionNotFoundError
from .scheduler import RenewalScheduler
from .schemas import (
    SchedulerStatusResponse,
    SubscriptionAction,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionResponse,
    SweepResultResponse,
    VerificationResultResponse,
)
from .service import SubscriptionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    """Register a subscription on the mailbox's inbox.

    Raises:
        HTTPException 403: Application lacks Mail.Read for the mailbox
        HTTPException 502: Graph credentials rejected
        HTTPException 503: Graph temporarily unavailable
    """
    subscription = await manager.create_subscription(
        mailbox=body.mailbox,
        notification_url=body.notification_url,
        change_type=body.change_type,
        ttl_hours=body.ttl_hours,
        created_by=body.created_by,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.get("", response_model=SubscriptionListResponse)
def list_subscriptions(
    expiring_within_hours: Optional[float] = None,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> SubscriptionListResponse:
    """List active subscriptions, optionally only those expiring soon."""
    if expiring_within_hours is not None:
        subscriptions = manager.list_expiring(timedelta(hours=expiring_within_hours))
    else:
        subscriptions = manager.list_active()
    items = [SubscriptionResponse.model_validate(s) for s in subscriptions]
    return SubscriptionListResponse(items=items, total=len(items))


@router.get("/auto-renewal/status", response_model=SchedulerStatusResponse)
def auto_renewal_status(
    scheduler: RenewalScheduler = Depends(get_scheduler),
) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(**scheduler.status())


@router.post("/auto-renewal/run", response_model=SweepResultResponse)
async def run_auto_renewal(
    scheduler: RenewalScheduler = Depends(get_scheduler),
) -> SweepResultResponse:
    """Run a renewal sweep immediately instead of waiting for the next interval."""
    result = await scheduler.run_sweep_now()
    return SweepResultResponse.model_validate(result)


@router.post("/verify", response_model=list[VerificationResultResponse])
async def verify_subscriptions(
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> list[VerificationResultResponse]:
    """Check every active subscription against Graph, deactivating missing ones."""
    results = await manager.verify_subscriptions()
    return [VerificationResultResponse.model_validate(r) for r in results]


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: UUID,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    try:
        subscription = manager.get(subscription_id)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: UUID,
    body: Optional[SubscriptionAction] = None,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    """Renew a subscription now.

    Raises:
        HTTPException 404: Unknown subscription
        HTTPException 410: Subscription no longer exists at the provider
    """
    performed_by = body.performed_by if body else "API"
    try:
        subscription = await manager.renew_subscription(subscription_id, renewed_by=performed_by)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SubscriptionGoneError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    return SubscriptionResponse.model_validate(subscription)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: UUID,
    performed_by: str = "API",
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> None:
    try:
        await manager.delete_subscription(subscription_id, deleted_by=performed_by)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info(f"Subscription {subscription_id} deleted by {performed_by}")
