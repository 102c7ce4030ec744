"""Subscription Manager - create, renew, delete and verify subscriptions.

The local Subscription row mirrors one provider subscription. Every lifecycle
change is persisted together with an audit entry and handed to the renewal
scheduler (when one is attached) so timers always track the latest expiry.

Error policy:
- GraphAuthError / GraphPermissionError are surfaced to the caller as-is
- GraphTransientError is surfaced; retry happens on the next scheduled cycle
- GraphNotFoundError on renew/verify deactivates the local record
- GraphNotFoundError on delete is treated as success
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol
from uuid import UUID

from ..clock import SystemClock
from ..config import Settings
from ..graph.client import SubscriptionProviderPort
from ..graph.errors import GraphAPIError, GraphAuthError, GraphNotFoundError
from ..models.audit_log import AuditAction
from ..models.subscription import Subscription, SubscriptionStatus
from ..observability.metrics import subscription_operations_total
from .errors import NOT_FOUND_AT_PROVIDER, SubscriptionGoneError, SubscriptionNotFoundError
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

INBOX_RESOURCE_TEMPLATE = "users/{mailbox}/mailFolders('Inbox')/messages"


class RenewalSchedule(Protocol):
    def schedule(self, subscription: Subscription) -> None: ...

    def unschedule(self, subscription_id: UUID) -> None: ...


@dataclass
class VerificationResult:
    """Outcome of checking one local subscription against the provider."""
    subscription_id: UUID
    external_id: Optional[str]
    mailbox: str
    status: str  # valid | gone | error
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


def inbox_resource(mailbox: str) -> str:
    return INBOX_RESOURCE_TEMPLATE.format(mailbox=mailbox)


def generate_client_state() -> str:
    return secrets.token_urlsafe(32)


class SubscriptionManager:
    """Owns the provider-side lifecycle of mailbox subscriptions."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        provider: SubscriptionProviderPort,
        notification_url: str,
        change_type: str = "created",
        default_ttl: timedelta = timedelta(hours=72),
        max_ttl: timedelta = timedelta(minutes=4230),
        clock=None,
    ):
        self.repository = repository
        self.provider = provider
        self.notification_url = notification_url
        self.change_type = change_type
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self.clock = clock or SystemClock()
        self._scheduler: Optional[RenewalSchedule] = None

    @classmethod
    def from_settings(cls, settings: Settings, repository, provider, clock=None) -> "SubscriptionManager":
        return cls(
            repository=repository,
            provider=provider,
            notification_url=settings.WEBHOOK_URL,
            change_type=settings.SUBSCRIPTION_CHANGE_TYPE,
            default_ttl=timedelta(hours=settings.SUBSCRIPTION_DEFAULT_TTL_HOURS),
            max_ttl=timedelta(minutes=settings.SUBSCRIPTION_MAX_TTL_MINUTES),
            clock=clock,
        )

    def attach_scheduler(self, scheduler: RenewalSchedule) -> None:
        self._scheduler = scheduler

    def requested_expiry(self, ttl: Optional[timedelta] = None) -> datetime:
        """now + ttl, clamped to the provider's maximum lifetime."""
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= timedelta(0):
            raise ValueError("Subscription TTL must be positive")
        return self.clock.now() + min(ttl, self.max_ttl)

    def get(self, subscription_id: UUID) -> Subscription:
        subscription = self.repository.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def list_active(self) -> list[Subscription]:
        return self.repository.list_active()

    def list_expiring(self, within: timedelta) -> list[Subscription]:
        return self.repository.list_expiring(self.clock.now() + within)

    async def create_subscription(
        self,
        mailbox: str,
        notification_url: Optional[str] = None,
        change_type: Optional[str] = None,
        ttl_hours: Optional[float] = None,
        created_by: str = "SYSTEM",
    ) -> Subscription:
        """Register a new subscription on the mailbox's inbox.

        The local record is only persisted once the provider has accepted the
        registration, using the provider's returned id and expiry.

        Raises:
            ValueError: Empty mailbox or non-positive TTL
            GraphAPIError: Provider rejected or failed the registration
        """
        mailbox = (mailbox or "").strip()
        if not mailbox:
            raise ValueError("Mailbox is required")

        ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else None
        requested = self.requested_expiry(ttl)
        resource = inbox_resource(mailbox)
        client_state = generate_client_state()

        subscription = Subscription(
            status=SubscriptionStatus.CREATING,
            watched_mailbox=mailbox,
            resource_path=resource,
            change_type=change_type or self.change_type,
            notification_url=notification_url or self.notification_url,
            client_state=client_state,
            expires_at=requested,
            created_by=created_by,
            renewal_count=0,
        )

        try:
            remote = await self.provider.create(
                resource=resource,
                change_type=subscription.change_type,
                notification_url=subscription.notification_url,
                expires_at=requested,
                client_state=client_state,
            )
        except GraphAPIError as e:
            subscription_operations_total.labels(operation="create", status="error").inc()
            logger.error(
                f"Failed to create subscription for {mailbox}: {e}",
                extra={"mailbox": mailbox},
            )
            raise

        subscription.external_id = remote.id
        subscription.expires_at = remote.expires_at
        subscription.resource_path = remote.resource or resource
        subscription.client_state = remote.client_state or client_state
        subscription.status = SubscriptionStatus.ACTIVE

        try:
            self.repository.save(
                subscription,
                audit_action=AuditAction.SUBSCRIPTION_CREATED,
                performed_by=created_by,
                metadata={
                    "external_id": remote.id,
                    "mailbox": mailbox,
                    "expires_at": remote.expires_at.isoformat(),
                },
            )
        except Exception:
            logger.error(
                f"Failed to persist subscription {remote.id}; removing it at the provider",
                extra={"mailbox": mailbox, "subscription_id": remote.id},
            )
            await self._delete_remote_quietly(remote.id)
            raise

        subscription_operations_total.labels(operation="create", status="success").inc()
        logger.info(
            f"Subscription created for {mailbox}, expires {remote.expires_at.isoformat()}",
            extra={"mailbox": mailbox, "subscription_id": remote.id},
        )

        if self._scheduler is not None:
            self._scheduler.schedule(subscription)
        return subscription

    async def renew_subscription(self, subscription_id: UUID, renewed_by: str = "SYSTEM") -> Subscription:
        """Extend a subscription by the default TTL.

        The stored expiry is always the one the provider returns.

        Raises:
            SubscriptionNotFoundError: Unknown local id
            SubscriptionGoneError: Subscription inactive, or absent at the provider
            GraphAPIError: Any other provider failure (record stays ACTIVE)
        """
        subscription = self.get(subscription_id)
        if not subscription.active:
            raise SubscriptionGoneError(subscription_id, f"status is {subscription.status}")

        if subscription.status != SubscriptionStatus.RENEWING.value:
            subscription.status = SubscriptionStatus.RENEWING
            self.repository.save(subscription)

        requested = self.requested_expiry()
        try:
            remote = await self.provider.renew(subscription.external_id, requested)
        except GraphNotFoundError as e:
            subscription_operations_total.labels(operation="renew", status="not_found").inc()
            logger.warning(
                f"Subscription {subscription.external_id} no longer exists at the provider",
                extra={"subscription_id": subscription.external_id, "mailbox": subscription.watched_mailbox},
            )
            self._deactivate(subscription, SubscriptionStatus.EXPIRED, renewed_by, NOT_FOUND_AT_PROVIDER)
            raise SubscriptionGoneError(subscription_id, NOT_FOUND_AT_PROVIDER) from e
        except Exception as e:
            subscription_operations_total.labels(operation="renew", status="error").inc()
            logger.error(
                f"Renewal of subscription {subscription.external_id} failed: {e}",
                extra={"subscription_id": subscription.external_id, "mailbox": subscription.watched_mailbox},
            )
            subscription.status = SubscriptionStatus.ACTIVE
            self.repository.save(subscription)
            raise

        now = self.clock.now()
        subscription.expires_at = remote.expires_at
        subscription.renewal_count = (subscription.renewal_count or 0) + 1
        subscription.last_renewed_at = now
        subscription.renewed_by = renewed_by
        subscription.status = SubscriptionStatus.ACTIVE
        self.repository.save(
            subscription,
            audit_action=AuditAction.SUBSCRIPTION_RENEWED,
            performed_by=renewed_by,
            metadata={
                "external_id": subscription.external_id,
                "expires_at": remote.expires_at.isoformat(),
                "renewal_count": subscription.renewal_count,
            },
        )

        subscription_operations_total.labels(operation="renew", status="success").inc()
        logger.info(
            f"Subscription renewed until {remote.expires_at.isoformat()}",
            extra={"subscription_id": subscription.external_id, "mailbox": subscription.watched_mailbox},
        )

        if self._scheduler is not None:
            self._scheduler.schedule(subscription)
        return subscription

    async def delete_subscription(self, subscription_id: UUID, deleted_by: str = "SYSTEM") -> None:
        """Delete remotely and locally. Idempotent.

        Raises:
            SubscriptionNotFoundError: Unknown local id
            GraphAPIError: Provider failure other than "not found"
        """
        subscription = self.get(subscription_id)
        if not subscription.active:
            if self._scheduler is not None:
                self._scheduler.unschedule(subscription.id)
            return

        try:
            await self.provider.delete(subscription.external_id)
        except GraphNotFoundError:
            logger.info(
                f"Subscription {subscription.external_id} already absent at the provider",
                extra={"subscription_id": subscription.external_id},
            )
        except GraphAPIError:
            subscription_operations_total.labels(operation="delete", status="error").inc()
            raise

        self._deactivate(subscription, SubscriptionStatus.DELETED, deleted_by, "deleted")
        subscription_operations_total.labels(operation="delete", status="success").inc()

    async def retire_subscription(self, subscription_id: UUID, reason: str, performed_by: str = "SYSTEM") -> None:
        """Mark a subscription EXPIRED and remove it remotely on a best-effort basis.

        Used when a replacement has been created, or when the local record has
        already lapsed.
        """
        subscription = self.get(subscription_id)
        if not subscription.active:
            return
        self._deactivate(subscription, SubscriptionStatus.EXPIRED, performed_by, reason)
        await self._delete_remote_quietly(subscription.external_id)

    def mark_expired(self, subscription_id: UUID, reason: str, performed_by: str = "SYSTEM") -> Subscription:
        subscription = self.get(subscription_id)
        if subscription.active:
            self._deactivate(subscription, SubscriptionStatus.EXPIRED, performed_by, reason)
        return subscription

    async def verify_subscriptions(self) -> list[VerificationResult]:
        """Check every active subscription against the provider.

        Provider-confirmed absence deactivates the local record.

        Raises:
            GraphAuthError: Credentials rejected (aborts the whole run)
        """
        results = []
        for subscription in self.repository.list_active():
            try:
                remote = await self.provider.get(subscription.external_id)
            except GraphNotFoundError:
                self._deactivate(subscription, SubscriptionStatus.EXPIRED, "SYSTEM", NOT_FOUND_AT_PROVIDER)
                results.append(VerificationResult(
                    subscription_id=subscription.id,
                    external_id=subscription.external_id,
                    mailbox=subscription.watched_mailbox,
                    status="gone",
                ))
                continue
            except GraphAuthError:
                raise
            except GraphAPIError as e:
                results.append(VerificationResult(
                    subscription_id=subscription.id,
                    external_id=subscription.external_id,
                    mailbox=subscription.watched_mailbox,
                    status="error",
                    expires_at=subscription.expires_at,
                    error=str(e),
                ))
                continue

            results.append(VerificationResult(
                subscription_id=subscription.id,
                external_id=subscription.external_id,
                mailbox=subscription.watched_mailbox,
                status="valid",
                expires_at=remote.expires_at,
            ))

        logger.info(
            f"Verified {len(results)} subscription(s), "
            f"{sum(1 for r in results if r.status == 'gone')} gone"
        )
        return results

    def _deactivate(
        self,
        subscription: Subscription,
        status: SubscriptionStatus,
        performed_by: str,
        reason: str,
    ) -> None:
        subscription.status = status
        subscription.deactivated_at = self.clock.now()
        subscription.deactivated_by = performed_by
        self.repository.save(
            subscription,
            audit_action=AuditAction.SUBSCRIPTION_DEACTIVATED,
            performed_by=performed_by,
            metadata={
                "external_id": subscription.external_id,
                "status": status.value,
                "reason": reason,
            },
        )
        if self._scheduler is not None:
            self._scheduler.unschedule(subscription.id)
        logger.info(
            f"Subscription deactivated ({status.value}): {reason}",
            extra={"subscription_id": subscription.external_id, "mailbox": subscription.watched_mailbox},
        )

    async def _delete_remote_quietly(self, external_id: Optional[str]) -> None:
        if not external_id:
            return
        try:
            await self.provider.delete(external_id)
        except GraphAPIError as e:
            logger.warning(
                f"Could not delete subscription {external_id} at the provider: {e}",
                extra={"subscription_id": external_id},
            )
