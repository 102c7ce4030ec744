"""Renewal Scheduler - keeps subscriptions alive ahead of expiry.

Two mechanisms run on one asyncio task:

- A timer index of (renew_at, subscription_id) sorted by renew_at, where
  renew_at = expires_at - lead_time. Entries are replaced, never stacked,
  whenever a fresher expiry becomes known.
- A periodic sweep (also run once at start) that renews every active
  subscription expiring within the threshold and hands already-lapsed ones
  to the fallback strategy.

Failed renewals are passed to a fallback strategy (default: create a fresh
subscription for the same mailbox and retire the old one). Auth and
permission failures skip the fallback; they need an operator.
"""

import asyncio
import bisect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from ..clock import SystemClock
from ..config import Settings
from ..graph.errors import GraphAuthError, GraphPermissionError
from ..models.subscription import Subscription
from ..observability.metrics import scheduled_renewals, subscription_operations_total
from ..observability.request_id import bind_request_id, generate_request_id
from .errors import NOT_FOUND_AT_PROVIDER, SubscriptionGoneError, SubscriptionNotFoundError
from .service import SubscriptionManager

logger = logging.getLogger(__name__)

FATAL_ERRORS = (GraphAuthError, GraphPermissionError)


class RenewalFallback(ABC):
    """Strategy invoked when a subscription could not be renewed."""

    @abstractmethod
    async def handle(self, subscription: Subscription, error: Exception) -> Optional[Subscription]:
        """Recover from a failed renewal. Returns the replacement, if any."""


class RecreateSubscriptionFallback(RenewalFallback):
    """Create a fresh subscription for the same mailbox, then retire the old one."""

    def __init__(self, manager: SubscriptionManager):
        self.manager = manager

    async def handle(self, subscription, error):
        replacement = await self.manager.create_subscription(
            mailbox=subscription.watched_mailbox,
            notification_url=subscription.notification_url,
            change_type=subscription.change_type,
            created_by="SYSTEM",
        )
        await self.manager.retire_subscription(
            subscription.id,
            reason=f"replaced by {replacement.external_id}",
        )
        subscription_operations_total.labels(operation="fallback", status="success").inc()
        logger.info(
            f"Recreated subscription for {subscription.watched_mailbox}",
            extra={"mailbox": subscription.watched_mailbox, "subscription_id": replacement.external_id},
        )
        return replacement


@dataclass
class SweepResult:
    checked: int = 0
    renewed: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)
    expired: list[UUID] = field(default_factory=list)
    ran_at: Optional[datetime] = None


class RenewalScheduler:
    """Arms renewal timers and runs the periodic safety sweep."""

    def __init__(
        self,
        manager: SubscriptionManager,
        clock=None,
        lead_time: timedelta = timedelta(minutes=30),
        sweep_interval: timedelta = timedelta(hours=6),
        sweep_threshold: timedelta = timedelta(hours=24),
        tick_seconds: float = 30.0,
        fallback: Optional[RenewalFallback] = None,
    ):
        self.manager = manager
        self.clock = clock or SystemClock()
        self.lead_time = lead_time
        self.sweep_interval = sweep_interval
        self.sweep_threshold = sweep_threshold
        self.tick_seconds = tick_seconds
        self.fallback = fallback if fallback is not None else RecreateSubscriptionFallback(manager)

        self._index: list[tuple[datetime, UUID]] = []
        self._entries: dict[UUID, datetime] = {}
        self._in_flight: set[UUID] = set()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_sweep_at: Optional[datetime] = None
        self._next_sweep_at: Optional[datetime] = None

        manager.attach_scheduler(self)

    @classmethod
    def from_settings(cls, settings: Settings, manager, clock=None, fallback=None) -> "RenewalScheduler":
        return cls(
            manager=manager,
            clock=clock,
            lead_time=timedelta(minutes=settings.RENEWAL_LEAD_MINUTES),
            sweep_interval=timedelta(hours=settings.RENEWAL_SWEEP_INTERVAL_HOURS),
            sweep_threshold=timedelta(hours=settings.RENEWAL_SWEEP_THRESHOLD_HOURS),
            tick_seconds=settings.RENEWAL_TICK_SECONDS,
            fallback=fallback,
        )

    def schedule(self, subscription: Subscription) -> Optional[datetime]:
        """Arm (or re-arm) the renewal timer for a subscription.

        Returns the renew_at instant. Inactive subscriptions are unscheduled.
        """
        if not subscription.active:
            self.unschedule(subscription.id)
            return None

        renew_at = subscription.expires_at - self.lead_time
        self._remove(subscription.id)
        bisect.insort(self._index, (renew_at, subscription.id))
        self._entries[subscription.id] = renew_at
        scheduled_renewals.set(len(self._entries))

        if renew_at <= self.clock.now():
            self._wakeup.set()
        return renew_at

    def unschedule(self, subscription_id: UUID) -> None:
        self._remove(subscription_id)
        scheduled_renewals.set(len(self._entries))

    def renew_at(self, subscription_id: UUID) -> Optional[datetime]:
        return self._entries.get(subscription_id)

    def next_renewal_at(self) -> Optional[datetime]:
        return self._index[0][0] if self._index else None

    def __len__(self) -> int:
        return len(self._entries)

    def _remove(self, subscription_id: UUID) -> None:
        renew_at = self._entries.pop(subscription_id, None)
        if renew_at is None:
            return
        position = bisect.bisect_left(self._index, (renew_at, subscription_id))
        if position < len(self._index) and self._index[position] == (renew_at, subscription_id):
            del self._index[position]

    def _pop_due(self, now: datetime) -> list[UUID]:
        due = []
        while self._index and self._index[0][0] <= now:
            _, subscription_id = self._index.pop(0)
            self._entries.pop(subscription_id, None)
            due.append(subscription_id)
        scheduled_renewals.set(len(self._entries))
        return due

    async def run_due(self) -> list[UUID]:
        """Renew every subscription whose timer has fired. Returns their ids."""
        due = self._pop_due(self.clock.now())
        for subscription_id in due:
            await self._renew(subscription_id)
        return due

    async def _renew(self, subscription_id: UUID) -> bool:
        if subscription_id in self._in_flight:
            return False

        self._in_flight.add(subscription_id)
        try:
            await self.manager.renew_subscription(subscription_id, renewed_by="SYSTEM")
            return True
        except SubscriptionNotFoundError:
            logger.warning(f"Scheduled renewal for unknown subscription {subscription_id}")
            return False
        except FATAL_ERRORS as e:
            logger.error(
                f"Renewal of {subscription_id} failed and needs operator attention: {e}",
                extra={"outcome": "fatal"},
            )
            return False
        except Exception as e:
            logger.error(f"Renewal of {subscription_id} failed: {e}")
            await self._fallback(subscription_id, e)
            return False
        finally:
            self._in_flight.discard(subscription_id)

    async def _fallback(self, subscription_id: UUID, error: Exception) -> None:
        try:
            subscription = self.manager.get(subscription_id)
        except SubscriptionNotFoundError:
            return

        if isinstance(error, SubscriptionGoneError) and error.reason != NOT_FOUND_AT_PROVIDER:
            # Already retired or deleted locally; nothing to recover
            return

        try:
            await self.fallback.handle(subscription, error)
        except Exception as e:
            subscription_operations_total.labels(operation="fallback", status="error").inc()
            logger.error(
                f"Fallback for subscription {subscription_id} failed: {e}",
                extra={"mailbox": subscription.watched_mailbox},
            )

    async def sweep(self) -> SweepResult:
        """Renew subscriptions expiring within the threshold.

        Idempotent: a renewed subscription's new expiry lies beyond the
        threshold, so a second sweep finds nothing to do. Subscriptions
        outside the threshold are (re)armed on the timer index.
        """
        now = self.clock.now()
        horizon = now + self.sweep_threshold
        result = SweepResult(ran_at=now)

        for subscription in self.manager.list_active():
            result.checked += 1
            if subscription.expires_at <= now:
                logger.warning(
                    f"Subscription {subscription.external_id} lapsed before renewal",
                    extra={"subscription_id": subscription.external_id, "mailbox": subscription.watched_mailbox},
                )
                expired = self.manager.mark_expired(subscription.id, reason="lapsed before renewal")
                result.expired.append(subscription.id)
                try:
                    await self.fallback.handle(expired, SubscriptionGoneError(subscription.id, "lapsed"))
                except Exception as e:
                    subscription_operations_total.labels(operation="fallback", status="error").inc()
                    logger.error(f"Fallback for lapsed subscription {subscription.id} failed: {e}")
            elif subscription.expires_at <= horizon:
                if subscription.id in self._in_flight:
                    continue
                self._remove(subscription.id)
                if await self._renew(subscription.id):
                    result.renewed.append(subscription.id)
                else:
                    result.failed.append(subscription.id)
            elif subscription.id not in self._entries:
                self.schedule(subscription)

        self._last_sweep_at = now
        self._next_sweep_at = now + self.sweep_interval
        logger.info(
            f"Renewal sweep checked {result.checked}, renewed {len(result.renewed)}, "
            f"failed {len(result.failed)}, expired {len(result.expired)}"
        )
        return result

    async def run_sweep_now(self) -> SweepResult:
        return await self.sweep()

    def bootstrap(self) -> int:
        """Arm timers for every active subscription in the store."""
        count = 0
        for subscription in self.manager.list_active():
            self.schedule(subscription)
            count += 1
        logger.info(f"Armed renewal timers for {count} subscription(s)")
        return count

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="renewal-scheduler")
        logger.info("Renewal scheduler started")

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Renewal scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        next_renewal = self.next_renewal_at()
        return {
            "running": self.running,
            "scheduled": len(self._entries),
            "in_flight": len(self._in_flight),
            "lead_time_minutes": self.lead_time.total_seconds() / 60,
            "sweep_interval_hours": self.sweep_interval.total_seconds() / 3600,
            "sweep_threshold_hours": self.sweep_threshold.total_seconds() / 3600,
            "next_renewal_at": next_renewal.isoformat() if next_renewal else None,
            "last_sweep_at": self._last_sweep_at.isoformat() if self._last_sweep_at else None,
            "next_sweep_at": self._next_sweep_at.isoformat() if self._next_sweep_at else None,
        }

    async def _run(self) -> None:
        await self._safe_sweep()
        while self._running:
            next_renewal = self.next_renewal_at()
            try:
                if next_renewal is not None and next_renewal <= self.clock.now():
                    with bind_request_id(generate_request_id("renewal")):
                        await self.run_due()
            except Exception:
                logger.exception("Renewal tick failed")

            if self._next_sweep_at is not None and self.clock.now() >= self._next_sweep_at:
                await self._safe_sweep()

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._seconds_until_next_event())
            except asyncio.TimeoutError:
                pass

    async def _safe_sweep(self) -> None:
        try:
            with bind_request_id(generate_request_id("sweep")):
                await self.sweep()
        except Exception:
            logger.exception("Renewal sweep failed")
            self._next_sweep_at = self.clock.now() + self.sweep_interval

    def _seconds_until_next_event(self) -> float:
        now = self.clock.now()
        candidates = [self.tick_seconds]
        next_renewal = self.next_renewal_at()
        if next_renewal is not None:
            candidates.append((next_renewal - now).total_seconds())
        if self._next_sweep_at is not None:
            candidates.append((self._next_sweep_at - now).total_seconds())
        return max(0.0, min(candidates))
