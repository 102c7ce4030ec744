"""Unit tests for SubscriptionManager.

Runs against an in-memory database and the fake provider from conftest.
"""

from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest
from sqlalchemy import select

from mailwatch.graph.errors import GraphAuthError, GraphPermissionError, GraphTransientError
from mailwatch.models import AuditLog, SubscriptionStatus
from mailwatch.subscriptions.errors import SubscriptionGoneError, SubscriptionNotFoundError


def audit_actions(session_factory) -> list[str]:
    with session_factory() as session:
        return [row.action for row in session.scalars(select(AuditLog))]


class TestCreateSubscription:

    @pytest.mark.asyncio
    async def test_creates_active_subscription_on_inbox(self, manager, provider, clock):
        subscription = await manager.create_subscription("ops@example.com", created_by="alice")

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.external_id == "graph-sub-1"
        assert subscription.resource_path == "users/ops@example.com/mailFolders('Inbox')/messages"
        assert subscription.client_state
        assert subscription.created_by == "alice"
        assert provider.subscriptions["graph-sub-1"].client_state == subscription.client_state

        stored = manager.get(subscription.id)
        assert stored.external_id == "graph-sub-1"
        assert stored.expires_at > clock.now()

    @pytest.mark.asyncio
    async def test_ttl_is_clamped_to_provider_maximum(self, manager, clock):
        subscription = await manager.create_subscription("ops@example.com", ttl_hours=200)

        assert subscription.expires_at == clock.now() + timedelta(minutes=4230)

    @pytest.mark.asyncio
    async def test_default_ttl_is_clamped_too(self, manager, clock):
        subscription = await manager.create_subscription("ops@example.com")

        # 72h requested, 70.5h allowed
        assert subscription.expires_at == clock.now() + timedelta(minutes=4230)

    @pytest.mark.asyncio
    async def test_short_ttl_is_kept(self, manager, clock):
        subscription = await manager.create_subscription("ops@example.com", ttl_hours=2)

        assert subscription.expires_at == clock.now() + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_stores_expiry_returned_by_provider(self, manager, provider, clock):
        provider.granted_ttl = timedelta(hours=10)

        subscription = await manager.create_subscription("ops@example.com")

        assert subscription.expires_at == clock.now() + timedelta(hours=10)

    @pytest.mark.asyncio
    async def test_client_states_are_unique(self, manager):
        first = await manager.create_subscription("a@example.com")
        second = await manager.create_subscription("b@example.com")

        assert first.client_state != second.client_state

    @pytest.mark.asyncio
    async def test_writes_created_audit_entry(self, manager, session_factory):
        await manager.create_subscription("ops@example.com")

        assert audit_actions(session_factory) == ["SUBSCRIPTION_CREATED"]

    @pytest.mark.asyncio
    async def test_hands_off_to_scheduler(self, manager):
        scheduler = Mock()
        manager.attach_scheduler(scheduler)

        subscription = await manager.create_subscription("ops@example.com")

        scheduler.schedule.assert_called_once_with(subscription)

    @pytest.mark.asyncio
    async def test_provider_failure_persists_nothing(self, manager, provider):
        provider.fail("create", GraphPermissionError("denied", status_code=403))

        with pytest.raises(GraphPermissionError):
            await manager.create_subscription("ops@example.com")

        assert manager.list_active() == []

    @pytest.mark.asyncio
    async def test_rejects_empty_mailbox(self, manager, provider):
        with pytest.raises(ValueError):
            await manager.create_subscription("  ")
        assert provider.calls == []


class TestRenewSubscription:

    @pytest.mark.asyncio
    async def test_renewal_persists_provider_expiry(self, manager, provider, clock):
        subscription = await manager.create_subscription("ops@example.com")
        clock.advance(hours=60)
        provider.granted_ttl = timedelta(hours=48)

        renewed = await manager.renew_subscription(subscription.id)

        assert renewed.expires_at == clock.now() + timedelta(hours=48)
        assert renewed.renewal_count == 1
        assert renewed.status == SubscriptionStatus.ACTIVE.value
        assert renewed.last_renewed_at == clock.now()
        assert manager.get(subscription.id).expires_at == clock.now() + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_renewal_writes_audit_entry(self, manager, session_factory):
        subscription = await manager.create_subscription("ops@example.com")

        await manager.renew_subscription(subscription.id, renewed_by="bob")

        assert audit_actions(session_factory) == ["SUBSCRIPTION_CREATED", "SUBSCRIPTION_RENEWED"]

    @pytest.mark.asyncio
    async def test_renewal_reschedules(self, manager):
        subscription = await manager.create_subscription("ops@example.com")
        scheduler = Mock()
        manager.attach_scheduler(scheduler)

        renewed = await manager.renew_subscription(subscription.id)

        scheduler.schedule.assert_called_once_with(renewed)

    @pytest.mark.asyncio
    async def test_failed_renewal_restores_active_and_reraises(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        provider.fail("renew", GraphTransientError("throttled", status_code=429))

        with pytest.raises(GraphTransientError):
            await manager.renew_subscription(subscription.id)

        stored = manager.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE.value
        assert stored.expires_at == subscription.expires_at
        assert stored.renewal_count == 0

    @pytest.mark.asyncio
    async def test_auth_failure_surfaces(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        provider.fail("renew", GraphAuthError("bad secret", status_code=401))

        with pytest.raises(GraphAuthError):
            await manager.renew_subscription(subscription.id)

    @pytest.mark.asyncio
    async def test_not_found_at_provider_deactivates(self, manager, provider, session_factory):
        subscription = await manager.create_subscription("ops@example.com")
        scheduler = Mock()
        manager.attach_scheduler(scheduler)
        provider.subscriptions.clear()

        with pytest.raises(SubscriptionGoneError):
            await manager.renew_subscription(subscription.id)

        stored = manager.get(subscription.id)
        assert stored.status == SubscriptionStatus.EXPIRED.value
        assert stored.deactivated_at is not None
        scheduler.unschedule.assert_called_once_with(subscription.id)
        assert audit_actions(session_factory)[-1] == "SUBSCRIPTION_DEACTIVATED"

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, manager):
        with pytest.raises(SubscriptionNotFoundError):
            await manager.renew_subscription(uuid4())

    @pytest.mark.asyncio
    async def test_inactive_subscription_is_gone(self, manager):
        subscription = await manager.create_subscription("ops@example.com")
        await manager.delete_subscription(subscription.id)

        with pytest.raises(SubscriptionGoneError):
            await manager.renew_subscription(subscription.id)


class TestDeleteSubscription:

    @pytest.mark.asyncio
    async def test_delete_removes_remote_and_local(self, manager, provider, session_factory):
        subscription = await manager.create_subscription("ops@example.com")

        await manager.delete_subscription(subscription.id, deleted_by="carol")

        assert provider.subscriptions == {}
        stored = manager.get(subscription.id)
        assert stored.status == SubscriptionStatus.DELETED.value
        assert stored.deactivated_by == "carol"
        assert audit_actions(session_factory)[-1] == "SUBSCRIPTION_DEACTIVATED"

    @pytest.mark.asyncio
    async def test_remote_not_found_is_success(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        provider.subscriptions.clear()

        await manager.delete_subscription(subscription.id)

        assert manager.get(subscription.id).status == SubscriptionStatus.DELETED.value

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")

        await manager.delete_subscription(subscription.id)
        await manager.delete_subscription(subscription.id)

        assert provider.count("delete") == 1

    @pytest.mark.asyncio
    async def test_other_provider_errors_propagate(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        provider.fail("delete", GraphTransientError("down", status_code=503))

        with pytest.raises(GraphTransientError):
            await manager.delete_subscription(subscription.id)

        assert manager.get(subscription.id).status == SubscriptionStatus.ACTIVE.value


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_expiring(self, manager):
        soon = await manager.create_subscription("soon@example.com", ttl_hours=2)
        await manager.create_subscription("later@example.com", ttl_hours=48)

        expiring = manager.list_expiring(timedelta(hours=24))

        assert [s.id for s in expiring] == [soon.id]

    @pytest.mark.asyncio
    async def test_list_active_excludes_deleted(self, manager):
        kept = await manager.create_subscription("kept@example.com")
        dropped = await manager.create_subscription("dropped@example.com")
        await manager.delete_subscription(dropped.id)

        assert [s.id for s in manager.list_active()] == [kept.id]


class TestVerifySubscriptions:

    @pytest.mark.asyncio
    async def test_reports_valid_and_deactivates_missing(self, manager, provider):
        valid = await manager.create_subscription("valid@example.com")
        missing = await manager.create_subscription("missing@example.com")
        del provider.subscriptions[missing.external_id]

        results = {r.subscription_id: r for r in await manager.verify_subscriptions()}

        assert results[valid.id].status == "valid"
        assert results[missing.id].status == "gone"
        assert manager.get(missing.id).status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_transient_errors_are_reported(self, manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        provider.fail("get", GraphTransientError("down", status_code=503))

        results = await manager.verify_subscriptions()

        assert results[0].status == "error"
        assert manager.get(subscription.id).active

    @pytest.mark.asyncio
    async def test_auth_failure_aborts(self, manager, provider):
        await manager.create_subscription("ops@example.com")
        provider.fail("get", GraphAuthError("bad secret", status_code=401))

        with pytest.raises(GraphAuthError):
            await manager.verify_subscriptions()
