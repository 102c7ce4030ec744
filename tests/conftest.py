"""Shared pytest fixtures.

Provides:
- An in-memory SQLite database per test (all tables created fresh)
- A controllable clock
- An in-memory subscription provider standing in for Graph
- Repositories and services wired to the above

Usage:
    @pytest.mark.asyncio
    async def test_create(manager, provider):
        subscription = await manager.create_subscription("ops@example.com")
        assert subscription.external_id in provider.subscriptions
"""

import os

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("GRAPH_TENANT_ID", "test-tenant")
os.environ.setdefault("GRAPH_CLIENT_ID", "test-client")
os.environ.setdefault("GRAPH_CLIENT_SECRET", "test-secret")

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest

from mailwatch.database import build_engine, build_session_factory
from mailwatch.graph.client import ProviderSubscription, SubscriptionProviderPort
from mailwatch.graph.errors import GraphNotFoundError
from mailwatch.models import Base
from mailwatch.rules.engine import RuleMatchingEngine
from mailwatch.rules.repository import RuleRepository
from mailwatch.subscriptions.repository import SubscriptionRepository
from mailwatch.subscriptions.service import SubscriptionManager
from mailwatch.webhooks.dedup import DedupCache
from mailwatch.webhooks.repository import NotificationRepository

START_TIME = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeSubscriptionProvider(SubscriptionProviderPort):
    """In-memory Graph subscription registry.

    Queue an exception for the next call of an operation with
    provider.fail("renew", GraphTransientError("...")). Set
    provider.granted_ttl to make the provider grant a different lifetime
    than the one requested.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.calls: list[tuple] = []
        self.granted_ttl = None
        self._failures: dict[str, list[Exception]] = {}
        self._counter = 0

    def fail(self, operation: str, error: Exception) -> None:
        self._failures.setdefault(operation, []).append(error)

    def _check(self, operation: str) -> None:
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _granted(self, requested: datetime) -> datetime:
        if self.granted_ttl is not None:
            return self.clock.now() + self.granted_ttl
        return requested

    async def create(self, resource, change_type, notification_url, expires_at, client_state):
        self.calls.append(("create", resource))
        self._check("create")
        self._counter += 1
        created = ProviderSubscription(
            id=f"graph-sub-{self._counter}",
            resource=resource,
            change_type=change_type,
            expires_at=self._granted(expires_at),
            notification_url=notification_url,
            client_state=client_state,
        )
        self.subscriptions[created.id] = created
        return created

    async def renew(self, subscription_id, expires_at):
        self.calls.append(("renew", subscription_id))
        self._check("renew")
        existing = self.subscriptions.get(subscription_id)
        if existing is None:
            raise GraphNotFoundError("subscription not found", status_code=404)
        existing.expires_at = self._granted(expires_at)
        return existing

    async def delete(self, subscription_id):
        self.calls.append(("delete", subscription_id))
        self._check("delete")
        if self.subscriptions.pop(subscription_id, None) is None:
            raise GraphNotFoundError("subscription not found", status_code=404)

    async def get(self, subscription_id):
        self.calls.append(("get", subscription_id))
        self._check("get")
        existing = self.subscriptions.get(subscription_id)
        if existing is None:
            raise GraphNotFoundError("subscription not found", status_code=404)
        return existing

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


@pytest.fixture
def session_factory() -> Generator:
    """Fresh in-memory database for each test."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(clock) -> FakeSubscriptionProvider:
    return FakeSubscriptionProvider(clock)


@pytest.fixture
def subscription_repository(session_factory) -> SubscriptionRepository:
    return SubscriptionRepository(session_factory)


@pytest.fixture
def rule_repository(session_factory) -> RuleRepository:
    return RuleRepository(session_factory)


@pytest.fixture
def notification_repository(session_factory) -> NotificationRepository:
    return NotificationRepository(session_factory)


@pytest.fixture
def manager(subscription_repository, provider, clock) -> SubscriptionManager:
    return SubscriptionManager(
        repository=subscription_repository,
        provider=provider,
        notification_url="https://hooks.example.com/api/webhooks/graph",
        clock=clock,
    )


@pytest.fixture
def rule_engine(rule_repository, clock) -> RuleMatchingEngine:
    return RuleMatchingEngine(rule_repository, fail_open=True, clock=clock)


@pytest.fixture
def dedup(clock) -> DedupCache:
    return DedupCache(ttl=timedelta(minutes=10), clock=clock)
