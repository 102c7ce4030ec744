"""Unit tests for NotificationDispatcher.

Uses the real repositories, rule engine and dedup cache on an in-memory
database; the mail reader, forwarder and attachment store are mocks.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from sqlalchemy import select

from mailwatch.graph.errors import GraphNotFoundError
from mailwatch.graph.mail_reader import MessageAttachment, MessageSummary
from mailwatch.models import MonitoringRule, NotificationRecord
from mailwatch.models.monitoring_rule import Supplier
from mailwatch.rules.engine import NO_ACTIVE_RULES, NO_MATCHING_RULE, RuleMatchingEngine
from mailwatch.rules.schemas import ArchiveRule, AutomationRule, CustomRule
from mailwatch.storage.attachments import StoredAttachment
from mailwatch.webhooks.dedup import dedup_key
from mailwatch.webhooks.dispatcher import (
    CLIENT_STATE_MISMATCH,
    DUPLICATE,
    SUBSCRIPTION_NOT_FOUND,
    UNREADABLE,
    UNSUPPORTED_SUPPLIER,
    NotificationDispatcher,
    ProcessingStatus,
)
from mailwatch.webhooks.forwarder import ForwardError, ForwardResult
from mailwatch.webhooks.validator import ChangeNotification


def summary(sender="billing@ups.com", subject="UPS Invoice 42", message_id="AAMk1", attachments=None):
    return MessageSummary(
        message_id=message_id,
        sender=sender,
        subject=subject,
        body_preview="Your invoice is attached",
        received_at="2025-01-06T11:59:00Z",
        attachments=attachments or [],
    )


def notification_for(subscription, message_id="AAMk1", client_state=None) -> ChangeNotification:
    return ChangeNotification.from_dict({
        "subscriptionId": subscription.external_id,
        "resource": f"Users/u1/Messages/{message_id}",
        "changeType": "created",
        "clientState": client_state if client_state is not None else subscription.client_state,
        "tenantId": "tenant-1",
        "resourceData": {"id": message_id},
    })


def records(session_factory) -> list[NotificationRecord]:
    with session_factory() as session:
        return list(session.scalars(select(NotificationRecord).order_by(NotificationRecord.received_at)))


def ok_result(target="automation"):
    return ForwardResult(target, "http://automation.local", "POST", 200, 1.0)


@pytest.fixture
def mail_reader():
    reader = Mock()
    reader.get_message_summary = AsyncMock(return_value=summary())
    return reader


@pytest.fixture
def forwarder():
    mock = Mock()
    mock.forward = AsyncMock(return_value=ok_result())
    return mock


@pytest.fixture
def attachment_store():
    store = Mock()
    store.upload_attachment = AsyncMock(return_value=StoredAttachment(
        name="invoice.pdf",
        content_type="application/pdf",
        size=5,
        storage_key="attachments/ops@example.com/2025/01/x_invoice.pdf",
        url="https://s3.local/x_invoice.pdf",
    ))
    return store


@pytest.fixture
def dispatcher(subscription_repository, notification_repository, mail_reader, rule_engine,
               dedup, forwarder, attachment_store, clock):
    return NotificationDispatcher(
        subscriptions=subscription_repository,
        records=notification_repository,
        mail_reader=mail_reader,
        engine=rule_engine,
        dedup=dedup,
        forwarder=forwarder,
        attachment_store=attachment_store,
        clock=clock,
    )


@pytest_asyncio.fixture
async def subscription(manager):
    return await manager.create_subscription("ops@example.com")


class TestForwarding:

    @pytest.mark.asyncio
    async def test_matched_message_is_forwarded(self, dispatcher, subscription, rule_repository,
                                                forwarder, session_factory):
        rule_repository.create(AutomationRule(name="ups", sender_domains=["ups.com"]))

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FORWARDED
        forwarder.forward.assert_awaited_once()
        target, payload = forwarder.forward.await_args.args
        assert target == "automation"
        assert payload["mailbox"] == "ops@example.com"
        assert payload["messageId"] == "AAMk1"
        assert payload["sender"] == "billing@ups.com"
        assert payload["supplier"] == "UPS"
        assert payload["documentType"] == "INVOICE"
        assert payload["rule"]["name"] == "ups"
        assert payload["notification"]["tenantId"] == "tenant-1"

        [record] = records(session_factory)
        assert record.processed is True
        assert record.skipped is False
        assert record.has_errors is False
        assert record.attempts == 1
        assert record.mailbox == "ops@example.com"
        assert record.supplier_info["supplier"] == "UPS"

        with session_factory() as session:
            rule = session.scalars(select(MonitoringRule)).one()
        assert rule.total_matches == 1
        assert rule.successful_forwards == 1

    @pytest.mark.asyncio
    async def test_attachments_are_relocated(self, dispatcher, subscription, rule_repository,
                                             mail_reader, forwarder, attachment_store):
        rule_repository.create(AutomationRule(name="ups"))
        mail_reader.get_message_summary.return_value = summary(attachments=[
            MessageAttachment(name="invoice.pdf", content_type="application/pdf", size=5, content=b"%PDF-"),
        ])

        await dispatcher.process(notification_for(subscription))

        attachment_store.upload_attachment.assert_awaited_once()
        payload = forwarder.forward.await_args.args[1]
        assert payload["attachments"] == [{
            "name": "invoice.pdf",
            "contentType": "application/pdf",
            "size": 5,
            "url": "https://s3.local/x_invoice.pdf",
        }]

    @pytest.mark.asyncio
    async def test_custom_rule_uses_its_endpoint(self, dispatcher, subscription, rule_repository, forwarder):
        rule_repository.create(CustomRule(
            name="erp", target_service="custom",
            custom_service_url="https://erp.example.com/inbound", custom_service_method="put",
        ))

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FORWARDED
        kwargs = forwarder.forward.await_args.kwargs
        assert forwarder.forward.await_args.args[0] == "custom"
        assert kwargs["url"] == "https://erp.example.com/inbound"
        assert kwargs["method"] == "PUT"

    @pytest.mark.asyncio
    async def test_archive_rule_records_without_forwarding(self, dispatcher, subscription, rule_repository,
                                                           forwarder, session_factory):
        rule_repository.create(ArchiveRule(name="archive", target_service="archive"))

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.ARCHIVED
        forwarder.forward.assert_not_awaited()
        [record] = records(session_factory)
        assert record.processed is True
        assert record.target_service == "archive"


class TestSkips:

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, dispatcher, subscription, mail_reader, session_factory):
        notification = notification_for(subscription)
        notification.subscription_id = "someone-else"

        result = await dispatcher.process(notification)

        assert result.status == ProcessingStatus.SKIPPED
        assert result.reason == SUBSCRIPTION_NOT_FOUND
        mail_reader.get_message_summary.assert_not_awaited()
        [record] = records(session_factory)
        assert record.processed is True
        assert record.skipped is True

    @pytest.mark.asyncio
    async def test_deleted_subscription(self, dispatcher, subscription, manager):
        await manager.delete_subscription(subscription.id)

        result = await dispatcher.process(notification_for(subscription))

        assert result.reason == SUBSCRIPTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_client_state_mismatch(self, dispatcher, subscription, mail_reader):
        result = await dispatcher.process(notification_for(subscription, client_state="forged"))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.reason == CLIENT_STATE_MISMATCH
        mail_reader.get_message_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_message(self, dispatcher, subscription, mail_reader, forwarder):
        mail_reader.get_message_summary.side_effect = GraphNotFoundError("gone", status_code=404)

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.reason == UNREADABLE
        forwarder.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_active_rules(self, dispatcher, subscription):
        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.reason == NO_ACTIVE_RULES

    @pytest.mark.asyncio
    async def test_no_matching_rule(self, dispatcher, subscription, rule_repository):
        rule_repository.create(AutomationRule(name="dhl", sender_domains=["dhl.com"]))

        result = await dispatcher.process(notification_for(subscription))

        assert result.reason == NO_MATCHING_RULE

    @pytest.mark.asyncio
    async def test_unsupported_supplier(self, dispatcher, subscription, rule_repository, mail_reader, forwarder):
        rule_repository.create(AutomationRule(name="all"))
        mail_reader.get_message_summary.return_value = summary(sender="ap@acme.com", subject="Invoice 7")

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.reason == UNSUPPORTED_SUPPLIER
        forwarder.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rule_supplier_makes_message_supported(self, dispatcher, subscription, rule_repository,
                                                         mail_reader):
        rule_repository.create(AutomationRule(name="acme via dhl", supplier=Supplier.DHL))
        mail_reader.get_message_summary.return_value = summary(sender="ap@acme.com", subject="Invoice 7")

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FORWARDED


class TestDuplicates:

    @pytest.mark.asyncio
    async def test_second_delivery_is_duplicate(self, dispatcher, subscription, rule_repository,
                                                forwarder, session_factory):
        rule_repository.create(AutomationRule(name="ups"))
        notification = notification_for(subscription)

        first = await dispatcher.process(notification)
        second = await dispatcher.process(notification)

        assert first.status == ProcessingStatus.FORWARDED
        assert second.status == ProcessingStatus.DUPLICATE
        assert second.reason == DUPLICATE
        assert forwarder.forward.await_count == 1
        assert sorted(r.skipped for r in records(session_factory)) == [False, True]

    @pytest.mark.asyncio
    async def test_same_message_in_other_mailbox_is_not_duplicate(self, dispatcher, manager, rule_repository,
                                                                  forwarder):
        rule_repository.create(AutomationRule(name="ups"))
        first = await manager.create_subscription("ops@example.com")
        second = await manager.create_subscription("billing@example.com")

        await dispatcher.process(notification_for(first))
        result = await dispatcher.process(notification_for(second))

        assert result.status == ProcessingStatus.FORWARDED
        assert forwarder.forward.await_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_window_expires(self, dispatcher, subscription, rule_repository, forwarder, clock):
        rule_repository.create(AutomationRule(name="ups"))
        notification = notification_for(subscription)

        await dispatcher.process(notification)
        clock.advance(minutes=11)
        result = await dispatcher.process(notification)

        assert result.status == ProcessingStatus.FORWARDED


class TestFailures:

    @pytest.mark.asyncio
    async def test_forward_failure_leaves_record_for_reprocessing(self, dispatcher, subscription, rule_repository,
                                                                  forwarder, dedup, session_factory):
        rule_repository.create(AutomationRule(name="ups"))
        forwarder.forward.side_effect = [
            ForwardError("HTTP 500", "http://automation.local", status_code=500),
            ok_result(),
        ]

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FAILED
        assert "HTTP 500" in result.error
        [record] = records(session_factory)
        assert record.processed is False
        assert record.has_errors is True
        assert len(dedup) == 0

        summary_ = await dispatcher.reprocess_unprocessed()

        assert summary_.total == 1
        assert summary_.count(ProcessingStatus.FORWARDED) == 1
        [record] = records(session_factory)
        assert record.processed is True
        assert record.has_errors is False
        assert record.error_message is None
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_forward_releases_dedup_claim(self, dispatcher, subscription, rule_repository,
                                                          forwarder, dedup):
        rule_repository.create(AutomationRule(name="ups"))
        forwarder.forward.side_effect = [asyncio.CancelledError(), ok_result()]
        notification = notification_for(subscription)

        with pytest.raises(asyncio.CancelledError):
            await dispatcher.process(notification)

        assert not dedup.is_duplicate(dedup_key("ops@example.com", "AAMk1"))
        result = await dispatcher.process(notification)
        assert result.status == ProcessingStatus.FORWARDED

    @pytest.mark.asyncio
    async def test_attachment_upload_failure_fails_item(self, dispatcher, subscription, rule_repository,
                                                        mail_reader, attachment_store, forwarder):
        rule_repository.create(AutomationRule(name="ups"))
        mail_reader.get_message_summary.return_value = summary(attachments=[
            MessageAttachment(name="a.pdf", content_type="application/pdf", size=1, content=b"x"),
        ])
        attachment_store.upload_attachment.side_effect = RuntimeError("bucket missing")

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FAILED
        forwarder.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fail_closed_engine_error(self, subscription_repository, notification_repository, mail_reader,
                                            dedup, forwarder, clock, subscription, session_factory):
        broken = Mock()
        broken.list_active.side_effect = RuntimeError("database unavailable")
        dispatcher = NotificationDispatcher(
            subscriptions=subscription_repository,
            records=notification_repository,
            mail_reader=mail_reader,
            engine=RuleMatchingEngine(broken, fail_open=False, clock=clock),
            dedup=dedup,
            forwarder=forwarder,
            clock=clock,
        )

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FAILED
        [record] = records(session_factory)
        assert record.processed is False
        assert record.has_errors is True

    @pytest.mark.asyncio
    async def test_fail_open_engine_error_forwards_to_automation(self, subscription_repository,
                                                                 notification_repository, mail_reader,
                                                                 dedup, forwarder, clock, subscription):
        broken = Mock()
        broken.list_active.side_effect = RuntimeError("database unavailable")
        dispatcher = NotificationDispatcher(
            subscriptions=subscription_repository,
            records=notification_repository,
            mail_reader=mail_reader,
            engine=RuleMatchingEngine(broken, fail_open=True, clock=clock),
            dedup=dedup,
            forwarder=forwarder,
            clock=clock,
        )

        result = await dispatcher.process(notification_for(subscription))

        assert result.status == ProcessingStatus.FORWARDED
        payload = forwarder.forward.await_args.args[1]
        assert payload["rule"]["failOpen"] is True
        assert payload["supplier"] == "UPS"


class TestBatch:

    @pytest.mark.asyncio
    async def test_items_are_isolated(self, dispatcher, subscription, rule_repository, forwarder):
        rule_repository.create(AutomationRule(name="ups"))
        unknown = notification_for(subscription, message_id="m1")
        unknown.subscription_id = "someone-else"
        failing = notification_for(subscription, message_id="m2")
        good = notification_for(subscription, message_id="m3")
        forwarder.forward.side_effect = [ForwardError("down", "http://automation.local"), ok_result()]

        results = await dispatcher.process_batch([unknown, failing, good])

        assert [r.status for r in results] == [
            ProcessingStatus.SKIPPED,
            ProcessingStatus.FAILED,
            ProcessingStatus.FORWARDED,
        ]
        assert [r.message_id for r in results] == ["m1", "m2", "m3"]


class TestPurge:

    @pytest.mark.asyncio
    async def test_purges_only_old_processed_records(self, dispatcher, subscription, rule_repository,
                                                     forwarder, clock, session_factory):
        rule_repository.create(AutomationRule(name="ups"))
        forwarder.forward.side_effect = [ok_result(), ForwardError("down", "http://automation.local")]
        await dispatcher.process(notification_for(subscription, message_id="m1"))
        await dispatcher.process(notification_for(subscription, message_id="m2"))

        clock.advance(days=31)
        deleted = dispatcher.purge_processed(days_to_keep=30)

        assert deleted == 1
        [remaining] = records(session_factory)
        assert remaining.message_id == "m2"
        assert remaining.processed is False

    def test_negative_retention_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.purge_processed(days_to_keep=-1)
