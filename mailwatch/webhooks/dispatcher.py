"""Notification Dispatcher - runs each change notification through the pipeline.

Per notification, in order:

1. Resolve the local subscription and check its client state
2. Read the message summary
3. Evaluate monitoring rules
4. Resolve supplier / document type, reject unsupported suppliers
5. Branch on target: archive records only, automation/custom forward
6. Dedup on mailbox + message id before any forward
7. Relocate attachments and forward; success marks the record processed
8. Failure marks the record with has_errors and leaves it for reprocessing

Each notification is isolated: any exception becomes a FAILED result for
that item only. Skips are results, not exceptions.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from ..clock import SystemClock
from ..graph.mail_reader import MailReaderPort, MessageSummary
from ..models.monitoring_rule import TargetService
from ..models.notification_record import NotificationRecord
from ..models.subscription import Subscription
from ..observability.metrics import notifications_processed_total, notifications_received_total
from ..rules.engine import RuleDecision, RuleMatchingEngine
from ..storage.attachments import AttachmentStore, StoredAttachment
from ..subscriptions.repository import SubscriptionRepository
from .dedup import DedupCache, dedup_key
from .forwarder import Forwarder
from .repository import NotificationRepository
from .validator import ChangeNotification

logger = logging.getLogger(__name__)

SUBSCRIPTION_NOT_FOUND = "subscription not found"
CLIENT_STATE_MISMATCH = "client state mismatch"
UNREADABLE = "unreadable"
UNSUPPORTED_SUPPLIER = "unsupported supplier"
DUPLICATE = "duplicate, already handled"


class ProcessingStatus(str, Enum):
    FORWARDED = "FORWARDED"
    ARCHIVED = "ARCHIVED"
    SKIPPED = "SKIPPED"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"


@dataclass
class ProcessingResult:
    status: ProcessingStatus
    subscription_id: str
    message_id: Optional[str] = None
    record_id: Optional[UUID] = None
    reason: Optional[str] = None
    target_service: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ReprocessSummary:
    total: int
    results: list[ProcessingResult]

    def count(self, status: ProcessingStatus) -> int:
        return sum(1 for result in self.results if result.status == status)


def build_payload(
    notification: ChangeNotification,
    subscription: Subscription,
    summary: MessageSummary,
    decision: RuleDecision,
    attachments: list[dict[str, Any]],
    record: NotificationRecord,
) -> dict[str, Any]:
    """JSON body sent to forwarding sinks."""
    top = decision.top_rule
    return {
        "mailbox": subscription.watched_mailbox,
        "messageId": notification.message_id or summary.message_id,
        "sender": summary.sender,
        "subject": summary.subject,
        "bodyPreview": summary.body_preview,
        "receivedDateTime": summary.received_at,
        "supplier": decision.supplier.value,
        "identifiedSupplier": decision.identified_supplier.value,
        "documentType": decision.document_type.value,
        "attachments": attachments,
        "notification": {
            "recordId": str(record.id),
            "subscriptionId": notification.subscription_id,
            "changeType": notification.change_type,
            "resource": notification.resource,
            "tenantId": notification.tenant_id,
            "receivedAt": record.received_at.isoformat() if record.received_at else None,
        },
        "rule": {
            "id": str(top.id) if top and top.id else None,
            "name": top.name if top else None,
            "priority": top.priority.value if top else None,
            "targetService": decision.target_service,
            "matchingRuleIds": [str(rule_id) for rule_id in decision.rule_ids],
            "failOpen": decision.fail_open,
        },
    }


class NotificationDispatcher:

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        records: NotificationRepository,
        mail_reader: MailReaderPort,
        engine: RuleMatchingEngine,
        dedup: DedupCache,
        forwarder: Forwarder,
        attachment_store: Optional[AttachmentStore] = None,
        supported_suppliers: frozenset[str] = frozenset({"UPS", "FEDEX", "DHL"}),
        clock=None,
    ):
        self.subscriptions = subscriptions
        self.records = records
        self.mail_reader = mail_reader
        self.engine = engine
        self.dedup = dedup
        self.forwarder = forwarder
        self.attachment_store = attachment_store
        self.supported_suppliers = supported_suppliers
        self.clock = clock or SystemClock()

    async def process_batch(self, notifications: list[ChangeNotification]) -> list[ProcessingResult]:
        """Process notifications in array order, each independently."""
        notifications_received_total.inc(len(notifications))
        results = []
        for notification in notifications:
            results.append(await self.process(notification))
        return results

    async def process(
        self,
        notification: ChangeNotification,
        record: Optional[NotificationRecord] = None,
    ) -> ProcessingResult:
        try:
            if record is None:
                record = self.records.create(notification, received_at=self.clock.now())
        except Exception as e:
            logger.error(
                f"Could not record notification: {e}",
                extra={"subscription_id": notification.subscription_id},
            )
            notifications_processed_total.labels(outcome="failed").inc()
            return ProcessingResult(
                status=ProcessingStatus.FAILED,
                subscription_id=notification.subscription_id,
                message_id=notification.message_id,
                error=str(e),
            )

        record.attempts = (record.attempts or 0) + 1
        record.has_errors = False
        record.error_message = None

        try:
            result = await self._process(notification, record)
        except Exception as e:
            logger.exception(
                "Unexpected error while processing notification",
                extra={"subscription_id": notification.subscription_id, "message_id": notification.message_id},
            )
            result = self._fail(record, notification, f"unexpected error: {e}")

        notifications_processed_total.labels(outcome=result.status.value.lower()).inc()
        return result

    async def _process(self, notification: ChangeNotification, record: NotificationRecord) -> ProcessingResult:
        subscription = self.subscriptions.get_by_external_id(notification.subscription_id)
        if subscription is None or not subscription.active:
            return self._skip(record, notification, SUBSCRIPTION_NOT_FOUND)

        mailbox = subscription.watched_mailbox
        record.mailbox = mailbox
        if subscription.client_state and not secrets.compare_digest(
            notification.client_state.encode(), subscription.client_state.encode()
        ):
            logger.warning(
                "Notification client state does not match subscription",
                extra={"subscription_id": notification.subscription_id, "mailbox": mailbox},
            )
            return self._skip(record, notification, CLIENT_STATE_MISMATCH)

        try:
            summary = await self.mail_reader.get_message_summary(mailbox, notification.resource)
        except Exception as e:
            logger.warning(
                f"Could not read message: {e}",
                extra={"mailbox": mailbox, "message_id": notification.message_id},
            )
            return self._skip(record, notification, UNREADABLE)

        message_id = notification.message_id or summary.message_id
        record.message_id = message_id

        decision = self.engine.evaluate(summary.sender, summary.subject, summary.body_preview)
        self._apply_decision(record, decision)
        if not decision.should_process:
            if decision.error:
                return self._fail(record, notification, decision.error)
            return self._skip(record, notification, decision.reason)

        if decision.supplier.value not in self.supported_suppliers:
            return self._skip(record, notification, UNSUPPORTED_SUPPLIER)

        if decision.target_service == TargetService.ARCHIVE.value:
            return self._finish(record, notification, ProcessingStatus.ARCHIVED, reason=decision.reason)

        key = dedup_key(mailbox, message_id)
        if not self.dedup.claim(key):
            return self._finish(record, notification, ProcessingStatus.DUPLICATE, reason=DUPLICATE)

        forwarded = False
        try:
            attachments = await self._relocate_attachments(summary, prefix=mailbox)
            payload = build_payload(notification, subscription, summary, decision, attachments, record)
            top = decision.top_rule
            await self.forwarder.forward(
                decision.target_service,
                payload,
                url=getattr(top, "custom_service_url", None),
                method=getattr(top, "custom_service_method", "POST"),
            )
            forwarded = True
        except Exception as e:
            return self._fail(record, notification, f"forward failed: {e}")
        finally:
            # Cancellation must not leave the key claimed forever
            if not forwarded:
                self.dedup.release(key)

        self.dedup.complete(key)
        self.engine.record_forward(decision)
        return self._finish(record, notification, ProcessingStatus.FORWARDED, reason=decision.reason)

    async def _relocate_attachments(self, summary: MessageSummary, prefix: str) -> list[dict[str, Any]]:
        relocated = []
        for attachment in summary.attachments:
            entry = {
                "name": attachment.name,
                "contentType": attachment.content_type,
                "size": attachment.size,
                "url": None,
            }
            if self.attachment_store is not None:
                stored: StoredAttachment = await self.attachment_store.upload_attachment(
                    attachment.content, attachment.name, attachment.content_type, prefix=prefix,
                )
                entry["url"] = stored.url
            relocated.append(entry)
        return relocated

    def _apply_decision(self, record: NotificationRecord, decision: RuleDecision) -> None:
        record.target_service = decision.target_service
        record.matching_rule_refs = [str(rule_id) for rule_id in decision.rule_ids]
        if decision.should_process:
            record.supplier_info = {
                "supplier": decision.supplier.value,
                "identified_supplier": decision.identified_supplier.value,
                "document_type": decision.document_type.value,
                "fail_open": decision.fail_open,
            }

    def _skip(self, record, notification, reason: str) -> ProcessingResult:
        logger.info(
            f"Notification skipped: {reason}",
            extra={
                "subscription_id": notification.subscription_id,
                "message_id": record.message_id,
                "outcome": "skipped",
            },
        )
        return self._finish(record, notification, ProcessingStatus.SKIPPED, reason=reason)

    def _finish(self, record, notification, status: ProcessingStatus, reason: Optional[str] = None) -> ProcessingResult:
        record.processed = True
        record.skipped = status in (ProcessingStatus.SKIPPED, ProcessingStatus.DUPLICATE)
        record.reason = reason
        record.has_errors = False
        record.error_message = None
        record.processed_at = self.clock.now()
        self.records.save(record)

        if status in (ProcessingStatus.FORWARDED, ProcessingStatus.ARCHIVED):
            logger.info(
                f"Notification {status.value.lower()}",
                extra={
                    "subscription_id": notification.subscription_id,
                    "message_id": record.message_id,
                    "target_service": record.target_service,
                    "outcome": status.value.lower(),
                },
            )
        return ProcessingResult(
            status=status,
            subscription_id=notification.subscription_id,
            message_id=record.message_id,
            record_id=record.id,
            reason=reason,
            target_service=record.target_service,
        )

    def _fail(self, record, notification, error: str) -> ProcessingResult:
        record.processed = False
        record.skipped = False
        record.has_errors = True
        record.error_message = error
        try:
            self.records.save(record)
        except Exception as e:
            logger.error(f"Could not store failure for record {record.id}: {e}")

        logger.error(
            f"Notification failed: {error}",
            extra={
                "subscription_id": notification.subscription_id,
                "message_id": record.message_id,
                "outcome": "failed",
            },
        )
        return ProcessingResult(
            status=ProcessingStatus.FAILED,
            subscription_id=notification.subscription_id,
            message_id=record.message_id,
            record_id=record.id,
            target_service=record.target_service,
            error=error,
        )

    async def reprocess_unprocessed(self, limit: int = 100) -> ReprocessSummary:
        """Resubmit records still lacking a terminal outcome, oldest first."""
        records = self.records.list_unprocessed(limit)
        results = []
        for record in records:
            notification = self._notification_from_record(record)
            results.append(await self.process(notification, record=record))

        summary = ReprocessSummary(total=len(records), results=results)
        logger.info(
            f"Reprocessed {summary.total} notification(s): "
            f"{summary.count(ProcessingStatus.FORWARDED)} forwarded, "
            f"{summary.count(ProcessingStatus.FAILED)} failed"
        )
        return summary

    def purge_processed(self, days_to_keep: int = 30) -> int:
        """Delete processed records older than days_to_keep. Returns the count."""
        if days_to_keep < 0:
            raise ValueError("days_to_keep must not be negative")
        cutoff = self.clock.now() - timedelta(days=days_to_keep)
        deleted = self.records.purge_processed(cutoff)
        logger.info(f"Purged {deleted} processed notification record(s) older than {days_to_keep} days")
        return deleted

    @staticmethod
    def _notification_from_record(record: NotificationRecord) -> ChangeNotification:
        raw = record.payload_json if isinstance(record.payload_json, dict) else {}
        if raw:
            try:
                return ChangeNotification.from_dict(raw)
            except KeyError:
                pass
        return ChangeNotification(
            subscription_id=record.subscription_id,
            resource=record.resource,
            change_type=record.change_type,
            client_state=record.client_state or "",
            resource_data={"id": record.message_id} if record.message_id else {},
            raw=raw,
        )
