"""Rule Matching Engine.

Loads active rules, decides whether a message should be processed and how
it is routed. When the engine itself fails (store unavailable, unexpected
error) the configured policy applies: fail-open processes the message via
the automation target using heuristic classification; fail-closed reports
the error so the notification stays eligible for reprocessing.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from pydantic import ValidationError

from ..clock import SystemClock
from ..models.monitoring_rule import DocumentType, Supplier, TargetService
from .matcher import check_match, identify_document_type, identify_supplier, sort_by_priority
from .repository import RuleRepository
from .schemas import Rule, parse_rule

logger = logging.getLogger(__name__)

NO_ACTIVE_RULES = "no active monitoring rules"
NO_MATCHING_RULE = "no matching rule"


@dataclass
class RuleDecision:
    """Outcome of evaluating one message against the active rules."""
    should_process: bool
    reason: str
    matching_rules: list[Rule] = field(default_factory=list)
    top_rule: Optional[Rule] = None
    supplier: Supplier = Supplier.OTHER
    identified_supplier: Supplier = Supplier.OTHER
    document_type: DocumentType = DocumentType.OTHER
    target_service: Optional[str] = None
    fail_open: bool = False
    error: Optional[str] = None

    @property
    def rule_ids(self) -> list[UUID]:
        return [rule.id for rule in self.matching_rules if rule.id is not None]


class RuleMatchingEngine:

    def __init__(self, repository: RuleRepository, fail_open: bool = True, clock=None):
        self.repository = repository
        self.fail_open = fail_open
        self.clock = clock or SystemClock()

    def load_rules(self) -> list[Rule]:
        """Active rules as validated variants. Invalid rows are logged and ignored."""
        rules = []
        for row in self.repository.list_active():
            try:
                rules.append(parse_rule(row))
            except ValidationError as e:
                logger.warning(
                    f"Ignoring invalid monitoring rule {row.id}: {e.error_count()} error(s)",
                    extra={"rule_id": str(row.id)},
                )
        return rules

    def evaluate(self, sender: str, subject: str, body_preview: str = "") -> RuleDecision:
        try:
            return self._evaluate(sender, subject, body_preview)
        except Exception as e:
            logger.error(f"Rule engine failed: {e}", exc_info=True)
            if not self.fail_open:
                return RuleDecision(
                    should_process=False,
                    reason="rule engine error",
                    error=str(e),
                )
            identified = identify_supplier(sender, subject, body_preview)
            return RuleDecision(
                should_process=True,
                reason="rule engine unavailable, processed with heuristics",
                supplier=identified,
                identified_supplier=identified,
                document_type=identify_document_type(subject, body_preview),
                target_service=TargetService.AUTOMATION.value,
                fail_open=True,
            )

    def _evaluate(self, sender: str, subject: str, body_preview: str) -> RuleDecision:
        rules = self.load_rules()
        if not rules:
            return RuleDecision(should_process=False, reason=NO_ACTIVE_RULES)

        matching = sort_by_priority(r for r in rules if check_match(r, sender, subject))
        if not matching:
            return RuleDecision(should_process=False, reason=NO_MATCHING_RULE)

        top = matching[0]
        decision_ids = [rule.id for rule in matching if rule.id is not None]
        try:
            self.repository.increment_matches(decision_ids, self.clock.now())
        except Exception as e:
            logger.warning(f"Could not update rule match counters: {e}")

        identified = identify_supplier(sender, subject, body_preview)
        # OTHER on a rule means "no supplier metadata"
        supplier = top.supplier if top.supplier != Supplier.OTHER else identified
        document_type = top.document_type or identify_document_type(subject, body_preview)

        logger.info(
            f"Matched {len(matching)} rule(s), top rule {top.name!r}",
            extra={"rule_id": str(top.id) if top.id else None, "supplier": supplier.value},
        )
        return RuleDecision(
            should_process=True,
            reason=f"matched rule {top.name}",
            matching_rules=matching,
            top_rule=top,
            supplier=supplier,
            identified_supplier=identified,
            document_type=document_type,
            target_service=top.target_service,
        )

    def record_forward(self, decision: RuleDecision) -> None:
        """Bump successful_forwards for every rule that matched."""
        try:
            self.repository.increment_forwards(decision.rule_ids)
        except Exception as e:
            logger.warning(f"Could not update rule forward counters: {e}")
