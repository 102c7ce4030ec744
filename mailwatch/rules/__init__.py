"""Monitoring rules: validated variants, matcher and engine"""

from .engine import NO_ACTIVE_RULES, NO_MATCHING_RULE, RuleDecision, RuleMatchingEngine
from .matcher import (
    check_match,
    identify_document_type,
    identify_supplier,
    select_top_rule,
    sender_domain,
    sort_by_priority,
)
from .repository import RuleRepository
from .schemas import ArchiveRule, AutomationRule, CustomRule, Rule, parse_rule

__all__ = [
    "NO_ACTIVE_RULES",
    "NO_MATCHING_RULE",
    "RuleDecision",
    "RuleMatchingEngine",
    "check_match",
    "identify_document_type",
    "identify_supplier",
    "select_top_rule",
    "sender_domain",
    "sort_by_priority",
    "RuleRepository",
    "ArchiveRule",
    "AutomationRule",
    "CustomRule",
    "Rule",
    "parse_rule",
]
