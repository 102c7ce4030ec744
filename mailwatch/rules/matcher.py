"""Rule matching and classification heuristics.

Pure functions; no I/O. All comparisons are case-insensitive.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..models.monitoring_rule import DocumentType, Supplier
from .schemas import Rule

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Carrier tokens, checked in this order
SUPPLIER_PATTERNS = [
    (Supplier.UPS, re.compile(r"\bups\b", re.IGNORECASE)),
    (Supplier.FEDEX, re.compile(r"\bfed\s?ex\b", re.IGNORECASE)),
    (Supplier.DHL, re.compile(r"\bdhl\b", re.IGNORECASE)),
]

DOCUMENT_TYPE_PATTERNS = [
    (DocumentType.INVOICE, re.compile(r"\b(invoice|invoices|billing)\b", re.IGNORECASE)),
    (DocumentType.CUSTOMS, re.compile(r"\b(customs|duty|duties|brokerage|import\s+clearance)\b", re.IGNORECASE)),
    (DocumentType.PROOF_OF_DELIVERY, re.compile(r"\b(proof\s+of\s+delivery|pod|delivered|signed\s+for)\b", re.IGNORECASE)),
    (DocumentType.TRACKING, re.compile(r"\b(tracking|in\s+transit|out\s+for\s+delivery|shipment\s+status)\b", re.IGNORECASE)),
]


def sender_domain(sender: str) -> str:
    """Lower-cased part after the last '@' (empty when there is none)."""
    sender = (sender or "").strip().lower()
    if "@" not in sender:
        return ""
    return sender.rsplit("@", 1)[1]


def _pattern_matches(pattern: str, subject: str) -> bool:
    try:
        return re.search(pattern, subject, re.IGNORECASE) is not None
    except re.error as e:
        logger.warning(f"Invalid subject pattern {pattern!r}: {e}")
        return False


def check_match(rule: Rule, sender: str, subject: str) -> bool:
    """Return True when every non-empty filter category of rule matches.

    A rule with all categories empty matches everything. Inactive rules
    never match. Invalid regex patterns count as non-matching.
    """
    if not rule.active:
        return False

    sender_lower = (sender or "").strip().lower()
    subject = subject or ""
    subject_lower = subject.lower()

    if rule.sender_domains and sender_domain(sender_lower) not in rule.sender_domains:
        return False

    if rule.sender_emails and sender_lower not in rule.sender_emails:
        return False

    if rule.subject_keywords and not any(
        keyword.lower() in subject_lower for keyword in rule.subject_keywords
    ):
        return False

    if rule.subject_patterns and not any(
        _pattern_matches(pattern, subject) for pattern in rule.subject_patterns
    ):
        return False

    return True


def sort_by_priority(rules: Iterable[Rule]) -> list[Rule]:
    """Highest priority first; ties broken by most recent created_at."""
    return sorted(
        rules,
        key=lambda r: (r.priority.rank, r.created_at or _EPOCH),
        reverse=True,
    )


def select_top_rule(rules: Iterable[Rule]) -> Optional[Rule]:
    ordered = sort_by_priority(rules)
    return ordered[0] if ordered else None


def identify_supplier(sender: str, subject: str, body: str = "") -> Supplier:
    """Guess the carrier from the sender domain, then subject, then body."""
    domain_text = sender_domain(sender).replace(".", " ").replace("-", " ")
    for text in (domain_text, subject or "", body or ""):
        for supplier, pattern in SUPPLIER_PATTERNS:
            if pattern.search(text):
                return supplier
    return Supplier.OTHER


def identify_document_type(subject: str, body: str = "") -> DocumentType:
    for text in (subject or "", body or ""):
        for document_type, pattern in DOCUMENT_TYPE_PATTERNS:
            if pattern.search(text):
                return document_type
    return DocumentType.OTHER
