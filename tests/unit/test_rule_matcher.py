"""Unit tests for rule matching and classification heuristics."""

from datetime import datetime, timezone

import pytest

from mailwatch.models.monitoring_rule import DocumentType, Priority, Supplier
from mailwatch.rules.matcher import (
    check_match,
    identify_document_type,
    identify_supplier,
    select_top_rule,
    sender_domain,
    sort_by_priority,
)
from mailwatch.rules.schemas import AutomationRule


def rule(**overrides) -> AutomationRule:
    values = {"name": "test rule"}
    values.update(overrides)
    return AutomationRule(**values)


class TestCheckMatch:

    def test_rule_without_filters_matches_everything(self):
        assert check_match(rule(), "anyone@anywhere.org", "Anything at all")

    def test_inactive_rule_never_matches(self):
        assert not check_match(rule(active=False), "anyone@anywhere.org", "Anything")

    def test_sender_domain_is_case_insensitive(self):
        r = rule(sender_domains=["UPS.com"])
        assert check_match(r, "Billing@Ups.COM", "Invoice")
        assert not check_match(r, "billing@notups.com", "Invoice")

    def test_sender_domain_accepts_leading_at(self):
        assert check_match(rule(sender_domains=["@dhl.com"]), "noreply@dhl.com", "x")

    def test_sender_email_is_exact(self):
        r = rule(sender_emails=["noreply@fedex.com"])
        assert check_match(r, "NoReply@FedEx.com", "x")
        assert not check_match(r, "other@fedex.com", "x")

    def test_subject_keywords_any_substring(self):
        r = rule(subject_keywords=["invoice", "statement"])
        assert check_match(r, "a@b.com", "Your monthly STATEMENT is ready")
        assert not check_match(r, "a@b.com", "Delivery update")

    def test_subject_patterns_regex_search(self):
        r = rule(subject_patterns=[r"tracking\s+#?\d{6,}"])
        assert check_match(r, "a@b.com", "Re: TRACKING #1234567 delivered")
        assert not check_match(r, "a@b.com", "tracking pending")

    def test_invalid_pattern_counts_as_non_matching(self):
        r = rule(subject_patterns=["([unclosed"])
        assert check_match(r, "a@b.com", "([unclosed") is False

    def test_invalid_pattern_does_not_block_valid_one(self):
        r = rule(subject_patterns=["([unclosed", "invoice"])
        assert check_match(r, "a@b.com", "Invoice 42")

    def test_categories_are_conjunctive(self):
        r = rule(sender_domains=["ups.com"], subject_keywords=["invoice"])
        assert check_match(r, "billing@ups.com", "Invoice 42")
        assert not check_match(r, "billing@ups.com", "Delivery notice")
        assert not check_match(r, "billing@dhl.com", "Invoice 42")

    def test_missing_sender_and_subject(self):
        assert not check_match(rule(sender_domains=["ups.com"]), "", "")
        assert check_match(rule(), None, None)


class TestPriority:

    def test_highest_priority_wins(self):
        low = rule(name="low", priority=Priority.LOW)
        critical = rule(name="critical", priority=Priority.CRITICAL)
        normal = rule(name="normal", priority=Priority.NORMAL)

        assert select_top_rule([low, critical, normal]).name == "critical"

    def test_ties_broken_by_most_recent(self):
        older = rule(name="older", priority=Priority.HIGH, created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = rule(name="newer", priority=Priority.HIGH, created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))

        assert [r.name for r in sort_by_priority([older, newer])] == ["newer", "older"]

    def test_empty(self):
        assert select_top_rule([]) is None


class TestIdentifySupplier:

    @pytest.mark.parametrize("sender,expected", [
        ("billing@ups.com", Supplier.UPS),
        ("noreply@fedex.com", Supplier.FEDEX),
        ("alerts@dhl.de", Supplier.DHL),
        ("someone@example.com", Supplier.OTHER),
    ])
    def test_from_sender_domain(self, sender, expected):
        assert identify_supplier(sender, "", "") == expected

    def test_from_subject(self):
        assert identify_supplier("ap@example.com", "Your FedEx invoice", "") == Supplier.FEDEX

    def test_from_body(self):
        assert identify_supplier("ap@example.com", "Invoice", "Shipped with DHL Express") == Supplier.DHL

    def test_whole_words_only(self):
        assert identify_supplier("ap@groups.example.com", "Cheers from the startups team", "") == Supplier.OTHER

    def test_domain_takes_precedence_over_text(self):
        assert identify_supplier("billing@ups.com", "FedEx comparison", "") == Supplier.UPS


class TestIdentifyDocumentType:

    @pytest.mark.parametrize("subject,expected", [
        ("Invoice 4711 for account 12", DocumentType.INVOICE),
        ("Customs duties due for shipment", DocumentType.CUSTOMS),
        ("Proof of Delivery for 1Z999", DocumentType.PROOF_OF_DELIVERY),
        ("Tracking update: in transit", DocumentType.TRACKING),
        ("Hello there", DocumentType.OTHER),
    ])
    def test_keywords(self, subject, expected):
        assert identify_document_type(subject, "") == expected

    def test_falls_back_to_body(self):
        assert identify_document_type("Notice", "Please find the invoice attached") == DocumentType.INVOICE


def test_sender_domain():
    assert sender_domain("Ops@Example.COM") == "example.com"
    assert sender_domain("not-an-address") == ""
