"""Unit tests for validated rule variants."""

from types import SimpleNamespace
from uuid import uuid4

import pytest
from pydantic import ValidationError

from mailwatch.models.monitoring_rule import HttpMethod, Supplier
from mailwatch.rules.schemas import ArchiveRule, AutomationRule, CustomRule, parse_rule


class TestRuleVariants:

    def test_custom_rule_requires_url(self):
        with pytest.raises(ValidationError):
            parse_rule({"name": "custom", "target_service": "custom"})

    def test_custom_rule_rejects_blank_url(self):
        with pytest.raises(ValidationError):
            parse_rule({"name": "custom", "target_service": "custom", "custom_service_url": ""})

    def test_custom_rule_defaults_to_post(self):
        rule = parse_rule({
            "name": "custom",
            "target_service": "custom",
            "custom_service_url": "https://erp.example.com/inbound",
        })
        assert isinstance(rule, CustomRule)
        assert rule.custom_service_method == HttpMethod.POST

    def test_custom_rule_method_is_normalized(self):
        rule = parse_rule({
            "name": "custom",
            "target_service": "custom",
            "custom_service_url": "https://erp.example.com/inbound",
            "custom_service_method": "put",
        })
        assert rule.custom_service_method == HttpMethod.PUT

    def test_unknown_target_rejected(self):
        with pytest.raises(ValidationError):
            parse_rule({"name": "x", "target_service": "email"})

    def test_supplier_defaults_to_other(self):
        rule = parse_rule({"name": "x", "target_service": "archive", "supplier": None})
        assert isinstance(rule, ArchiveRule)
        assert rule.supplier == Supplier.OTHER

    def test_filter_lists_are_normalized(self):
        rule = AutomationRule(
            name="x",
            sender_domains=[" @UPS.com ", ""],
            sender_emails=["Billing@UPS.com"],
            subject_keywords=["invoice", "  "],
        )
        assert rule.sender_domains == ["ups.com"]
        assert rule.sender_emails == ["billing@ups.com"]
        assert rule.subject_keywords == ["invoice"]

    def test_parses_orm_like_objects(self):
        row = SimpleNamespace(
            id=uuid4(), name="from row", description=None, supplier="DHL", document_type=None,
            sender_domains=None, sender_emails=[], subject_keywords=[], subject_patterns=[],
            priority="HIGH", active=True, total_matches=3,
            successful_forwards=1, last_triggered_at=None, created_by="SYSTEM", created_at=None,
            target_service="automation", custom_service_url=None, custom_service_method="POST",
        )
        rule = parse_rule(row)
        assert isinstance(rule, AutomationRule)
        assert rule.supplier == Supplier.DHL
        assert rule.sender_domains == []
