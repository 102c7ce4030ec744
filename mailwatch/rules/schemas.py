"""Validated rule variants.

A monitoring rule is one of three shapes, discriminated by target_service.
Required fields for each shape are enforced when the rule is constructed,
so the engine never sees e.g. a custom rule without a URL.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from ..models.monitoring_rule import DocumentType, HttpMethod, Priority, Supplier


class RuleBase(BaseModel):
    """Filter fields shared by every rule shape.

    Empty filter lists impose no constraint.
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    supplier: Supplier = Supplier.OTHER
    document_type: Optional[DocumentType] = None

    sender_domains: list[str] = Field(default_factory=list)
    sender_emails: list[str] = Field(default_factory=list)
    subject_keywords: list[str] = Field(default_factory=list)
    subject_patterns: list[str] = Field(default_factory=list)

    priority: Priority = Priority.NORMAL
    active: bool = True
    total_matches: int = 0
    successful_forwards: int = 0
    last_triggered_at: Optional[datetime] = None
    created_by: str = "SYSTEM"
    created_at: Optional[datetime] = None

    @field_validator(
        "sender_domains", "sender_emails", "subject_keywords", "subject_patterns",
        mode="before",
    )
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v

    @field_validator("sender_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        return [d.strip().lower().lstrip("@") for d in v if d and d.strip()]

    @field_validator("sender_emails")
    @classmethod
    def normalize_emails(cls, v: list[str]) -> list[str]:
        return [e.strip().lower() for e in v if e and e.strip()]

    @field_validator("subject_keywords", "subject_patterns")
    @classmethod
    def drop_blank(cls, v: list[str]) -> list[str]:
        return [item for item in v if item and item.strip()]

    @field_validator("supplier", mode="before")
    @classmethod
    def default_supplier(cls, v):
        return Supplier.OTHER if v in (None, "") else v


class AutomationRule(RuleBase):
    """Forward to the fixed automation endpoint."""
    target_service: Literal["automation"] = "automation"


class ArchiveRule(RuleBase):
    """Record only; nothing is forwarded."""
    target_service: Literal["archive"]


class CustomRule(RuleBase):
    """Forward to a rule-specific endpoint with a rule-specific method."""
    target_service: Literal["custom"]
    custom_service_url: str = Field(..., min_length=1)
    custom_service_method: HttpMethod = HttpMethod.POST

    @field_validator("custom_service_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("custom_service_url must be an http(s) URL")
        return v

    @field_validator("custom_service_method", mode="before")
    @classmethod
    def default_method(cls, v):
        return HttpMethod.POST if v in (None, "") else str(v).upper()


Rule = Annotated[
    Union[AutomationRule, ArchiveRule, CustomRule],
    Field(discriminator="target_service"),
]

rule_adapter = TypeAdapter(Rule)


def parse_rule(data) -> Rule:
    """Build a rule variant from a dict or a MonitoringRule row.

    Raises:
        pydantic.ValidationError: Data does not form a valid rule
    """
    if isinstance(data, dict):
        return rule_adapter.validate_python(data)
    return rule_adapter.validate_python(data, from_attributes=True)
