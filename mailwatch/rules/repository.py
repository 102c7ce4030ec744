"""Persistence for MonitoringRule rows."""

from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import select, update

from ..database import SessionFactory, session_scope
from ..models.monitoring_rule import MonitoringRule
from .schemas import Rule


class RuleRepository:

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def list_active(self) -> list[MonitoringRule]:
        with session_scope(self._session_factory) as session:
            return list(session.scalars(
                select(MonitoringRule).where(MonitoringRule.active.is_(True))
            ))

    def create(self, rule: Rule) -> MonitoringRule:
        """Persist a validated rule variant."""
        data = rule.model_dump(
            mode="json",
            exclude={"id", "total_matches", "successful_forwards", "last_triggered_at", "created_at"},
        )
        row = MonitoringRule(**data)
        with session_scope(self._session_factory) as session:
            session.add(row)
            session.flush()
            session.refresh(row)
        return row

    def increment_matches(self, rule_ids: Iterable[UUID], triggered_at: datetime) -> None:
        """Atomically bump total_matches and stamp last_triggered_at."""
        ids = [rule_id for rule_id in rule_ids if rule_id is not None]
        if not ids:
            return
        with session_scope(self._session_factory) as session:
            session.execute(
                update(MonitoringRule)
                .where(MonitoringRule.id.in_(ids))
                .values(
                    total_matches=MonitoringRule.total_matches + 1,
                    last_triggered_at=triggered_at,
                )
                .execution_options(synchronize_session=False)
            )

    def increment_forwards(self, rule_ids: Iterable[UUID]) -> None:
        ids = [rule_id for rule_id in rule_ids if rule_id is not None]
        if not ids:
            return
        with session_scope(self._session_factory) as session:
            session.execute(
                update(MonitoringRule)
                .where(MonitoringRule.id.in_(ids))
                .values(successful_forwards=MonitoringRule.successful_forwards + 1)
                .execution_options(synchronize_session=False)
            )
