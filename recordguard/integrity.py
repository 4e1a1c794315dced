from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, get_args

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session

from recordguard.records.models import (
    ENTITY_MODELS,
    INITIAL_VERSION,
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMUser,
)
from recordguard.records.schemas import DealStage


# (name, child model, foreign key column, parent model)
_REFERENCES = (
    ("deal.contact_id", CRMDeal, "contact_id", CRMContact),
    ("deal.company_id", CRMDeal, "company_id", CRMCompany),
    ("contact.company_id", CRMContact, "company_id", CRMCompany),
    ("activity.contact_id", CRMActivity, "contact_id", CRMContact),
    ("activity.deal_id", CRMActivity, "deal_id", CRMDeal),
)

# References whose target must sit in the same organization as the referrer.
_ORGANIZATION_LINKS = (
    ("contact.company_id", CRMContact, "company_id", CRMCompany),
    ("deal.contact_id", CRMDeal, "contact_id", CRMContact),
    ("deal.company_id", CRMDeal, "company_id", CRMCompany),
    ("deal.owner_id", CRMDeal, "owner_id", CRMUser),
)

_DEAL_RULES = {
    "deal.stage": CRMDeal.stage.not_in(get_args(DealStage)),
    "deal.probability": or_(CRMDeal.probability < 0, CRMDeal.probability > 100),
    "deal.amount": CRMDeal.amount < 0,
}

_DEAL_WARNINGS = {
    "deal.won_probability": and_(CRMDeal.stage == "won", CRMDeal.probability != 100),
    "deal.lost_probability": and_(CRMDeal.stage == "lost", CRMDeal.probability != 0),
}


@dataclass
class IntegrityReport:
    """Counts per check. Warnings are reported but do not make the report invalid."""

    dangling_references: dict[str, int] = field(default_factory=dict)
    invalid_versions: dict[str, int] = field(default_factory=dict)
    cross_organization: dict[str, int] = field(default_factory=dict)
    rule_violations: dict[str, int] = field(default_factory=dict)
    warnings: dict[str, int] = field(default_factory=dict)

    def _error_groups(self) -> tuple[dict[str, int], ...]:
        return (self.dangling_references, self.invalid_versions, self.cross_organization, self.rule_violations)

    @property
    def is_valid(self) -> bool:
        return self.issue_count == 0

    @property
    def issue_count(self) -> int:
        return sum(sum(group.values()) for group in self._error_groups())


def _scoped(stmt: Select[Any], model: Any, organization_id: uuid.UUID | None) -> Select[Any]:
    if organization_id is None:
        return stmt
    return stmt.where(model.organization_id == organization_id)


def _count(session: Session, stmt: Select[Any]) -> int:
    return session.scalar(stmt) or 0


def check_references(session: Session, organization_id: uuid.UUID | None = None) -> IntegrityReport:
    """Count references that point at missing rows and versions below the initial version.

    Dangling references only appear on stores where foreign keys are not
    enforced or were disabled while data was loaded. The same report carries
    cross-organization links, deal field violations and stage/probability
    warnings.
    """
    report = IntegrityReport()
    for name, child, column_name, parent in _REFERENCES:
        column = getattr(child, column_name)
        stmt = (
            select(func.count())
            .select_from(child)
            .outerjoin(parent, column == parent.id)
            .where(column.is_not(None), parent.id.is_(None))
        )
        report.dangling_references[name] = _count(session, _scoped(stmt, child, organization_id))

    for entity_type, model in ENTITY_MODELS.items():
        stmt = select(func.count()).select_from(model).where(model.version < INITIAL_VERSION)
        report.invalid_versions[entity_type] = _count(session, _scoped(stmt, model, organization_id))

    for name, child, column_name, parent in _ORGANIZATION_LINKS:
        stmt = (
            select(func.count())
            .select_from(child)
            .join(parent, getattr(child, column_name) == parent.id)
            .where(child.organization_id != parent.organization_id)
        )
        report.cross_organization[name] = _count(session, _scoped(stmt, child, organization_id))

    for name, condition in _DEAL_RULES.items():
        stmt = select(func.count()).select_from(CRMDeal).where(condition)
        report.rule_violations[name] = _count(session, _scoped(stmt, CRMDeal, organization_id))

    for name, condition in _DEAL_WARNINGS.items():
        stmt = select(func.count()).select_from(CRMDeal).where(condition)
        report.warnings[name] = _count(session, _scoped(stmt, CRMDeal, organization_id))
    return report
