from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any, ClassVar

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recordguard.concurrency import (
    CompoundOperation,
    CompoundState,
    CompoundStep,
    Create,
    DeleteMany,
    DeleteOne,
    StepResult,
    TransactionExecutor,
    UpdateMany,
    delete_company_operation,
    delete_contact_operation,
    delete_deal_operation,
    reassign_and_delete_user_operation,
)
from recordguard.core.config import get_settings
from recordguard.core.database import Base, build_engine
from recordguard.errors import ConflictError, ErrorKind
from recordguard.integrity import check_references
from recordguard.records.models import CRMActivity, CRMCompany, CRMContact, CRMDeal, CRMUser


ORG_ID = uuid.UUID("00000000-0000-0000-0000-0000000000aa")


class Cancelled(BaseException):
    pass


@dataclass
class ExplodingStep(CompoundStep):
    kind: ClassVar[str] = "explode"

    entity_type: str = "contact"
    name: str | None = "explode"
    raises: BaseException | None = None

    def apply(self, storage: Any) -> StepResult:
        raise self.raises or OperationalError("UPDATE crm_contact", {}, Exception("disk I/O error"))


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def executor() -> TransactionExecutor:
    return TransactionExecutor()


@pytest.fixture()
def graph(db_session: Session) -> dict[str, uuid.UUID]:
    owner = CRMUser(organization_id=ORG_ID, email="owner@acme.io", name="Owner")
    successor = CRMUser(organization_id=ORG_ID, email="successor@acme.io", name="Successor")
    company = CRMCompany(organization_id=ORG_ID, name="Acme", domain="acme.io")
    db_session.add_all([owner, successor, company])
    db_session.flush()

    contact = CRMContact(
        organization_id=ORG_ID,
        first_name="Mary",
        last_name="Jackson",
        email="mary@acme.io",
        company_id=company.id,
        owner_id=owner.id,
    )
    db_session.add(contact)
    db_session.flush()

    deals = [
        CRMDeal(organization_id=ORG_ID, title=f"Deal {n}", owner_id=owner.id, contact_id=contact.id, company_id=company.id)
        for n in range(2)
    ]
    db_session.add_all(deals)
    db_session.flush()

    activities = [
        CRMActivity(organization_id=ORG_ID, type="call", subject="Intro", user_id=owner.id, contact_id=contact.id),
        CRMActivity(organization_id=ORG_ID, type="email", subject="Follow up", user_id=owner.id, contact_id=contact.id),
        CRMActivity(organization_id=ORG_ID, type="meeting", subject="Demo", user_id=owner.id, deal_id=deals[0].id),
    ]
    db_session.add_all(activities)
    db_session.flush()

    ids = {
        "owner": owner.id,
        "successor": successor.id,
        "company": company.id,
        "contact": contact.id,
        "deal": deals[0].id,
        "other_deal": deals[1].id,
    }
    db_session.commit()
    return ids


def _count(db_session: Session, model: Any, *criteria: Any) -> int:
    count = db_session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0
    db_session.commit()
    return count


def _exists(db_session: Session, model: Any, record_id: uuid.UUID) -> bool:
    return _count(db_session, model, model.id == record_id) == 1


def _snapshot(db_session: Session) -> dict[str, Any]:
    state = {
        "contacts": _count(db_session, CRMContact),
        "activities": _count(db_session, CRMActivity),
        "linked_deals": _count(db_session, CRMDeal, CRMDeal.contact_id.is_not(None)),
        "deal_versions": sorted(db_session.scalars(select(CRMDeal.version)).all()),
    }
    db_session.commit()
    return state


def test_delete_contact_cascade_commits_every_step(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    result = executor.execute(db_session, delete_contact_operation(graph["contact"]))

    assert result.state is CompoundState.COMMITTED
    assert result.error is None
    assert result.operations_completed == 3
    assert result.rows_affected == {"unlink_deals": 2, "delete_activities": 2, "delete_contact": 1}
    assert not _exists(db_session, CRMContact, graph["contact"])
    assert _count(db_session, CRMDeal, CRMDeal.contact_id.is_not(None)) == 0
    assert sorted(db_session.scalars(select(CRMDeal.version)).all()) == [2, 2]
    assert _count(db_session, CRMActivity) == 1
    assert check_references(db_session).is_valid


@pytest.mark.parametrize("failing_position", [1, 2, 3])
def test_failure_at_any_step_rolls_back_everything(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID], failing_position: int
) -> None:
    before = _snapshot(db_session)
    steps: list[CompoundStep] = [
        UpdateMany("deal", {"contact_id": graph["contact"]}, {"contact_id": None}, name="unlink_deals"),
        DeleteMany("activity", {"contact_id": graph["contact"]}, name="delete_activities"),
        DeleteOne("contact", graph["contact"], name="delete_contact"),
    ]
    steps[failing_position - 1] = ExplodingStep()

    result = executor.execute(db_session, CompoundOperation(name="contact.delete", steps=steps))

    assert result.state is CompoundState.ROLLED_BACK
    assert result.operations_completed == 0
    assert result.step_results == []
    assert result.failed_step == "explode"
    assert result.failed_step_index == failing_position - 1
    assert result.error is not None
    assert result.error.type is ErrorKind.DATABASE
    assert result.error.details["step"] == "explode"
    assert _snapshot(db_session) == before


def test_foreign_key_violation_rolls_back_and_is_validation(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    before = _snapshot(db_session)
    operation = CompoundOperation(
        name="contact.delete_without_unlink",
        steps=[
            DeleteMany("activity", {"contact_id": graph["contact"]}),
            DeleteOne("contact", graph["contact"]),
        ],
    )

    result = executor.execute(db_session, operation)

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.VALIDATION
    assert result.error.message == "Foreign key constraint failed"
    assert result.failed_step == "delete_one:contact"
    assert _snapshot(db_session) == before


def test_duplicate_create_rolls_back_prior_steps(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    operation = CompoundOperation(
        name="company.rebrand",
        steps=[
            UpdateMany("company", {"id": graph["company"]}, {"name": "Acme Rockets"}),
            Create("company", {"organization_id": ORG_ID, "name": "Acme Clone", "domain": "acme.io"}),
        ],
    )

    result = executor.execute(db_session, operation)

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.CONFLICT
    assert result.failed_step_index == 1
    assert _count(db_session, CRMCompany) == 1
    assert _count(db_session, CRMCompany, CRMCompany.name == "Acme") == 1


def test_create_returns_new_record_id(db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]) -> None:
    operation = CompoundOperation(
        name="activity.log",
        steps=[
            Create(
                "activity",
                {"organization_id": ORG_ID, "type": "note", "subject": "Signed", "user_id": graph["owner"], "deal_id": graph["deal"]},
                name="log_activity",
            ),
            UpdateMany("deal", {"id": graph["deal"]}, {"stage": "won", "probability": 100}, name="close_deal"),
        ],
    )

    result = executor.execute(db_session, operation).raise_for_error()

    created = result.step_results[0]
    assert created.rows_affected == 1
    assert created.record_id is not None
    assert _exists(db_session, CRMActivity, created.record_id)
    assert result.rows_affected == {"log_activity": 1, "close_deal": 1}


def test_delete_one_with_stale_version_is_conflict(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    result = executor.execute(db_session, delete_deal_operation(graph["other_deal"], expected_version=7))

    assert result.state is CompoundState.ROLLED_BACK
    assert isinstance(result.error, ConflictError)
    assert result.error.details["actual_version"] == 1
    with pytest.raises(ConflictError):
        result.raise_for_error()
    assert _exists(db_session, CRMDeal, graph["other_deal"])


def test_delete_one_missing_record_is_not_found(db_session: Session, executor: TransactionExecutor) -> None:
    result = executor.execute(db_session, delete_deal_operation(uuid.uuid4()))

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.NOT_FOUND


def test_invalid_step_is_rejected_before_the_transaction(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    before = _snapshot(db_session)
    operation = CompoundOperation(
        name="bad",
        steps=[
            UpdateMany("deal", {"contact_id": graph["contact"]}, {"contact_id": None}),
            DeleteMany("activity", {"no_such_column": 1}),
        ],
    )

    result = executor.execute(db_session, operation)

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.VALIDATION
    assert result.failed_step is None
    assert _snapshot(db_session) == before


def test_cancellation_rolls_back_and_propagates(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    before = _snapshot(db_session)
    operation = CompoundOperation(
        name="contact.delete",
        steps=[
            UpdateMany("deal", {"contact_id": graph["contact"]}, {"contact_id": None}),
            ExplodingStep(raises=Cancelled()),
        ],
    )

    with pytest.raises(Cancelled):
        executor.execute(db_session, operation)

    assert _snapshot(db_session) == before


def test_delete_company_unlinks_contacts_and_deals(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    result = executor.execute(db_session, delete_company_operation(graph["company"], expected_version=1))

    assert result.committed
    assert result.rows_affected == {"unlink_contacts": 1, "unlink_deals": 2, "delete_company": 1}
    assert not _exists(db_session, CRMCompany, graph["company"])
    assert _count(db_session, CRMContact, CRMContact.company_id.is_not(None)) == 0
    assert check_references(db_session, ORG_ID).is_valid


def test_delete_deal_keeps_activities(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    result = executor.execute(db_session, delete_deal_operation(graph["deal"])).raise_for_error()

    assert result.rows_affected == {"unlink_activities": 1, "delete_deal": 1}
    assert _count(db_session, CRMActivity) == 3
    assert _count(db_session, CRMActivity, CRMActivity.deal_id.is_not(None)) == 0


def test_reassign_and_delete_user(db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]) -> None:
    result = executor.execute(db_session, reassign_and_delete_user_operation(graph["owner"], graph["successor"]))

    assert result.committed
    assert result.rows_affected == {
        "reassign_deals": 2,
        "reassign_contacts": 1,
        "reassign_activities": 3,
        "delete_user": 1,
    }
    assert not _exists(db_session, CRMUser, graph["owner"])
    assert _count(db_session, CRMDeal, CRMDeal.owner_id == graph["successor"]) == 2


@pytest.mark.parametrize(
    ("step", "field"),
    [
        (Create("company", {"organization_id": "not-a-uuid", "name": "Acme Two"}), "organization_id"),
        (UpdateMany("contact", {"company_id": "nope"}, {"job_title": "Engineer"}), "company_id"),
        (DeleteMany("activity", {"contact_id": "nope"}), "contact_id"),
        (DeleteMany("deal", {"probability": "high"}), "probability"),
        (DeleteOne("deal", "nope"), "id"),  # type: ignore[arg-type]
    ],
)
def test_malformed_column_values_are_validation(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID], step: CompoundStep, field: str
) -> None:
    before = _snapshot(db_session)

    result = executor.execute(db_session, CompoundOperation(name="malformed", steps=[step]))

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.VALIDATION
    assert result.error.status_code == 400
    assert result.error.details["field"] == field
    assert result.failed_step is None
    assert _snapshot(db_session) == before
    assert _count(db_session, CRMCompany) == 1


def test_string_filter_values_are_converted_to_column_types(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    operation = CompoundOperation(
        name="deal.qualify",
        steps=[UpdateMany("deal", {"contact_id": str(graph["contact"])}, {"stage": "qualified"}, name="qualify")],
    )

    result = executor.execute(db_session, operation).raise_for_error()

    assert result.rows_affected == {"qualify": 2}
    assert _count(db_session, CRMDeal, CRMDeal.stage == "qualified") == 2


def test_duplicate_step_labels_are_rejected(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    operation = CompoundOperation(
        name="deal.touch",
        steps=[
            UpdateMany("deal", {"id": graph["deal"]}, {"stage": "proposal"}),
            UpdateMany("deal", {"id": graph["other_deal"]}, {"stage": "proposal"}),
        ],
    )

    result = executor.execute(db_session, operation)

    assert result.state is CompoundState.ROLLED_BACK
    assert result.error is not None
    assert result.error.type is ErrorKind.VALIDATION
    assert result.error.details["steps"] == ["update_many:deal"]
    assert _count(db_session, CRMDeal, CRMDeal.stage == "proposal") == 0


def test_rolled_back_operation_keeps_callers_pending_work(
    db_session: Session, executor: TransactionExecutor, graph: dict[str, uuid.UUID]
) -> None:
    db_session.add(CRMCompany(organization_id=ORG_ID, name="Pending", domain="pending.io"))
    db_session.flush()
    operation = CompoundOperation(
        name="contact.delete",
        steps=[
            UpdateMany("deal", {"contact_id": graph["contact"]}, {"contact_id": None}, name="unlink_deals"),
            ExplodingStep(),
        ],
    )

    result = executor.execute(db_session, operation)

    assert result.state is CompoundState.ROLLED_BACK
    assert db_session.in_transaction()
    assert _count(db_session, CRMCompany, CRMCompany.name == "Pending") == 1
    assert _count(db_session, CRMDeal, CRMDeal.contact_id.is_not(None)) == 2
