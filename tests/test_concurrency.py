"""Concurrent callers against a file-backed SQLite store.

Every thread opens its own session; the only coordination between them is the
storage engine's conditional write.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from recordguard.concurrency import (
    ConflictResolutionStrategy,
    OptimisticLockService,
    RetryPolicy,
    UpdatePlan,
    UpdateResult,
)
from recordguard.core.config import get_settings
from recordguard.core.database import Base, build_engine
from recordguard.errors import AppError, ConflictError
from recordguard.records.models import CRMCompany, CRMContact, CRMDeal, CRMUser
from recordguard.records.schemas import VersionedRecord


ORG_ID = uuid.UUID("00000000-0000-0000-0000-0000000000aa")


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'records.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def service() -> OptimisticLockService:
    return OptimisticLockService(RetryPolicy(max_attempts=8, base_delay_ms=1, max_delay_ms=5))


def _seed(session_factory: sessionmaker[Session], contact_version: int = 1) -> dict[str, uuid.UUID]:
    with session_factory() as session:
        owner = CRMUser(organization_id=ORG_ID, email="owner@acme.io", name="Owner")
        company = CRMCompany(organization_id=ORG_ID, name="Acme", domain="acme.io")
        session.add_all([owner, company])
        session.flush()
        contact = CRMContact(
            organization_id=ORG_ID,
            first_name="Grace",
            last_name="Hopper",
            email="grace@acme.io",
            company_id=company.id,
            version=contact_version,
        )
        session.add(contact)
        session.flush()
        deal = CRMDeal(organization_id=ORG_ID, title="Compiler", owner_id=owner.id, contact_id=contact.id)
        session.add(deal)
        session.flush()
        ids = {"owner": owner.id, "company": company.id, "contact": contact.id, "deal": deal.id}
        session.commit()
    return ids


def _run_concurrently(
    session_factory: sessionmaker[Session],
    calls: list[Any],
) -> tuple[list[Any], list[AppError], list[BaseException]]:
    barrier = threading.Barrier(len(calls))
    lock = threading.Lock()
    results: list[Any] = []
    app_errors: list[AppError] = []
    unexpected: list[BaseException] = []

    def worker(call: Any) -> None:
        barrier.wait()
        with session_factory() as session:
            try:
                outcome = call(session)
            except AppError as exc:
                with lock:
                    app_errors.append(exc)
            except Exception as exc:
                with lock:
                    unexpected.append(exc)
            else:
                with lock:
                    results.append(outcome)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, app_errors, unexpected


def _read(service: OptimisticLockService, session_factory: sessionmaker[Session], entity_type: str, record_id: uuid.UUID) -> VersionedRecord:
    with session_factory() as session:
        record = service.get_with_version(session, entity_type, record_id)
    assert record is not None
    return record


def test_three_concurrent_fail_updates_exactly_one_wins(
    session_factory: sessionmaker[Session], service: OptimisticLockService
) -> None:
    ids = _seed(session_factory, contact_version=3)
    titles = ["CTO", "VP Engineering", "Principal"]
    calls = [
        (lambda session, title=title: service.safe_update(session, "contact", ids["contact"], 3, {"job_title": title}))
        for title in titles
    ]

    results, app_errors, unexpected = _run_concurrently(session_factory, calls)

    assert unexpected == []
    assert len(results) == 1
    assert results[0].version == 4
    assert len(app_errors) == 2
    for error in app_errors:
        assert isinstance(error, ConflictError)
        assert error.details["expected_version"] == 3
        assert error.details["actual_version"] == 4

    current = _read(service, session_factory, "contact", ids["contact"])
    assert current.version == 4
    assert current["job_title"] == results[0]["job_title"]


@pytest.mark.parametrize("callers", [2, 5, 8])
def test_concurrent_fail_updates_from_same_version_have_one_winner(
    session_factory: sessionmaker[Session], service: OptimisticLockService, callers: int
) -> None:
    ids = _seed(session_factory)
    calls = [
        (lambda session, n=n: service.safe_update(session, "deal", ids["deal"], 1, {"probability": n * 10}))
        for n in range(callers)
    ]

    results, app_errors, unexpected = _run_concurrently(session_factory, calls)

    assert unexpected == []
    assert len(results) == 1
    assert len(app_errors) == callers - 1
    assert all(isinstance(error, ConflictError) for error in app_errors)
    assert _read(service, session_factory, "deal", ids["deal"]).version == 2


def test_concurrent_retry_updates_all_apply(
    session_factory: sessionmaker[Session], service: OptimisticLockService
) -> None:
    ids = _seed(session_factory)
    callers = 4
    calls = [
        (
            lambda session, n=n: service.safe_update(
                session,
                "company",
                ids["company"],
                1,
                {"phone": f"+1 555 010{n}"},
                ConflictResolutionStrategy.RETRY,
            )
        )
        for n in range(callers)
    ]

    results, app_errors, unexpected = _run_concurrently(session_factory, calls)

    assert unexpected == []
    assert app_errors == []
    assert sorted(record.version for record in results) == [2, 3, 4, 5]
    current = _read(service, session_factory, "company", ids["company"])
    assert current.version == 1 + callers
    assert current["phone"] in {f"+1 555 010{n}" for n in range(callers)}


def test_overlapping_batches_never_partially_apply(
    session_factory: sessionmaker[Session], service: OptimisticLockService
) -> None:
    ids = _seed(session_factory)
    first = [
        UpdatePlan("contact", ids["contact"], 1, {"job_title": "Batch A"}),
        UpdatePlan("company", ids["company"], 1, {"industry": "Batch A"}),
    ]
    second = [
        UpdatePlan("deal", ids["deal"], 1, {"title": "Batch B"}),
        UpdatePlan("company", ids["company"], 1, {"industry": "Batch B"}),
    ]
    calls = [
        lambda session: service.safe_batch_update(session, first),
        lambda session: service.safe_batch_update(session, second),
    ]

    results, app_errors, unexpected = _run_concurrently(session_factory, calls)

    assert unexpected == []
    assert len(results) == 1
    assert len(app_errors) == 1
    assert isinstance(app_errors[0], ConflictError)
    assert app_errors[0].details["plan_index"] == 1

    winner: list[UpdateResult] = results[0]
    company = _read(service, session_factory, "company", ids["company"])
    contact = _read(service, session_factory, "contact", ids["contact"])
    deal = _read(service, session_factory, "deal", ids["deal"])
    assert company.version == 2
    if winner[0].data is not None and winner[0].data.entity_type == "contact":
        assert company["industry"] == "Batch A"
        assert (contact.version, deal.version) == (2, 1)
    else:
        assert company["industry"] == "Batch B"
        assert (contact.version, deal.version) == (1, 2)
