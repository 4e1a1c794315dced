from __future__ import annotations

import uuid
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, SessionTransaction

from recordguard.records.models import utcnow
from recordguard.records.schemas import VersionedRecord, resolve_entity, to_versioned_record


class RecordStorage(Protocol):
    """Operations the concurrency layer needs from a storage engine.

    ``conditional_write`` must be a single compare-and-swap at the storage
    level, and unique-constraint violations must surface as errors.
    """

    def read(self, entity_type: str, record_id: uuid.UUID) -> VersionedRecord | None: ...

    def conditional_write(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> int: ...

    def unconditional_write(self, entity_type: str, record_id: uuid.UUID, patch: dict[str, Any]) -> int: ...

    def update_many(self, entity_type: str, where: dict[str, Any], values: dict[str, Any]) -> int: ...

    def delete_many(self, entity_type: str, where: dict[str, Any]) -> int: ...

    def delete_one(self, entity_type: str, record_id: uuid.UUID, expected_version: int | None = None) -> int: ...

    def create(self, entity_type: str, values: dict[str, Any]) -> VersionedRecord: ...

    def begin_transaction(self) -> Any: ...

    def commit(self, tx: Any) -> None: ...

    def rollback(self, tx: Any) -> None: ...


class SqlAlchemyRecordStorage:
    def __init__(self, session: Session) -> None:
        self.session = session

    def read(self, entity_type: str, record_id: uuid.UUID) -> VersionedRecord | None:
        model = resolve_entity(entity_type)
        record = self.session.scalar(
            select(model).where(model.id == record_id).execution_options(populate_existing=True)
        )
        if record is None:
            return None
        return to_versioned_record(entity_type, record)

    def conditional_write(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> int:
        model = resolve_entity(entity_type)
        result = self.session.execute(
            update(model)
            .where(model.id == record_id, model.version == expected_version)
            .values(**patch, version=model.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def unconditional_write(self, entity_type: str, record_id: uuid.UUID, patch: dict[str, Any]) -> int:
        model = resolve_entity(entity_type)
        result = self.session.execute(
            update(model)
            .where(model.id == record_id)
            .values(**patch, version=model.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def update_many(self, entity_type: str, where: dict[str, Any], values: dict[str, Any]) -> int:
        model = resolve_entity(entity_type)
        result = self.session.execute(
            update(model)
            .filter_by(**where)
            .values(**values, version=model.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_many(self, entity_type: str, where: dict[str, Any]) -> int:
        model = resolve_entity(entity_type)
        result = self.session.execute(
            delete(model).filter_by(**where).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_one(self, entity_type: str, record_id: uuid.UUID, expected_version: int | None = None) -> int:
        model = resolve_entity(entity_type)
        stmt = delete(model).where(model.id == record_id)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        result = self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount

    def create(self, entity_type: str, values: dict[str, Any]) -> VersionedRecord:
        model = resolve_entity(entity_type)
        record = model(**values)
        self.session.add(record)
        self.session.flush()
        return to_versioned_record(entity_type, record)

    def begin_transaction(self) -> SessionTransaction:
        # Inside a caller's open transaction the operation runs behind a
        # SAVEPOINT: its rollback leaves the caller's work alone and its commit
        # only releases the savepoint, so the caller still owns the outer commit.
        if self.session.in_transaction():
            return self.session.begin_nested()
        return self.session.begin()

    def commit(self, tx: SessionTransaction) -> None:
        tx.commit()

    def rollback(self, tx: SessionTransaction) -> None:
        if tx.nested:
            if tx is self.session.get_nested_transaction():
                tx.rollback()
        elif tx.is_active:
            tx.rollback()
        else:
            self.session.rollback()
