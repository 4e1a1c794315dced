"""All-or-nothing execution of multi-step, multi-entity mutations.

A compound operation is an ordered list of storage steps executed inside one
transaction. Either every step is committed or the transaction is rolled back
and the persisted state is exactly what it was before the call. Compound
operations are never retried here: they are not idempotent in general (a
delete-then-create sequence run twice creates duplicates), so retrying is left
to the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from recordguard.concurrency.storage import RecordStorage, SqlAlchemyRecordStorage
from recordguard.errors import AppError, ConflictError, NotFoundError, ValidationError, parse_error
from recordguard.metrics import observe_compound_operation
from recordguard.records.schemas import (
    coerce_column_values,
    resolve_entity,
    validate_create_values,
    validate_filter,
    validate_patch,
)


logger = logging.getLogger("recordguard.compound")
tracer = trace.get_tracer("recordguard.compound")


class CompoundState(str, Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass
class StepResult:
    name: str
    kind: str
    rows_affected: int
    record_id: uuid.UUID | None = None


class CompoundStep(ABC):
    kind: ClassVar[str]
    entity_type: str
    name: str | None

    @property
    def label(self) -> str:
        return self.name or f"{self.kind}:{self.entity_type}"

    def validate(self) -> None:
        resolve_entity(self.entity_type)

    @abstractmethod
    def apply(self, storage: RecordStorage) -> StepResult:
        raise NotImplementedError


@dataclass
class UpdateMany(CompoundStep):
    """Set ``values`` on every row matching ``where``; each row's version advances by one."""

    kind: ClassVar[str] = "update_many"

    entity_type: str
    where: dict[str, Any]
    values: dict[str, Any]
    name: str | None = None

    def validate(self) -> None:
        self.where = validate_filter(self.entity_type, self.where)
        self.values = validate_patch(self.entity_type, self.values)

    def apply(self, storage: RecordStorage) -> StepResult:
        rows = storage.update_many(self.entity_type, self.where, self.values)
        return StepResult(name=self.label, kind=self.kind, rows_affected=rows)


@dataclass
class DeleteMany(CompoundStep):
    kind: ClassVar[str] = "delete_many"

    entity_type: str
    where: dict[str, Any]
    name: str | None = None

    def validate(self) -> None:
        self.where = validate_filter(self.entity_type, self.where)

    def apply(self, storage: RecordStorage) -> StepResult:
        rows = storage.delete_many(self.entity_type, self.where)
        return StepResult(name=self.label, kind=self.kind, rows_affected=rows)


@dataclass
class DeleteOne(CompoundStep):
    """Delete a single record, optionally only at ``expected_version``."""

    kind: ClassVar[str] = "delete_one"

    entity_type: str
    record_id: uuid.UUID
    expected_version: int | None = None
    name: str | None = None

    def validate(self) -> None:
        self.record_id = coerce_column_values(self.entity_type, {"id": self.record_id})["id"]

    def apply(self, storage: RecordStorage) -> StepResult:
        rows = storage.delete_one(self.entity_type, self.record_id, self.expected_version)
        if rows == 0:
            current = storage.read(self.entity_type, self.record_id)
            if current is None or self.expected_version is None:
                raise NotFoundError.for_record(self.entity_type, self.record_id)
            raise ConflictError.version_mismatch(
                self.entity_type,
                self.record_id,
                self.expected_version,
                current.version,
            )
        return StepResult(name=self.label, kind=self.kind, rows_affected=rows, record_id=self.record_id)


@dataclass
class Create(CompoundStep):
    kind: ClassVar[str] = "create"

    entity_type: str
    values: dict[str, Any]
    name: str | None = None

    def validate(self) -> None:
        self.values = validate_create_values(self.entity_type, self.values)

    def apply(self, storage: RecordStorage) -> StepResult:
        record = storage.create(self.entity_type, self.values)
        return StepResult(name=self.label, kind=self.kind, rows_affected=1, record_id=record.id)


@dataclass
class CompoundOperation:
    name: str
    steps: Sequence[CompoundStep]


@dataclass
class CompoundResult:
    operation: str
    state: CompoundState = CompoundState.PENDING
    step_results: list[StepResult] = field(default_factory=list)
    error: AppError | None = None
    failed_step: str | None = None
    failed_step_index: int | None = None

    @property
    def committed(self) -> bool:
        return self.state is CompoundState.COMMITTED

    @property
    def operations_completed(self) -> int:
        # Work done before a rollback is not durable and is not counted.
        if self.state is not CompoundState.COMMITTED:
            return 0
        return len(self.step_results)

    @property
    def rows_affected(self) -> dict[str, int]:
        return {item.name: item.rows_affected for item in self.step_results}

    def raise_for_error(self) -> CompoundResult:
        if self.error is not None:
            raise self.error
        return self


def _check_unique_labels(operation: CompoundOperation) -> None:
    # rows_affected is keyed by label
    labels = [step.label for step in operation.steps]
    duplicates = sorted({label for label in labels if labels.count(label) > 1})
    if duplicates:
        raise ValidationError(
            "compound steps must have unique names",
            details={"operation": operation.name, "steps": duplicates},
        )


class TransactionExecutor:
    def __init__(self, *, storage_factory: Any = SqlAlchemyRecordStorage) -> None:
        self._storage_factory = storage_factory

    def execute(self, session: Session, operation: CompoundOperation) -> CompoundResult:
        result = CompoundResult(operation=operation.name)
        started = time.perf_counter()

        try:
            _check_unique_labels(operation)
            for step in operation.steps:
                step.validate()
        except AppError as exc:
            return self._finish_rolled_back(result, exc, None, None, started)

        storage = self._storage_factory(session)
        with tracer.start_as_current_span("recordguard.compound") as span:
            span.set_attribute("operation", operation.name)
            span.set_attribute("step_count", len(operation.steps))
            tx = storage.begin_transaction()
            index = 0
            step: CompoundStep | None = None
            try:
                for index, step in enumerate(operation.steps):
                    result.step_results.append(step.apply(storage))
                step = None
                storage.commit(tx)
            except Exception as exc:
                storage.rollback(tx)
                error = parse_error(exc)
                span.set_status(Status(StatusCode.ERROR, error.message))
                return self._finish_rolled_back(
                    result,
                    error,
                    step.label if step is not None else None,
                    index if step is not None else None,
                    started,
                )
            except BaseException:
                # cancellation: abort the storage transaction and let it propagate
                storage.rollback(tx)
                observe_compound_operation(operation.name, CompoundState.ROLLED_BACK.value, time.perf_counter() - started)
                raise

        result.state = CompoundState.COMMITTED
        observe_compound_operation(operation.name, result.state.value, time.perf_counter() - started)
        logger.info(
            "compound_operation_committed",
            extra={"operation": operation.name, "rows_affected": result.rows_affected},
        )
        return result

    @staticmethod
    def _finish_rolled_back(
        result: CompoundResult,
        error: AppError,
        step_label: str | None,
        step_index: int | None,
        started: float,
    ) -> CompoundResult:
        result.state = CompoundState.ROLLED_BACK
        result.step_results = []
        result.error = error
        result.failed_step = step_label
        result.failed_step_index = step_index
        if step_label is not None:
            error.details.setdefault("step", step_label)
        observe_compound_operation(result.operation, result.state.value, time.perf_counter() - started)
        logger.warning(
            "compound_operation_rolled_back",
            extra={
                "operation": result.operation,
                "step": step_label,
                "error_type": error.type.value,
                "error": error.message,
            },
        )
        return result


transaction_executor = TransactionExecutor()
