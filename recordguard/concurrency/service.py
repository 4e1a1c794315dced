from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from recordguard.concurrency.storage import RecordStorage, SqlAlchemyRecordStorage
from recordguard.core.config import Settings, get_settings
from recordguard.errors import AppError, ConflictError, NotFoundError, ValidationError, parse_error
from recordguard.metrics import observe_batch_update, observe_optimistic_retry, observe_optimistic_update
from recordguard.records.schemas import VersionedRecord, validate_patch


logger = logging.getLogger("recordguard.concurrency")
tracer = trace.get_tracer("recordguard.concurrency")


class ConflictResolutionStrategy(str, Enum):
    FAIL = "FAIL"
    RETRY = "RETRY"
    OVERWRITE = "OVERWRITE"


@dataclass(frozen=True)
class RetryPolicy:
    """Bound and backoff for the RETRY strategy.

    ``max_attempts`` counts resubmissions after the first conditional write, so
    a policy of 3 issues at most 4 writes before giving up with a conflict.
    """

    max_attempts: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 1000
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=max(settings.optimistic_retry_max_attempts, 0),
            base_delay_ms=max(settings.optimistic_retry_base_delay_ms, 0),
            max_delay_ms=max(settings.optimistic_retry_max_delay_ms, 0),
            jitter=settings.optimistic_retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        ceiling = min(self.max_delay_ms, self.base_delay_ms * (2 ** max(attempt - 1, 0)))
        if self.jitter:
            return random.uniform(0, ceiling) / 1000
        return ceiling / 1000


@dataclass
class UpdatePlan:
    entity_type: str
    id: uuid.UUID
    expected_version: int
    patch: dict[str, Any]


@dataclass
class UpdateResult:
    success: bool
    data: VersionedRecord | None = None
    error: AppError | None = None
    retry_count: int = 0


@dataclass
class _PreparedPlan:
    plan: UpdatePlan
    changes: dict[str, Any] = field(default_factory=dict)


def _coerce_strategy(strategy: ConflictResolutionStrategy | str) -> ConflictResolutionStrategy:
    try:
        return ConflictResolutionStrategy(strategy)
    except ValueError as exc:
        raise ValidationError(
            "Unknown conflict resolution strategy",
            details={"strategy": strategy, "allowed": [item.value for item in ConflictResolutionStrategy]},
            cause=exc,
        ) from exc


def _check_expected_version(expected_version: int) -> None:
    if isinstance(expected_version, bool) or not isinstance(expected_version, int) or expected_version < 0:
        raise ValidationError(
            "expected_version must be a non-negative integer",
            details={"expected_version": expected_version},
        )


class OptimisticLockService:
    """Version-checked writes over a shared record set.

    The service holds no locks and no per-record state; every ordering decision
    is made by the storage engine's conditional write.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        *,
        storage_factory: Callable[[Session], RecordStorage] = SqlAlchemyRecordStorage,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._retry_policy = retry_policy
        self._storage_factory = storage_factory
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy or RetryPolicy.from_settings(get_settings())

    def get_with_version(self, session: Session, entity_type: str, record_id: uuid.UUID) -> VersionedRecord | None:
        storage = self._storage_factory(session)
        tx = storage.begin_transaction()
        try:
            record = storage.read(entity_type, record_id)
            storage.commit(tx)
        except AppError:
            storage.rollback(tx)
            raise
        except Exception as exc:
            storage.rollback(tx)
            raise parse_error(exc) from exc
        return record

    def safe_update(
        self,
        session: Session,
        entity_type: str,
        record_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
        strategy: ConflictResolutionStrategy | str = ConflictResolutionStrategy.FAIL,
    ) -> VersionedRecord:
        strategy = _coerce_strategy(strategy)
        _check_expected_version(expected_version)
        changes = validate_patch(entity_type, patch)
        storage = self._storage_factory(session)
        policy = self.retry_policy

        with tracer.start_as_current_span("recordguard.safe_update") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("strategy", strategy.value)
            retry_count = 0
            while True:
                tx = storage.begin_transaction()
                try:
                    if strategy is ConflictResolutionStrategy.OVERWRITE:
                        rows = storage.unconditional_write(entity_type, record_id, changes)
                    else:
                        rows = storage.conditional_write(entity_type, record_id, expected_version, changes)
                    if rows == 1:
                        updated = storage.read(entity_type, record_id)
                        storage.commit(tx)
                        span.set_attribute("retry_count", retry_count)
                        observe_optimistic_update(entity_type, strategy.value, "success")
                        logger.info(
                            "optimistic_update_applied",
                            extra={
                                "entity_type": entity_type,
                                "entity_id": str(record_id),
                                "strategy": strategy.value,
                                "expected_version": expected_version,
                                "retry_count": retry_count,
                            },
                        )
                        return updated
                    current = storage.read(entity_type, record_id)
                    storage.rollback(tx)
                except AppError as exc:
                    storage.rollback(tx)
                    self._record_failure(span, entity_type, strategy, exc)
                    raise
                except Exception as exc:
                    storage.rollback(tx)
                    error = parse_error(exc)
                    self._record_failure(span, entity_type, strategy, error)
                    raise error from exc

                if current is None or strategy is ConflictResolutionStrategy.OVERWRITE:
                    error = NotFoundError.for_record(entity_type, record_id)
                    self._record_failure(span, entity_type, strategy, error)
                    raise error

                if strategy is ConflictResolutionStrategy.RETRY and retry_count < policy.max_attempts:
                    retry_count += 1
                    observe_optimistic_retry(entity_type)
                    logger.info(
                        "optimistic_update_retry",
                        extra={
                            "entity_type": entity_type,
                            "entity_id": str(record_id),
                            "expected_version": expected_version,
                            "actual_version": current.version,
                            "retry_count": retry_count,
                        },
                    )
                    self._sleep(policy.delay_for(retry_count))
                    expected_version = current.version
                    continue

                error = ConflictError.version_mismatch(
                    entity_type,
                    record_id,
                    expected_version,
                    current.version,
                    retry_count=retry_count,
                )
                self._record_failure(span, entity_type, strategy, error)
                raise error

    def safe_batch_update(
        self,
        session: Session,
        plans: Sequence[UpdatePlan],
        strategy: ConflictResolutionStrategy | str = ConflictResolutionStrategy.FAIL,
    ) -> list[UpdateResult]:
        """Apply every plan in one transaction or none of them.

        The failing plan's classified error is raised with ``plan_index`` in its
        details; nothing from earlier plans is left visible.
        """
        strategy = _coerce_strategy(strategy)
        if not plans:
            return []

        prepared: list[_PreparedPlan] = []
        for index, plan in enumerate(plans):
            try:
                _check_expected_version(plan.expected_version)
                prepared.append(_PreparedPlan(plan=plan, changes=validate_patch(plan.entity_type, plan.patch)))
            except AppError as exc:
                exc.details.setdefault("plan_index", index)
                observe_batch_update(strategy.value, "rejected")
                raise

        storage = self._storage_factory(session)
        policy = self.retry_policy
        results: list[UpdateResult] = []

        with tracer.start_as_current_span("recordguard.safe_batch_update") as span:
            span.set_attribute("strategy", strategy.value)
            span.set_attribute("plan_count", len(prepared))
            tx = storage.begin_transaction()
            index: int | None = None
            try:
                for index, item in enumerate(prepared):
                    record, retry_count = self._apply_in_transaction(storage, item, strategy, policy)
                    results.append(UpdateResult(success=True, data=record, retry_count=retry_count))
                # a failed commit belongs to the batch, not to its last plan
                index = None
                storage.commit(tx)
            except Exception as exc:
                storage.rollback(tx)
                error = parse_error(exc)
                if index is not None:
                    error.details.setdefault("plan_index", index)
                span.set_status(Status(StatusCode.ERROR, error.message))
                observe_batch_update(strategy.value, "rolled_back")
                logger.warning(
                    "batch_update_rolled_back",
                    extra={
                        "strategy": strategy.value,
                        "plan_count": len(prepared),
                        "error_type": error.type.value,
                        "error": error.message,
                    },
                )
                if error is exc:
                    raise
                raise error from exc

        observe_batch_update(strategy.value, "committed")
        logger.info("batch_update_committed", extra={"strategy": strategy.value, "plan_count": len(results)})
        return results

    def _apply_in_transaction(
        self,
        storage: RecordStorage,
        item: _PreparedPlan,
        strategy: ConflictResolutionStrategy,
        policy: RetryPolicy,
    ) -> tuple[VersionedRecord, int]:
        # Runs inside the caller's open transaction, so RETRY re-reads and
        # resubmits immediately rather than sleeping while holding locks.
        plan = item.plan
        expected_version = plan.expected_version
        retry_count = 0
        while True:
            if strategy is ConflictResolutionStrategy.OVERWRITE:
                rows = storage.unconditional_write(plan.entity_type, plan.id, item.changes)
            else:
                rows = storage.conditional_write(plan.entity_type, plan.id, expected_version, item.changes)

            current = storage.read(plan.entity_type, plan.id)
            if rows == 1 and current is not None:
                return current, retry_count
            if current is None or strategy is ConflictResolutionStrategy.OVERWRITE:
                raise NotFoundError.for_record(plan.entity_type, plan.id)
            if strategy is ConflictResolutionStrategy.RETRY and retry_count < policy.max_attempts:
                retry_count += 1
                observe_optimistic_retry(plan.entity_type)
                expected_version = current.version
                continue
            raise ConflictError.version_mismatch(
                plan.entity_type,
                plan.id,
                expected_version,
                current.version,
                retry_count=retry_count,
            )

    @staticmethod
    def _record_failure(span: Any, entity_type: str, strategy: ConflictResolutionStrategy, error: AppError) -> None:
        span.set_status(Status(StatusCode.ERROR, error.message))
        observe_optimistic_update(entity_type, strategy.value, error.type.value.lower())
        logger.warning(
            "optimistic_update_failed",
            extra={
                "entity_type": entity_type,
                "strategy": strategy.value,
                "error_type": error.type.value,
                "error": error.message,
                "actual_version": error.details.get("actual_version"),
            },
        )


optimistic_lock_service = OptimisticLockService()
