from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from recordguard.concurrency import (
    CompoundOperation,
    ConflictResolutionStrategy,
    UpdatePlan,
    delete_company_operation,
    delete_contact_operation,
    delete_deal_operation,
    optimistic_lock_service,
    transaction_executor,
)
from recordguard.core.config import get_settings
from recordguard.core.database import get_db
from recordguard.errors import NotFoundError
from recordguard.integrity import check_references
from recordguard.metrics import generate_metrics_payload, metrics_content_type
from recordguard.records.schemas import VersionedRecord


class SafeUpdateRequest(BaseModel):
    expected_version: int = Field(ge=0)
    patch: dict[str, Any]
    strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.FAIL


class BatchPlanRequest(BaseModel):
    entity_type: str
    id: uuid.UUID
    expected_version: int = Field(ge=0)
    patch: dict[str, Any]


class BatchUpdateRequest(BaseModel):
    plans: list[BatchPlanRequest]
    strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.FAIL


class BatchUpdateResponse(BaseModel):
    records: list[VersionedRecord]
    retry_counts: list[int]


class CompoundDeleteResponse(BaseModel):
    status: str
    operation: str
    operations_completed: int
    rows_affected: dict[str, int]


class IntegrityReportResponse(BaseModel):
    is_valid: bool
    issue_count: int
    dangling_references: dict[str, int]
    invalid_versions: dict[str, int]
    cross_organization: dict[str, int]
    rule_violations: dict[str, int]
    warnings: dict[str, int]


router = APIRouter()
records_router = APIRouter(prefix="/api/records", tags=["records"])
cascades_router = APIRouter(prefix="/api", tags=["cascades"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@records_router.post("/batch", response_model=BatchUpdateResponse)
def batch_update(dto: BatchUpdateRequest, db: Session = Depends(get_db)) -> BatchUpdateResponse:
    plans = [
        UpdatePlan(
            entity_type=item.entity_type,
            id=item.id,
            expected_version=item.expected_version,
            patch=item.patch,
        )
        for item in dto.plans
    ]
    results = optimistic_lock_service.safe_batch_update(db, plans, dto.strategy)
    return BatchUpdateResponse(
        records=[result.data for result in results if result.data is not None],
        retry_counts=[result.retry_count for result in results],
    )


@records_router.get("/{entity_type}/{record_id}", response_model=VersionedRecord)
def get_record(entity_type: str, record_id: uuid.UUID, db: Session = Depends(get_db)) -> VersionedRecord:
    record = optimistic_lock_service.get_with_version(db, entity_type, record_id)
    if record is None:
        raise NotFoundError.for_record(entity_type, record_id)
    return record


@records_router.patch("/{entity_type}/{record_id}", response_model=VersionedRecord)
def patch_record(
    entity_type: str,
    record_id: uuid.UUID,
    dto: SafeUpdateRequest,
    db: Session = Depends(get_db),
) -> VersionedRecord:
    return optimistic_lock_service.safe_update(
        db,
        entity_type,
        record_id,
        dto.expected_version,
        dto.patch,
        dto.strategy,
    )


def _run_delete(db: Session, operation: CompoundOperation) -> CompoundDeleteResponse:
    result = transaction_executor.execute(db, operation).raise_for_error()
    return CompoundDeleteResponse(
        status="deleted",
        operation=result.operation,
        operations_completed=result.operations_completed,
        rows_affected=result.rows_affected,
    )


@cascades_router.delete("/contacts/{contact_id}", response_model=CompoundDeleteResponse)
def delete_contact(
    contact_id: uuid.UUID,
    expected_version: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> CompoundDeleteResponse:
    return _run_delete(db, delete_contact_operation(contact_id, expected_version=expected_version))


@cascades_router.delete("/companies/{company_id}", response_model=CompoundDeleteResponse)
def delete_company(
    company_id: uuid.UUID,
    expected_version: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> CompoundDeleteResponse:
    return _run_delete(db, delete_company_operation(company_id, expected_version=expected_version))


@cascades_router.delete("/deals/{deal_id}", response_model=CompoundDeleteResponse)
def delete_deal(
    deal_id: uuid.UUID,
    expected_version: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> CompoundDeleteResponse:
    return _run_delete(db, delete_deal_operation(deal_id, expected_version=expected_version))


@admin_router.get("/integrity", response_model=IntegrityReportResponse)
def integrity_report(
    organization_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> IntegrityReportResponse:
    report = check_references(db, organization_id)
    db.rollback()
    return IntegrityReportResponse(
        is_valid=report.is_valid,
        issue_count=report.issue_count,
        dangling_references=report.dangling_references,
        invalid_versions=report.invalid_versions,
        cross_organization=report.cross_organization,
        rule_violations=report.rule_violations,
        warnings=report.warnings,
    )


router.include_router(records_router)
router.include_router(cascades_router)
router.include_router(admin_router)
