from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import inspect

from recordguard.errors import ValidationError, parse_error
from recordguard.records.models import ENTITY_MODELS, SYSTEM_COLUMNS, Base


DealStage = Literal["lead", "qualified", "proposal", "negotiation", "won", "lost"]
ActivityType = Literal["call", "email", "meeting", "task", "note"]
UserRole = Literal["user", "admin", "super_admin"]
CompanySize = Literal["1-10", "11-50", "51-200", "201-1000", "1000+"]


class _Patch(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UserPatch(_Patch):
    email: EmailStr | None = None
    name: str | None = Field(default=None, max_length=100)
    role: UserRole | None = None


class CompanyPatch(_Patch):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    domain: str | None = Field(default=None, max_length=255)
    industry: str | None = Field(default=None, max_length=50)
    size: CompanySize | None = None
    phone: str | None = Field(default=None, max_length=20)


class ContactPatch(_Patch):
    first_name: str | None = Field(default=None, min_length=1, max_length=50)
    last_name: str | None = Field(default=None, min_length=1, max_length=50)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)
    job_title: str | None = Field(default=None, max_length=100)
    company_id: UUID | None = None
    owner_id: UUID | None = None


class DealPatch(_Patch):
    title: str | None = Field(default=None, min_length=1, max_length=100)
    amount: Decimal | None = Field(default=None, ge=0)
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    owner_id: UUID | None = None


class ActivityPatch(_Patch):
    type: ActivityType | None = None
    subject: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    due_date: datetime | None = None
    completed: bool | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None
    user_id: UUID | None = None


PATCH_SCHEMAS: dict[str, type[_Patch]] = {
    "user": UserPatch,
    "company": CompanyPatch,
    "contact": ContactPatch,
    "deal": DealPatch,
    "activity": ActivityPatch,
}


class VersionedRecord(BaseModel):
    """Detached snapshot of a record at a specific version."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    id: UUID
    version: int
    created_at: datetime
    updated_at: datetime
    fields: dict[str, Any]

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]


def resolve_entity(entity_type: str) -> type[Base]:
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValidationError(
            f"Unknown entity type: {entity_type}",
            details={"entity_type": entity_type, "allowed": sorted(ENTITY_MODELS)},
        )
    return model


def column_names(entity_type: str) -> set[str]:
    return {column.key for column in inspect(resolve_entity(entity_type)).columns}


def validate_patch(entity_type: str, patch: dict[str, Any]) -> dict[str, Any]:
    resolve_entity(entity_type)
    if not patch:
        raise ValidationError("patch must change at least one field", details={"entity_type": entity_type})

    protected = sorted(SYSTEM_COLUMNS.intersection(patch))
    if protected:
        raise ValidationError(
            "patch may not set system-managed fields",
            details={"entity_type": entity_type, "fields": protected},
        )

    schema = PATCH_SCHEMAS[entity_type]
    try:
        validated = schema.model_validate(patch)
    except PydanticValidationError as exc:
        raise parse_error(exc) from exc
    return validated.model_dump(exclude_unset=True)


@lru_cache(maxsize=None)
def _column_adapter(entity_type: str, column_name: str) -> TypeAdapter[Any]:
    column = inspect(resolve_entity(entity_type)).columns[column_name]
    return TypeAdapter(column.type.python_type | None)


def coerce_column_values(entity_type: str, values: dict[str, Any]) -> dict[str, Any]:
    """Convert raw values to the Python types of their columns.

    Values that cannot be converted (a malformed UUID, text for a numeric
    column) fail here as VALIDATION instead of reaching the driver.
    """
    coerced: dict[str, Any] = {}
    for key, value in values.items():
        try:
            coerced[key] = _column_adapter(entity_type, key).validate_python(value)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid value for {entity_type}.{key}",
                details={
                    "entity_type": entity_type,
                    "field": key,
                    "issues": exc.errors(include_url=False, include_context=False),
                },
                cause=exc,
            ) from exc
    return coerced


def validate_filter(entity_type: str, where: dict[str, Any]) -> dict[str, Any]:
    if not where:
        raise ValidationError("bulk step requires at least one filter column", details={"entity_type": entity_type})
    unknown = sorted(set(where) - column_names(entity_type))
    if unknown:
        raise ValidationError(
            "filter references unknown columns",
            details={"entity_type": entity_type, "fields": unknown},
        )
    return coerce_column_values(entity_type, where)


def validate_create_values(entity_type: str, values: dict[str, Any]) -> dict[str, Any]:
    known = column_names(entity_type)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValidationError(
            "create references unknown columns",
            details={"entity_type": entity_type, "fields": unknown},
        )
    protected = sorted((SYSTEM_COLUMNS - {"id"}).intersection(values))
    if protected:
        raise ValidationError(
            "create may not set system-managed fields",
            details={"entity_type": entity_type, "fields": protected},
        )

    schema_fields = PATCH_SCHEMAS[entity_type].model_fields
    patchable = {key: value for key, value in values.items() if key in schema_fields}
    cleaned = coerce_column_values(entity_type, {key: value for key, value in values.items() if key not in schema_fields})
    if patchable:
        cleaned.update(validate_patch(entity_type, patchable))
    return cleaned


def to_versioned_record(entity_type: str, record: Base) -> VersionedRecord:
    fields: dict[str, Any] = {}
    for column in inspect(type(record)).columns:
        if column.key in SYSTEM_COLUMNS:
            continue
        fields[column.key] = getattr(record, column.key)
    return VersionedRecord(
        entity_type=entity_type,
        id=record.id,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
        fields=fields,
    )
