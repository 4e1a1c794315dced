"""Closed error taxonomy shared by every caller of the record layer.

Storage and validation failures are classified exactly once, at the boundary
where they are raised, into one of four kinds. Callers branch on
``AppError.type`` and never need to parse message text or know which database
driver produced the failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, NoResultFound, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from recordguard.core.config import get_settings
from recordguard.metrics import observe_app_error


logger = logging.getLogger("recordguard.errors")


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    DATABASE = "DATABASE"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DATABASE: 500,
}

_SQLSTATE_UNIQUE = "23505"
_SQLSTATE_FOREIGN_KEY = "23503"
_SQLSTATE_NOT_NULL = "23502"
_SQLSTATE_CHECK = "23514"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppError(Exception):
    """Base class for every classified failure.

    ``timestamp`` is fixed when the error is constructed, not when it is
    rendered, so a conflict logged late still reports when it happened.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.DATABASE

    def __init__(self, message: str, *, details: dict[str, Any] | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.cause = cause
        self.timestamp = utcnow()

    @property
    def type(self) -> ErrorKind:
        return self.kind

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(type={self.kind.value}, message={self.message!r})"


class ValidationError(AppError):
    """Malformed input or a referential (foreign key) violation."""

    kind = ErrorKind.VALIDATION


class ConflictError(AppError):
    """Uniqueness violation or optimistic version mismatch."""

    kind = ErrorKind.CONFLICT

    @classmethod
    def version_mismatch(
        cls,
        entity_type: str,
        entity_id: Any,
        expected_version: int,
        actual_version: int,
        *,
        retry_count: int = 0,
    ) -> ConflictError:
        return cls(
            f"Concurrent modification detected: expected version {expected_version}, got {actual_version}",
            details={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "expected_version": expected_version,
                "actual_version": actual_version,
                "retry_count": retry_count,
            },
        )


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND

    @classmethod
    def for_record(cls, entity_type: str, entity_id: Any) -> NotFoundError:
        return cls(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


class DatabaseError(AppError):
    """Every storage failure that is not a conflict, validation or lookup miss."""

    kind = ErrorKind.DATABASE


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # psycopg 3 exposes ``sqlstate``, psycopg2 ``pgcode``
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


def _sqlite_columns(message: str) -> list[str]:
    _, _, tail = message.partition(":")
    return [item.strip() for item in tail.split(",") if item.strip()]


def _classify_integrity_error(exc: IntegrityError) -> AppError:
    code = _sqlstate(exc)
    message = str(exc.orig)
    upper = message.upper()

    if code == _SQLSTATE_UNIQUE or "UNIQUE CONSTRAINT FAILED" in upper:
        return ConflictError(
            "Unique constraint violation",
            details={"code": code or "UNIQUE", "fields": _sqlite_columns(message) if code is None else []},
            cause=exc,
        )
    if code == _SQLSTATE_FOREIGN_KEY or "FOREIGN KEY CONSTRAINT FAILED" in upper:
        return ValidationError("Foreign key constraint failed", details={"code": code or "FOREIGN_KEY"}, cause=exc)
    if code == _SQLSTATE_NOT_NULL or "NOT NULL CONSTRAINT FAILED" in upper:
        return ValidationError(
            "Required field missing",
            details={"code": code or "NOT_NULL", "fields": _sqlite_columns(message) if code is None else []},
            cause=exc,
        )
    if code == _SQLSTATE_CHECK or "CHECK CONSTRAINT FAILED" in upper:
        return ValidationError("Check constraint failed", details={"code": code or "CHECK"}, cause=exc)
    return DatabaseError("Database operation failed", details={"code": code}, cause=exc)


def parse_error(raw: BaseException) -> AppError:
    """Classify any failure into the closed taxonomy.

    Already-classified errors are returned unchanged, so calling this more than
    once along a propagation path is harmless.
    """
    if isinstance(raw, AppError):
        return raw
    if isinstance(raw, PydanticValidationError):
        return ValidationError(
            "Invalid input data",
            details={"issues": raw.errors(include_url=False, include_context=False)},
            cause=raw,
        )
    if isinstance(raw, IntegrityError):
        return _classify_integrity_error(raw)
    if isinstance(raw, NoResultFound):
        return NotFoundError("Record not found", cause=raw)
    if isinstance(raw, StaleDataError):
        return ConflictError("Concurrent modification detected", details={"reason": str(raw)}, cause=raw)
    if isinstance(raw, DBAPIError):
        return DatabaseError(
            "Database operation failed",
            details={"code": _sqlstate(raw), "reason": type(raw.orig).__name__},
            cause=raw,
        )
    if isinstance(raw, SQLAlchemyError):
        return DatabaseError("Database operation failed", details={"reason": type(raw).__name__}, cause=raw)
    if isinstance(raw, TimeoutError):
        return DatabaseError("Database operation timed out", cause=raw)
    return DatabaseError(str(raw) or "An unexpected error occurred", details={"reason": type(raw).__name__}, cause=raw)


def format_error_response(error: AppError, *, include_details: bool = False) -> dict[str, Any]:
    response: dict[str, Any] = {
        "error": error.message,
        "type": error.type.value,
        "timestamp": error.timestamp.isoformat(),
    }
    if error.details and (include_details or error.type is ErrorKind.VALIDATION):
        response["details"] = error.details
    return response


@dataclass
class ErrorContext:
    actor_id: str | None = None
    organization_id: str | None = None
    request_id: str | None = None


@dataclass
class HandledError:
    error: AppError
    response: dict[str, Any]


def handle_api_error(raw: BaseException, context: ErrorContext | None = None) -> HandledError:
    error = parse_error(raw)
    context = context or ErrorContext()
    observe_app_error(error.type.value)

    extra = {
        "error_type": error.type.value,
        "status_code": error.status_code,
        "actor_id": context.actor_id,
        "organization_id": context.organization_id,
        "request_id": context.request_id,
        "error": error.message,
    }
    if error.type is ErrorKind.DATABASE:
        logger.error("app_error", exc_info=error.cause or error, extra=extra)
    else:
        logger.warning("app_error", extra=extra)

    include_details = get_settings().expose_error_details
    return HandledError(error=error, response=format_error_response(error, include_details=include_details))
