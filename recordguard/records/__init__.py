from recordguard.records.models import (
    ENTITY_MODELS,
    INITIAL_VERSION,
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMUser,
)
from recordguard.records.schemas import (
    PATCH_SCHEMAS,
    VersionedRecord,
    resolve_entity,
    to_versioned_record,
    validate_create_values,
    validate_filter,
    validate_patch,
)

__all__ = [
    "ENTITY_MODELS",
    "INITIAL_VERSION",
    "CRMActivity",
    "CRMCompany",
    "CRMContact",
    "CRMDeal",
    "CRMUser",
    "PATCH_SCHEMAS",
    "VersionedRecord",
    "resolve_entity",
    "to_versioned_record",
    "validate_create_values",
    "validate_filter",
    "validate_patch",
]
