from recordguard.concurrency.cascades import (
    delete_company_operation,
    delete_contact_operation,
    delete_deal_operation,
    reassign_and_delete_user_operation,
)
from recordguard.concurrency.compound import (
    CompoundOperation,
    CompoundResult,
    CompoundState,
    CompoundStep,
    Create,
    DeleteMany,
    DeleteOne,
    StepResult,
    TransactionExecutor,
    UpdateMany,
    transaction_executor,
)
from recordguard.concurrency.service import (
    ConflictResolutionStrategy,
    OptimisticLockService,
    RetryPolicy,
    UpdatePlan,
    UpdateResult,
    optimistic_lock_service,
)
from recordguard.concurrency.storage import RecordStorage, SqlAlchemyRecordStorage

__all__ = [
    "CompoundOperation",
    "CompoundResult",
    "CompoundState",
    "CompoundStep",
    "ConflictResolutionStrategy",
    "Create",
    "DeleteMany",
    "DeleteOne",
    "OptimisticLockService",
    "RecordStorage",
    "RetryPolicy",
    "SqlAlchemyRecordStorage",
    "StepResult",
    "TransactionExecutor",
    "UpdateMany",
    "UpdatePlan",
    "UpdateResult",
    "delete_company_operation",
    "delete_contact_operation",
    "delete_deal_operation",
    "optimistic_lock_service",
    "reassign_and_delete_user_operation",
    "transaction_executor",
]
