"""Transfer services."""

from dbtransfer.services.batch_executor import BatchExecutor, constraint_checks_disabled
from dbtransfer.services.conflict_resolver import (
    ConflictResolver,
    decision_table,
    fixed_decision,
)
from dbtransfer.services.introspection import SchemaIntrospector
from dbtransfer.services.native_bridge import NativeToolBridge
from dbtransfer.services.transfer_service import TransferService

__all__ = [
    "BatchExecutor",
    "ConflictResolver",
    "NativeToolBridge",
    "SchemaIntrospector",
    "TransferService",
    "constraint_checks_disabled",
    "decision_table",
    "fixed_decision",
]
