"""Transaction engine.

This package groups external side effects into all-or-nothing units with
saga-style rollback.

Key Components:
    - Operation: One side effect with its inverse and optional checks
    - SnapshotCapturer: Diagnostic state snapshots around each operation
    - DependencyResolver: Validation and deterministic execution order
    - Transaction: The Prepare -> Execute -> Commit / Rollback state machine
    - AuditTrail: Append-only, timestamped record kept on each transaction
    - EventEmitter: Hook for terminal outcomes (committed, rolled back, failed)
    - TransactionRegistry: Per-workflow owner of transactions

Example:
    >>> from repo_atomic.engine import Operation, Transaction
    >>> txn = Transaction("Create release tag")
    >>> txn.add_operation(Operation(id="tag", action=tag, inverse=untag))
    >>> txn.prepare(); txn.execute()
"""

from repo_atomic.engine.audit import AuditTrail
from repo_atomic.engine.events import EventEmitter, TransactionEvent
from repo_atomic.engine.operation import Operation, OperationResult, RetryPolicy
from repo_atomic.engine.registry import TransactionRegistry
from repo_atomic.engine.resolver import DependencyResolver
from repo_atomic.engine.snapshot import DEFAULT_ENVIRONMENT_ALLOWLIST, SnapshotCapturer, SystemSnapshot
from repo_atomic.engine.transaction import (
    ALLOWED_TRANSITIONS,
    Transaction,
    TransactionMetrics,
    TransactionReport,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AuditTrail",
    "DEFAULT_ENVIRONMENT_ALLOWLIST",
    "DependencyResolver",
    "EventEmitter",
    "Operation",
    "OperationResult",
    "RetryPolicy",
    "SnapshotCapturer",
    "SystemSnapshot",
    "Transaction",
    "TransactionEvent",
    "TransactionMetrics",
    "TransactionRegistry",
    "TransactionReport",
]
