"""Enumerations for transaction states, operation kinds and isolation levels."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TransactionState(str, Enum):
    """Lifecycle states of a transaction.

    A transaction is in exactly one of these states at any time. The
    permitted moves between them are listed in
    ``repo_atomic.engine.transaction.ALLOWED_TRANSITIONS``.
    """

    INITIALIZING = "initializing"
    PREPARED = "prepared"
    EXECUTING = "executing"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ABORTED = "aborted"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the transaction can no longer be mutated.

        ``FAILED`` is not terminal here: an operator may retry the rollback
        of a transaction whose rollback partially failed.
        """
        return self in (
            TransactionState.COMMITTED,
            TransactionState.ROLLED_BACK,
            TransactionState.ABORTED,
        )

    @property
    def is_finished(self) -> bool:
        """Check if no lifecycle method is running or expected to run next."""
        return self.is_terminal or self == TransactionState.FAILED


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and timeout policy applied to an operation's forward action.

    Attributes:
        max_attempts: Maximum number of times the action is invoked.
        backoff_factor: Base of the exponential delay between attempts, in
            seconds. ``0`` retries immediately.
        timeout_seconds: Deadline for one invocation. Provisioning operations
            pass it to each subprocess they run; the engine itself does not
            preempt actions.
    """

    max_attempts: int = 1
    backoff_factor: float = 0.0
    timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_factor < 0:
            raise ValueError("backoff_factor must not be negative")


class OperationKind(str, Enum):
    """Classification of the external system an operation touches.

    Used for reporting and for selecting the default retry/timeout policy.
    """

    FILE_SYSTEM = "file-system"
    VERSION_CONTROL = "version-control"
    REMOTE_API = "remote-api"
    PROCESS_EXECUTION = "process-execution"
    CONFIGURATION = "configuration"
    NETWORK = "network"

    def __str__(self) -> str:
        return self.value

    def default_policy(self) -> RetryPolicy:
        """Get the default retry policy for this kind of operation."""
        if self == OperationKind.FILE_SYSTEM:
            return RetryPolicy(max_attempts=1, timeout_seconds=60.0)
        elif self == OperationKind.VERSION_CONTROL:
            return RetryPolicy(max_attempts=1, timeout_seconds=120.0)
        elif self == OperationKind.REMOTE_API:
            return RetryPolicy(max_attempts=2, backoff_factor=1.0, timeout_seconds=60.0)
        elif self == OperationKind.PROCESS_EXECUTION:
            return RetryPolicy(max_attempts=1, timeout_seconds=1800.0)
        elif self == OperationKind.CONFIGURATION:
            return RetryPolicy(max_attempts=1, timeout_seconds=30.0)
        elif self == OperationKind.NETWORK:
            return RetryPolicy(max_attempts=3, backoff_factor=2.0, timeout_seconds=60.0)
        raise ValueError(f"Unhandled operation kind: {self!r}")

    @property
    def rollback_guarantee(self) -> str:
        """Describe how reliably operations of this kind can be undone.

        Hosting-API side effects (issues, pull requests, merges) cannot be
        un-created, so their inverses are best-effort.
        """
        if self in (OperationKind.REMOTE_API, OperationKind.NETWORK):
            return "best-effort"
        return "compensating"


class IsolationLevel(str, Enum):
    """Advisory isolation level of a transaction.

    The engine does not lock anything. Callers use this value to decide how
    aggressively transactions may run concurrently against the same external
    working state.
    """

    READ_UNCOMMITTED = "read-uncommitted"
    READ_COMMITTED = "read-committed"
    REPEATABLE_READ = "repeatable-read"
    SERIALIZABLE = "serializable"

    def __str__(self) -> str:
        return self.value


class EventType(str, Enum):
    """Events published when a transaction reaches a terminal outcome."""

    TRANSACTION_COMMITTED = "TransactionCommitted"
    TRANSACTION_ROLLED_BACK = "TransactionRolledBack"
    TRANSACTION_FAILED = "TransactionFailed"

    def __str__(self) -> str:
        return self.value
