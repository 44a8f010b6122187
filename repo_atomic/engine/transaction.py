"""
Transaction coordinator: atomic execution of external side effects.

A ``Transaction`` groups operations against non-transactional external
systems (a git working tree, a code-hosting API, a provisioning binary) into
one logical unit. It moves through Prepare -> Execute -> Commit and, when
anything fails, rolls back saga-style: the inverse of every completed
operation runs in reverse completion order, the way a stack unwinds.

State Machine:
    ::

        Initializing --add_operation()--> Initializing
        Initializing --prepare()--> Prepared | Failed
        Prepared --execute()--> Executing
        Executing --(all operations succeed)--> Committing --> Committed
        Executing --(an operation fails)--> RollingBack
        Committing --(final validation fails)--> RollingBack
        RollingBack --(all inverses ran)--> RolledBack | Failed
        Failed --rollback()--> RollingBack   (operator retries a partial rollback)
        Initializing | Prepared --abort()--> Aborted

    ``Committed``, ``RolledBack`` and ``Aborted`` are terminal: every
    mutation is rejected afterwards. Without auto-commit, a transaction whose
    operations all succeeded waits in ``Executing`` with
    ``awaiting_commit`` set until ``commit()`` or ``rollback()`` is called.

Error Handling:
    ``prepare()``, ``execute()``, ``commit()`` and ``rollback()`` never raise
    for operation failures. Every failure is captured in ``last_error`` and
    converted into a terminal state plus an audit trail. A rollback in which
    any inverse failed ends in ``Failed`` with a ``RollbackError`` listing the
    operations that could not be undone; a human has to repair those
    systems. Calling a lifecycle method from a state that does not allow it
    raises ``InvalidStateTransitionError``, and ``add_operation()`` raises
    ``ValidationError``; both are caller programming errors.

Concurrency Model:
    Operations run strictly sequentially on the calling thread and every
    callable blocks. ``isolation_level`` and ``timeout`` are advisory: the
    engine takes no locks and never preempts an operation. Callers must
    serialize transactions that touch the same working tree or remote
    resource.

Example:
    >>> txn = Transaction("Patch: fix login redirect")
    >>> txn.add_operation(create_branch_op)
    >>> txn.add_operation(commit_op)  # depends on create_branch_op
    >>> txn.prepare()
    <TransactionState.PREPARED: 'prepared'>
    >>> txn.execute()
    <TransactionState.COMMITTED: 'committed'>
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any

import structlog

from repo_atomic.engine.audit import AuditTrail
from repo_atomic.engine.events import EventEmitter, TransactionEvent
from repo_atomic.engine.operation import Operation
from repo_atomic.engine.resolver import DependencyResolver
from repo_atomic.engine.snapshot import SnapshotCapturer
from repo_atomic.enums import EventType, IsolationLevel, TransactionState
from repo_atomic.exceptions import (
    InvalidStateTransitionError,
    OperationError,
    OperationLimitError,
    RollbackError,
    TransactionError,
    ValidationError,
)

log = structlog.get_logger(__name__)

DEFAULT_MAX_OPERATIONS = 100
DEFAULT_TIMEOUT = timedelta(minutes=30)

_S = TransactionState

ALLOWED_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    _S.INITIALIZING: frozenset({_S.PREPARED, _S.FAILED, _S.ABORTED}),
    _S.PREPARED: frozenset({_S.EXECUTING, _S.ABORTED}),
    _S.EXECUTING: frozenset({_S.COMMITTING, _S.ROLLING_BACK}),
    _S.COMMITTING: frozenset({_S.COMMITTED, _S.ROLLING_BACK}),
    _S.ROLLING_BACK: frozenset({_S.ROLLED_BACK, _S.FAILED}),
    _S.FAILED: frozenset({_S.ROLLING_BACK}),
    _S.COMMITTED: frozenset(),
    _S.ROLLED_BACK: frozenset(),
    _S.ABORTED: frozenset(),
}


@dataclass
class TransactionMetrics:
    """Counters describing one transaction run.

    Attributes:
        total_ops: Operations added to the transaction.
        succeeded: Operations whose action and post-condition succeeded.
        failed: Operations whose action or post-condition failed.
        rolled_back: Inverses that ran successfully.
        rollback_failed: Inverses that failed.
        duration: Seconds from ``execute()`` to the terminal outcome.
    """

    total_ops: int = 0
    succeeded: int = 0
    failed: int = 0
    rolled_back: int = 0
    rollback_failed: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["duration"] = round(self.duration, 6)
        return data


@dataclass
class TransactionReport:
    """Everything a caller needs to present or persist a transaction outcome.

    The engine keeps nothing beyond the life of the process; callers that
    want durability serialize this report (``to_json()``) to their own
    storage.
    """

    transaction_id: str
    description: str
    state: TransactionState
    isolation_level: IsolationLevel
    auto_commit: bool
    timeout_seconds: float
    error: str | None
    metrics: dict[str, Any]
    audit_trail: list[str]
    operations: list[dict[str, Any]]
    rollback_failures: list[dict[str, str]] = field(default_factory=list)
    rollback_warnings: list[dict[str, str]] = field(default_factory=list)
    created_at: str | None = None
    finished_at: str | None = None

    @property
    def requires_intervention(self) -> bool:
        """True when automated rollback could not repair the external systems."""
        return self.state == TransactionState.FAILED and bool(self.rollback_failures)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = str(self.state)
        data["isolation_level"] = str(self.isolation_level)
        data["requires_intervention"] = self.requires_intervention
        return data

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


class Transaction:
    """State machine executing operations as one all-or-nothing unit.

    Attributes:
        id: Transaction identifier (caller-supplied or generated).
        description: Human-readable purpose.
        state: Current ``TransactionState``.
        operations: Operations in insertion order.
        isolation_level: Advisory ``IsolationLevel``.
        auto_commit: Commit immediately when every operation succeeds.
        max_operations: Ceiling on ``len(operations)``.
        timeout: Advisory deadline for the whole transaction.
        audit: Append-only ``AuditTrail``.
        metrics: ``TransactionMetrics`` for the run.
        last_error: Error that drove the transaction to its current outcome.
        awaiting_commit: All operations succeeded and ``commit()`` is pending.
    """

    def __init__(
        self,
        description: str,
        *,
        transaction_id: str | None = None,
        max_operations: int = DEFAULT_MAX_OPERATIONS,
        isolation_level: IsolationLevel | str = IsolationLevel.READ_COMMITTED,
        auto_commit: bool = True,
        timeout: timedelta | float = DEFAULT_TIMEOUT,
        capturer: SnapshotCapturer | None = None,
        emitter: EventEmitter | None = None,
        resolver: DependencyResolver | None = None,
    ) -> None:
        """Create a transaction in the ``Initializing`` state.

        Args:
            description: Human-readable purpose, used in events and reports.
            transaction_id: Identifier to use; a random one is generated
                when omitted.
            max_operations: Maximum number of operations that may be added.
            isolation_level: Advisory isolation level.
            auto_commit: Commit as soon as every operation succeeds. When
                False, ``execute()`` stops with ``awaiting_commit`` set.
            timeout: Advisory deadline, as a timedelta or seconds.
            capturer: Snapshot capturer used around each operation.
            emitter: Event emitter for terminal outcomes. A private emitter
                with no subscribers is used when omitted.
            resolver: Dependency resolver (injectable for tests).
        """
        if max_operations < 1:
            raise ValueError("max_operations must be at least 1")

        self.id = transaction_id or f"txn-{uuid.uuid4().hex[:12]}"
        self.description = description
        self.state = TransactionState.INITIALIZING
        self.operations: list[Operation] = []
        self.isolation_level = IsolationLevel(isolation_level)
        self.auto_commit = auto_commit
        self.max_operations = max_operations
        self.timeout = timeout if isinstance(timeout, timedelta) else timedelta(seconds=timeout)
        self.capturer = capturer or SnapshotCapturer()
        self.emitter = emitter or EventEmitter()
        self.audit = AuditTrail()
        self.metrics = TransactionMetrics()
        self.last_error: BaseException | None = None
        self.awaiting_commit = False
        self.created_at = datetime.now(UTC)
        self.finished_at: datetime | None = None

        self._resolver = resolver or DependencyResolver()
        self._execution_order: list[Operation] = []
        self._completion_order: list[Operation] = []
        self._rollback_failures: list[tuple[str, BaseException]] = []
        self._rollback_warnings: list[tuple[str, str]] = []
        self._started_monotonic: float | None = None

        self.audit.record("state", f"transaction created in {self.state} ({description})")

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add_operation(self, operation: Operation) -> Operation:
        """Append an operation. Only allowed while ``Initializing``.

        Args:
            operation: Operation to add.

        Returns:
            The operation, for chaining.

        Raises:
            ValidationError: If the transaction is past ``Initializing`` or
                the id is already used.
            OperationLimitError: If ``max_operations`` would be exceeded.
        """
        if self.state != TransactionState.INITIALIZING:
            raise ValidationError(
                f"Cannot add operation '{operation.id}' while transaction is {self.state}",
                operation_id=operation.id,
                transaction_id=self.id,
            )
        if len(self.operations) >= self.max_operations:
            raise OperationLimitError(
                f"Cannot add operation '{operation.id}': limit of {self.max_operations} operations reached",
                operation_id=operation.id,
                transaction_id=self.id,
            )
        if any(existing.id == operation.id for existing in self.operations):
            raise ValidationError(
                f"Duplicate operation id '{operation.id}'",
                operation_id=operation.id,
                transaction_id=self.id,
            )

        self.operations.append(operation)
        self.metrics.total_ops = len(self.operations)
        log.debug("operation_added", transaction_id=self.id, operation_id=operation.id, kind=str(operation.kind))
        return operation

    def get_operation(self, operation_id: str) -> Operation:
        for operation in self.operations:
            if operation.id == operation_id:
                return operation
        raise KeyError(operation_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self) -> TransactionState:
        """Validate dependencies and run pre-flight checks.

        Moves to ``Prepared`` on success. A dangling or cyclic dependency, or
        a failed pre-condition, stores the error in ``last_error`` and moves
        to ``Failed``; nothing is executed.

        Raises:
            InvalidStateTransitionError: If not ``Initializing``.
        """
        self._require(TransactionState.INITIALIZING, "prepare")
        with structlog.contextvars.bound_contextvars(transaction_id=self.id):
            try:
                order = self._resolver.resolve(self.operations)
            except ValidationError as e:
                e.transaction_id = self.id
                self.last_error = e
                self.audit.record("validation", f"rejected: {e.message}")
                self._transition(TransactionState.FAILED, e.message)
                return self.state

            for operation in self.operations:
                deps = ", ".join(sorted(operation.dependencies)) or "none"
                self.audit.record(
                    "operation",
                    f"registered {operation.id} ({operation.kind}, depends on: {deps}): {operation.description}",
                )

            for operation in order:
                check = operation.precheck()
                if not check.success:
                    error = ValidationError(
                        f"Pre-flight check failed for operation '{operation.id}': {check.error}",
                        operation_id=operation.id,
                        transaction_id=self.id,
                    )
                    error.__cause__ = check.error
                    self.last_error = error
                    self.audit.record("validation", error.message)
                    self._transition(TransactionState.FAILED, error.message)
                    return self.state

            self._execution_order = order
            self._transition(
                TransactionState.PREPARED,
                f"execution order: {', '.join(op.id for op in order) or '(empty)'}",
            )
            return self.state

    def execute(self) -> TransactionState:
        """Run every operation in dependency order.

        On success commits (auto-commit) or waits for ``commit()``. The first
        failing action or post-condition drives the transaction into
        rollback. Never raises for operation failures.

        Raises:
            InvalidStateTransitionError: If not ``Prepared``.
        """
        self._require(TransactionState.PREPARED, "execute")
        with structlog.contextvars.bound_contextvars(transaction_id=self.id):
            self._started_monotonic = time.monotonic()
            self._transition(TransactionState.EXECUTING)

            completed_ids: set[str] = set()
            failure: BaseException | None = None
            force_failed = False
            try:
                for operation in self._execution_order:
                    unmet = operation.dependencies - completed_ids
                    if unmet:
                        failure = TransactionError(
                            f"Scheduling invariant violated: '{operation.id}' reached before "
                            f"{', '.join(sorted(unmet))} completed",
                            transaction_id=self.id,
                        )
                        force_failed = True
                        log.critical("scheduling_invariant_violated", operation_id=operation.id, unmet=sorted(unmet))
                        break

                    result = operation.execute(self.capturer)
                    if not result.success:
                        self.metrics.failed += 1
                        failure = OperationError(
                            f"Operation failed: {_error_text(result.error)}", operation_id=operation.id
                        )
                        failure.__cause__ = result.error
                        self.audit.record("operation", f"{operation.id} failed: {_error_text(result.error)}")
                        break

                    self._completion_order.append(operation)
                    check = operation.validate()
                    if not check.success:
                        self.metrics.failed += 1
                        failure = check.error
                        self.audit.record(
                            "operation", f"{operation.id} post-condition failed: {_error_text(check.error)}"
                        )
                        break

                    self.metrics.succeeded += 1
                    completed_ids.add(operation.id)
                    self.audit.record(
                        "operation",
                        f"{operation.id} completed (attempts={operation.attempts}, {operation.duration:.3f}s)",
                    )
            except Exception as e:
                # Failures outside operation callables (snapshot source, custom resolver, ...)
                log.error("transaction_execution_error", error=str(e), exc_info=True)
                self.audit.record("error", f"unexpected error during execution: {_error_text(e)}")
                failure = e

            if failure is not None:
                return self._rollback_sweep(failure, force_failed=force_failed)

            if self.auto_commit:
                return self._commit()

            self.awaiting_commit = True
            self.audit.record("state", "all operations succeeded; awaiting commit")
            log.info("transaction_awaiting_commit", succeeded=self.metrics.succeeded)
            return self.state

    def commit(self) -> TransactionState:
        """Finalize a transaction waiting for an explicit commit.

        Re-validates every completed operation; any failed post-condition
        routes to rollback instead of committing.

        Raises:
            InvalidStateTransitionError: If the transaction is not waiting
                for a commit.
        """
        if not (self.state == TransactionState.EXECUTING and self.awaiting_commit):
            raise InvalidStateTransitionError(
                f"Cannot commit transaction in state {self.state}",
                from_state=self.state,
                to_state=TransactionState.COMMITTING,
                transaction_id=self.id,
            )
        with structlog.contextvars.bound_contextvars(transaction_id=self.id):
            return self._commit()

    def rollback(self, reason: BaseException | str | None = None) -> TransactionState:
        """Undo every completed operation in reverse completion order.

        Valid while ``Executing`` (typically to discard a transaction waiting
        for commit) and from ``Failed`` when an earlier rollback left
        operations un-undone. Never raises for inverse failures.

        Args:
            reason: Why the caller is rolling back; kept in ``last_error``.

        Raises:
            InvalidStateTransitionError: From any other state, or from
                ``Failed`` when no operation was ever attempted.
        """
        if self.state == TransactionState.FAILED:
            if not any(op.attempted for op in self.operations):
                raise InvalidStateTransitionError(
                    "Cannot roll back a transaction that never executed an operation",
                    from_state=self.state,
                    to_state=TransactionState.ROLLING_BACK,
                    transaction_id=self.id,
                )
        elif self.state != TransactionState.EXECUTING:
            raise InvalidStateTransitionError(
                f"Cannot roll back transaction in state {self.state}",
                from_state=self.state,
                to_state=TransactionState.ROLLING_BACK,
                transaction_id=self.id,
            )

        if isinstance(reason, str):
            reason = TransactionError(reason, transaction_id=self.id)
        if reason is None and self.state == TransactionState.FAILED and isinstance(self.last_error, RollbackError):
            reason = self.last_error.reason
        with structlog.contextvars.bound_contextvars(transaction_id=self.id):
            return self._rollback_sweep(reason)

    def abort(self, reason: str | None = None) -> TransactionState:
        """Cancel a transaction before anything has executed.

        Raises:
            InvalidStateTransitionError: If execution has started.
        """
        if self.state not in (TransactionState.INITIALIZING, TransactionState.PREPARED):
            raise InvalidStateTransitionError(
                f"Cannot abort transaction in state {self.state}; execution has started",
                from_state=self.state,
                to_state=TransactionState.ABORTED,
                transaction_id=self.id,
            )
        with structlog.contextvars.bound_contextvars(transaction_id=self.id):
            if reason:
                self.last_error = TransactionError(f"Aborted: {reason}", transaction_id=self.id)
            self._finish()
            self._transition(TransactionState.ABORTED, reason)
            return self.state

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def execution_order(self) -> list[str]:
        """Operation ids in the order ``execute()`` runs them (after prepare)."""
        return [op.id for op in self._execution_order]

    @property
    def rollback_failures(self) -> list[tuple[str, BaseException]]:
        return list(self._rollback_failures)

    @property
    def elapsed(self) -> float:
        """Seconds since ``execute()`` started (0 before it)."""
        if self._started_monotonic is None:
            return 0.0
        if self.state.is_finished:
            return self.metrics.duration
        return time.monotonic() - self._started_monotonic

    def is_overdue(self) -> bool:
        """Check the advisory timeout. The engine itself never enforces it."""
        return self.elapsed > self.timeout.total_seconds()

    def report(self) -> TransactionReport:
        """Build a ``TransactionReport`` for presentation or persistence."""
        return TransactionReport(
            transaction_id=self.id,
            description=self.description,
            state=self.state,
            isolation_level=self.isolation_level,
            auto_commit=self.auto_commit,
            timeout_seconds=self.timeout.total_seconds(),
            error=_error_text(self.last_error) if self.last_error else None,
            metrics=self.metrics.to_dict(),
            audit_trail=list(self.audit.entries),
            operations=[op.to_dict() for op in self.operations],
            rollback_failures=[
                {"operation_id": op_id, "status": "rollback failed", "error": _error_text(err)}
                for op_id, err in self._rollback_failures
            ],
            rollback_warnings=[{"operation_id": op_id, "warning": text} for op_id, text in self._rollback_warnings],
            created_at=self.created_at.isoformat(),
            finished_at=self.finished_at.isoformat() if self.finished_at else None,
        )

    def __repr__(self) -> str:
        return f"Transaction(id={self.id!r}, state={self.state.value!r}, operations={len(self.operations)})"

    def __enter__(self) -> Transaction:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc is None or self.state.is_finished:
            return False
        if self.state in (TransactionState.INITIALIZING, TransactionState.PREPARED):
            self.abort(f"{type(exc).__name__}: {exc}")
        elif self.state == TransactionState.EXECUTING:
            self.rollback(exc)
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self) -> TransactionState:
        self.awaiting_commit = False
        self._transition(TransactionState.COMMITTING)

        for operation in self._completion_order:
            check = operation.validate()
            if not check.success:
                self.audit.record(
                    "operation",
                    f"{operation.id} failed final validation: {_error_text(check.error)}",
                )
                return self._rollback_sweep(check.error)

        self._finish()
        self._transition(TransactionState.COMMITTED)
        self._publish(EventType.TRANSACTION_COMMITTED)
        return self.state

    def _rollback_sweep(self, reason: BaseException | None, force_failed: bool = False) -> TransactionState:
        self.awaiting_commit = False
        if reason is not None:
            self.last_error = reason
        self._transition(TransactionState.ROLLING_BACK, _error_text(reason) if reason else None)

        targets = [op for op in reversed(self._completion_order) if not op.rolled_back]
        failures: list[tuple[str, BaseException]] = []

        for operation in targets:
            result = operation.rollback()
            if result.success:
                self.metrics.rolled_back += 1
                if result.warning:
                    self._rollback_warnings.append((operation.id, result.warning))
                    self.audit.record("rollback", f"{operation.id} rolled back with warning: {result.warning}")
                else:
                    self.audit.record("rollback", f"{operation.id} rolled back")
            else:
                failures.append((operation.id, result.error or RuntimeError("inverse failed")))
                self.audit.record("rollback", f"{operation.id} rollback failed: {_error_text(result.error)}")

        self._rollback_failures = failures
        self.metrics.rollback_failed = len(failures)
        self._finish()

        if failures:
            ids = ", ".join(op_id for op_id, _ in failures)
            self.last_error = RollbackError(
                f"Rollback incomplete; manual intervention required for: {ids}",
                failures=failures,
                reason=reason,
                transaction_id=self.id,
            )
            self._transition(TransactionState.FAILED, self.last_error.message)
            self._publish(EventType.TRANSACTION_FAILED, reason=self.last_error)
            return self.state

        if force_failed:
            self._transition(TransactionState.FAILED, "rolled back after scheduling failure")
            self._publish(EventType.TRANSACTION_FAILED, reason=reason)
            return self.state

        self._transition(TransactionState.ROLLED_BACK)
        self._publish(EventType.TRANSACTION_ROLLED_BACK, reason=reason)
        return self.state

    def _transition(self, to_state: TransactionState, note: str | None = None) -> None:
        from_state = self.state
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidStateTransitionError(
                f"Illegal transition {from_state} -> {to_state}",
                from_state=from_state,
                to_state=to_state,
                transaction_id=self.id,
            )
        self.state = to_state
        message = f"{from_state} -> {to_state}"
        if note:
            message = f"{message} ({note})"
        self.audit.record("state", message)

        level = "warning" if to_state in (TransactionState.FAILED, TransactionState.ROLLING_BACK) else "info"
        getattr(log, level)(
            "transaction_state_changed",
            transaction_id=self.id,
            from_state=str(from_state),
            to_state=str(to_state),
            note=note,
        )

    def _require(self, state: TransactionState, action: str) -> None:
        if self.state != state:
            raise InvalidStateTransitionError(
                f"Cannot {action} transaction in state {self.state}",
                from_state=self.state,
                transaction_id=self.id,
            )

    def _finish(self) -> None:
        self.finished_at = datetime.now(UTC)
        if self._started_monotonic is not None:
            self.metrics.duration = time.monotonic() - self._started_monotonic

    def _publish(self, event_type: EventType, reason: BaseException | None = None) -> None:
        self.emitter.publish(
            TransactionEvent(
                event_type=event_type,
                transaction_id=self.id,
                description=self.description,
                state=self.state,
                metrics=self.metrics.to_dict(),
                duration=self.metrics.duration,
                reason=_error_text(reason) if reason else None,
            )
        )


def _error_text(error: BaseException | None) -> str:
    if error is None:
        return "unknown error"
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return f"{type(error).__name__}: {error}"
