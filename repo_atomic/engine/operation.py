"""
Operations: one external side effect paired with its inverse.

An ``Operation`` is the atomic unit the transaction coordinator schedules and
can undo. It is an explicit value object: the forward ``action``, the
``inverse`` and the optional ``post_condition`` are zero-argument callables
whose context is bound up front (usually a ``functools.partial`` over an
adapter method), so an operation never depends on caller-local state.

Contract:
    - ``execute()`` captures ``pre_state``, runs the action under the
      operation's retry policy, and on success captures ``post_state`` and
      sets ``completed``. On failure it records ``last_error`` and returns a
      failed result. It never rolls itself back; reverse-order rollback
      across operations is the coordinator's job.
    - ``rollback()`` runs the inverse and never raises. It may be called
      when ``execute()`` never ran or failed midway, so inverses must
      tolerate a no-op starting state. Once an inverse has succeeded, later
      calls return success without invoking it again.
    - ``validate()`` runs the post-condition, if any. A falsy return value
      or an exception is a failure.

An inverse may return a non-empty string to report that it could only
partially compensate (closing a pull request instead of deleting it, or a
provisioning change set it could not scope). The rollback still counts as
successful and the text is surfaced as a warning in the audit trail.

Example:
    >>> from functools import partial
    >>> op = Operation(
    ...     id="create-branch",
    ...     action=partial(repo.create_branch, "fix/42"),
    ...     inverse=partial(repo.delete_branch, "fix/42"),
    ...     kind=OperationKind.VERSION_CONTROL,
    ...     description="Create working branch fix/42",
    ...     post_condition=partial(repo.branch_exists, "fix/42"),
    ... )
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from repo_atomic.engine.snapshot import SnapshotCapturer, SystemSnapshot
from repo_atomic.enums import OperationKind, RetryPolicy
from repo_atomic.exceptions import OperationError, PostConditionError
from repo_atomic.utils.retry import call_with_retry

log = structlog.get_logger(__name__)

__all__ = ["Operation", "OperationResult", "RetryPolicy"]


@dataclass
class OperationResult:
    """Outcome of one ``execute()``, ``rollback()`` or ``validate()`` call.

    Attributes:
        operation_id: Operation the result belongs to.
        success: Whether the call succeeded.
        error: Exception raised by the callable, if it failed.
        warning: Degraded-rollback text returned by an inverse, if any.
        attempts: Number of times the callable was invoked.
        duration: Wall-clock seconds spent in the call.
    """

    operation_id: str
    success: bool
    error: BaseException | None = None
    warning: str | None = None
    attempts: int = 0
    duration: float = 0.0

    def __bool__(self) -> bool:
        return self.success


@dataclass(eq=False)
class Operation:
    """A named side effect with an inverse and an optional verification.

    Attributes:
        id: Identifier, unique within a transaction.
        action: Forward side effect. Its return value is kept in ``result``.
        inverse: Best-effort, idempotent undo of ``action``.
        kind: External system touched; selects the default retry policy.
        description: Human-readable intent.
        post_condition: Optional predicate verifying the side effect.
        pre_condition: Optional predicate checked by ``prepare()`` before
            anything runs (tool installed, branch absent, ...).
        dependencies: Ids of operations that must complete first.
        retry_policy: Overrides ``kind.default_policy()`` when given.
        pre_state: Snapshot captured before the action ran.
        post_state: Snapshot captured after the action succeeded.
        attempted: ``execute()`` has been called.
        completed: The action succeeded.
        rolled_back: The inverse succeeded after the action completed.
        last_error: Most recent failure of action, inverse or post-condition.
        rollback_error: Failure of the most recent inverse invocation.
        rollback_warning: Degraded-rollback text returned by the inverse.
        result: Return value of the action.
        attempts: Number of action invocations.
        duration: Seconds spent in the action, including retries.
    """

    id: str
    action: Callable[[], Any]
    inverse: Callable[[], Any]
    kind: OperationKind = OperationKind.PROCESS_EXECUTION
    description: str = ""
    post_condition: Callable[[], Any] | None = None
    pre_condition: Callable[[], Any] | None = None
    dependencies: set[str] = field(default_factory=set)
    retry_policy: RetryPolicy | None = None

    pre_state: SystemSnapshot | None = field(default=None, init=False)
    post_state: SystemSnapshot | None = field(default=None, init=False)
    attempted: bool = field(default=False, init=False)
    completed: bool = field(default=False, init=False)
    rolled_back: bool = field(default=False, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    rollback_error: BaseException | None = field(default=None, init=False)
    rollback_warning: str | None = field(default=None, init=False)
    result: Any = field(default=None, init=False)
    attempts: int = field(default=0, init=False)
    duration: float = field(default=0.0, init=False)
    _inverse_applied: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("Operation id must be a non-empty string")
        if not callable(self.action) or not callable(self.inverse):
            raise TypeError(f"Operation '{self.id}' requires callable action and inverse")
        if self.post_condition is not None and not callable(self.post_condition):
            raise TypeError(f"Operation '{self.id}' post_condition must be callable")
        if self.pre_condition is not None and not callable(self.pre_condition):
            raise TypeError(f"Operation '{self.id}' pre_condition must be callable")
        self.kind = OperationKind(self.kind)
        self.dependencies = set(_as_iterable(self.dependencies))
        if self.id in self.dependencies:
            raise ValueError(f"Operation '{self.id}' cannot depend on itself")

    @property
    def policy(self) -> RetryPolicy:
        """Effective retry policy for the forward action."""
        return self.retry_policy or self.kind.default_policy()

    def execute(self, capturer: SnapshotCapturer | None = None) -> OperationResult:
        """Run the forward action, capturing state around it.

        Args:
            capturer: Snapshot capturer for ``pre_state``/``post_state``.
                A capturer without a state source is used when omitted.

        Returns:
            OperationResult describing the outcome. Never raises for a
            failing action.
        """
        if self.completed:
            log.debug("operation_already_completed", operation_id=self.id)
            return OperationResult(self.id, success=True, attempts=0)

        capturer = capturer or SnapshotCapturer()
        self.attempted = True
        self.pre_state = capturer.capture()
        policy = self.policy

        log.info(
            "operation_started",
            operation_id=self.id,
            kind=str(self.kind),
            description=self.description,
            max_attempts=policy.max_attempts,
        )

        def invoke() -> Any:
            self.attempts += 1
            return self.action()

        invoke.__name__ = self.id

        start = time.monotonic()
        try:
            value = call_with_retry(
                invoke,
                max_attempts=policy.max_attempts,
                backoff_factor=policy.backoff_factor,
            )
        except Exception as e:
            self.duration = time.monotonic() - start
            self.last_error = e
            self.completed = False
            log.error(
                "operation_failed",
                operation_id=self.id,
                attempts=self.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            return OperationResult(self.id, success=False, error=e, attempts=self.attempts, duration=self.duration)

        self.duration = time.monotonic() - start
        self.result = value
        self.post_state = capturer.capture()
        self.completed = True
        self.last_error = None
        log.info("operation_completed", operation_id=self.id, attempts=self.attempts, duration=self.duration)
        return OperationResult(self.id, success=True, attempts=self.attempts, duration=self.duration)

    def rollback(self) -> OperationResult:
        """Run the inverse action. Never raises.

        Returns:
            OperationResult; a failed inverse is recorded in
            ``rollback_error`` and ``last_error`` and reported here.
        """
        if self._inverse_applied:
            log.debug("operation_rollback_skipped", operation_id=self.id, reason="already_rolled_back")
            return OperationResult(self.id, success=True, warning=self.rollback_warning)

        was_completed = self.completed
        start = time.monotonic()
        try:
            outcome = self.inverse()
        except Exception as e:
            self.rollback_error = e
            self.last_error = e
            log.error(
                "operation_rollback_failed",
                operation_id=self.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return OperationResult(self.id, success=False, error=e, attempts=1, duration=time.monotonic() - start)

        self._inverse_applied = True
        self.rollback_error = None
        self.rolled_back = was_completed
        if isinstance(outcome, str) and outcome.strip():
            self.rollback_warning = outcome.strip()
            log.warning("operation_rollback_degraded", operation_id=self.id, warning=self.rollback_warning)
        else:
            log.info("operation_rolled_back", operation_id=self.id)
        return OperationResult(
            self.id,
            success=True,
            warning=self.rollback_warning,
            attempts=1,
            duration=time.monotonic() - start,
        )

    def precheck(self) -> OperationResult:
        """Run the pre-condition, if one was given. Never raises.

        Called once by ``Transaction.prepare()`` before any operation runs.
        """
        if self.pre_condition is None:
            return OperationResult(self.id, success=True)

        try:
            holds = bool(self.pre_condition())
        except Exception as e:
            log.warning("operation_precheck_failed", operation_id=self.id, error=str(e))
            return OperationResult(self.id, success=False, error=e, attempts=1)

        if not holds:
            log.warning("operation_precheck_failed", operation_id=self.id, error="pre-condition did not hold")
            return OperationResult(
                self.id,
                success=False,
                error=OperationError("Pre-condition did not hold", operation_id=self.id),
                attempts=1,
            )
        return OperationResult(self.id, success=True, attempts=1)

    def validate(self) -> OperationResult:
        """Run the post-condition, if one was given. Never raises."""
        if self.post_condition is None:
            return OperationResult(self.id, success=True)

        start = time.monotonic()
        try:
            holds = bool(self.post_condition())
        except Exception as e:
            error = PostConditionError(f"Post-condition raised {type(e).__name__}: {e}", operation_id=self.id)
            error.__cause__ = e
            self.last_error = error
            log.warning("operation_validation_failed", operation_id=self.id, error=str(e))
            return OperationResult(self.id, success=False, error=error, attempts=1, duration=time.monotonic() - start)

        if not holds:
            error = PostConditionError("Post-condition did not hold", operation_id=self.id)
            self.last_error = error
            log.warning("operation_validation_failed", operation_id=self.id, error=error.message)
            return OperationResult(self.id, success=False, error=error, attempts=1, duration=time.monotonic() - start)

        return OperationResult(self.id, success=True, attempts=1, duration=time.monotonic() - start)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the operation's identity and outcome for reports."""
        return {
            "id": self.id,
            "kind": str(self.kind),
            "description": self.description,
            "dependencies": sorted(self.dependencies),
            "attempted": self.attempted,
            "completed": self.completed,
            "rolled_back": self.rolled_back,
            "attempts": self.attempts,
            "duration": round(self.duration, 6),
            "last_error": _describe(self.last_error),
            "rollback_error": _describe(self.rollback_error),
            "rollback_warning": self.rollback_warning,
            "pre_state": self.pre_state.to_dict() if self.pre_state else None,
            "post_state": self.post_state.to_dict() if self.post_state else None,
        }


def _as_iterable(value: Iterable[str] | str | None) -> Iterable[str]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return value


def _describe(error: BaseException | None) -> str | None:
    if error is None:
        return None
    if isinstance(error, OperationError):
        return error.message
    return f"{type(error).__name__}: {error}"
