"""
Dependency validation and execution ordering for transaction operations.

Dependencies are a small set of operation ids per operation, so ordering is a
single repeated pass: on each round the earliest operation (by insertion
order) whose dependencies are all placed is appended to the order. Ties are
therefore broken by insertion order, which keeps audit trails reproducible
between runs of the same transaction.

An operation that can never be placed, because it depends on an id outside
the transaction or sits on a dependency cycle, rejects the whole
transaction with a ``DependencyError`` naming the offending operation.

Example:
    >>> resolver = DependencyResolver()
    >>> order = resolver.resolve([commit, branch])  # commit depends on branch
    >>> [op.id for op in order]
    ['create-branch', 'commit-changes']
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from repo_atomic.exceptions import DependencyError, ValidationError

if TYPE_CHECKING:
    from repo_atomic.engine.operation import Operation

log = structlog.get_logger(__name__)


class DependencyResolver:
    """Validate operation dependencies and compute an execution order."""

    def validate(self, operations: Sequence[Operation]) -> None:
        """Check ids are unique and every dependency names a known operation.

        Args:
            operations: Operations in insertion order.

        Raises:
            ValidationError: If two operations share an id.
            DependencyError: If a dependency names an id not in
                ``operations``.
        """
        seen: set[str] = set()
        for operation in operations:
            if operation.id in seen:
                raise ValidationError(f"Duplicate operation id '{operation.id}'", operation_id=operation.id)
            seen.add(operation.id)

        for operation in operations:
            missing = sorted(operation.dependencies - seen)
            if missing:
                raise DependencyError(
                    f"Operation '{operation.id}' depends on unknown operation(s): {', '.join(missing)}",
                    operation_id=operation.id,
                )

    def resolve(self, operations: Sequence[Operation]) -> list[Operation]:
        """Return the operations in a valid execution order.

        Every operation appears after all operations it depends on. Among
        operations that are ready at the same time, the one added first runs
        first.

        Args:
            operations: Operations in insertion order.

        Returns:
            New list with the operations in execution order.

        Raises:
            ValidationError: If ids are duplicated.
            DependencyError: If a dependency is unknown or dependencies form
                a cycle.
        """
        self.validate(operations)

        pending = list(operations)
        placed: set[str] = set()
        order: list[Operation] = []

        while pending:
            ready = next((op for op in pending if op.dependencies <= placed), None)
            if ready is None:
                # Nothing is placeable: every remaining operation waits on another remaining one.
                blocked = pending[0]
                unmet = sorted(blocked.dependencies - placed)
                log.error(
                    "dependency_cycle_detected",
                    operation_id=blocked.id,
                    remaining=[op.id for op in pending],
                )
                raise DependencyError(
                    f"Operation '{blocked.id}' cannot be scheduled: dependency cycle through {', '.join(unmet)}",
                    operation_id=blocked.id,
                )
            pending.remove(ready)
            placed.add(ready.id)
            order.append(ready)

        return order
