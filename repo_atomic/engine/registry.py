"""
Explicit registry of the transactions owned by one workflow.

``TransactionRegistry`` is created by the calling workflow (the CLI, a test,
a long-running service) and passed to whatever builds transactions. It
creates transactions with shared defaults and a shared ``EventEmitter``,
tracks the ones still in flight, and keeps a bounded history of finished
ones. Independent workflows own independent registries, so no state is
shared between them.

Example:
    >>> with TransactionRegistry(max_operations=20) as registry:
    ...     txn = registry.create("Release 1.4.0")
    ...     ...
    ...     registry.dispose(txn.id)
    >>> [t.id for t in registry.history()]
    ['txn-3f2a9c1b7d4e']
"""

from __future__ import annotations

from collections import OrderedDict, deque
from types import TracebackType
from typing import Any

import structlog

from repo_atomic.engine.events import EventEmitter
from repo_atomic.engine.transaction import Transaction
from repo_atomic.enums import TransactionState
from repo_atomic.exceptions import TransactionError

log = structlog.get_logger(__name__)


class TransactionRegistry:
    """Create, track and dispose of transactions for one workflow.

    Attributes:
        emitter: Event emitter shared by every transaction created here.
        max_history: Number of disposed transactions retained.
    """

    def __init__(
        self,
        max_history: int = 50,
        emitter: EventEmitter | None = None,
        **transaction_defaults: Any,
    ) -> None:
        """Initialize the registry.

        Args:
            max_history: Number of disposed transactions to retain.
            emitter: Event emitter to share; a new one is created if omitted.
            **transaction_defaults: Keyword arguments passed to every
                ``Transaction`` created (``max_operations``,
                ``isolation_level``, ``auto_commit``, ``timeout``,
                ``capturer``).
        """
        if max_history < 0:
            raise ValueError("max_history must not be negative")
        self.emitter = emitter or EventEmitter()
        self.max_history = max_history
        self._defaults = transaction_defaults
        self._active: OrderedDict[str, Transaction] = OrderedDict()
        self._history: deque[Transaction] = deque(maxlen=max_history)

    def create(self, description: str, **overrides: Any) -> Transaction:
        """Create and track a new transaction.

        Args:
            description: Transaction description.
            **overrides: Per-transaction keyword arguments overriding the
                registry defaults.

        Raises:
            TransactionError: If ``transaction_id`` is already tracked.
        """
        options = {**self._defaults, **overrides}
        options.setdefault("emitter", self.emitter)
        transaction = Transaction(description, **options)
        if transaction.id in self._active:
            raise TransactionError("Transaction id already in use", transaction_id=transaction.id)
        self._active[transaction.id] = transaction
        log.debug("transaction_registered", transaction_id=transaction.id, description=description)
        return transaction

    def get(self, transaction_id: str) -> Transaction:
        """Find a transaction, active or in history.

        Raises:
            KeyError: If the id is unknown.
        """
        if transaction_id in self._active:
            return self._active[transaction_id]
        for transaction in self._history:
            if transaction.id == transaction_id:
                return transaction
        raise KeyError(transaction_id)

    def active(self) -> list[Transaction]:
        return list(self._active.values())

    def history(self) -> list[Transaction]:
        return list(self._history)

    def dispose(self, transaction_id: str) -> Transaction:
        """Move a finished transaction from the active set into history.

        Raises:
            KeyError: If the id is not active.
            TransactionError: If the transaction has not finished.
        """
        transaction = self._active[transaction_id]
        if not transaction.state.is_finished:
            raise TransactionError(
                f"Cannot dispose transaction in state {transaction.state}",
                transaction_id=transaction_id,
            )
        del self._active[transaction_id]
        self._history.append(transaction)
        log.debug("transaction_disposed", transaction_id=transaction_id, state=str(transaction.state))
        return transaction

    def clear(self) -> None:
        """Forget every finished transaction, active or historical."""
        for transaction_id in [tid for tid, t in self._active.items() if t.state.is_finished]:
            del self._active[transaction_id]
        self._history.clear()

    def close(self) -> None:
        """Abort unstarted transactions and dispose of finished ones.

        Transactions left mid-execution are reported and kept active; the
        engine cannot stop them.
        """
        for transaction in list(self._active.values()):
            if transaction.state in (TransactionState.INITIALIZING, TransactionState.PREPARED):
                transaction.abort("registry closed")
            if transaction.state.is_finished:
                self.dispose(transaction.id)
            else:
                log.warning(
                    "transaction_left_running",
                    transaction_id=transaction.id,
                    state=str(transaction.state),
                )

    def __enter__(self) -> TransactionRegistry:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._active)
