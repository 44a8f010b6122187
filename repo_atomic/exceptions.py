"""Custom exception hierarchy for repo-atomic.

This module defines a structured exception hierarchy that separates caller
programming errors (validation, invalid lifecycle calls) from failures of the
external systems that operations drive (git, the hosting API, the
provisioning binary).

Exception Hierarchy:
    RepoAtomicError (base)
    ├── ConfigurationError
    ├── TransactionError
    │   ├── ValidationError
    │   │   ├── DependencyError
    │   │   └── OperationLimitError
    │   ├── InvalidStateTransitionError
    │   └── RollbackError
    ├── OperationError
    │   └── PostConditionError
    ├── GitOperationError
    ├── ExternalServiceError
    └── ProvisioningError

The transaction engine never lets operation failures escape ``execute()``,
``commit()`` or ``rollback()``. Instead the failure is stored on the
transaction (``Transaction.last_error``) and the transaction moves to a
terminal state. Only caller programming errors (``ValidationError`` from
``add_operation()`` and ``InvalidStateTransitionError``) are raised.

Example Usage:
    >>> from repo_atomic.exceptions import ValidationError
    >>> try:
    ...     txn.add_operation(op)
    ... except ValidationError as e:
    ...     print(e.message)
"""

from typing import Any


class RepoAtomicError(Exception):
    """Base exception for all repo-atomic errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(RepoAtomicError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
        - Unset environment variable referenced by the configuration
    """

    pass


# =============================================================================
# Transaction Errors
# =============================================================================


class TransactionError(RepoAtomicError):
    """Errors raised by the transaction coordinator.

    Attributes:
        message: Human-readable error description
        transaction_id: Transaction the error belongs to, if known
    """

    def __init__(self, message: str, transaction_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            transaction_id: Identifier of the affected transaction
        """
        self.transaction_id = transaction_id
        full_message = message
        if transaction_id:
            full_message = f"{message} (transaction: {transaction_id})"
        super().__init__(full_message)
        # Preserve original message (super sets self.message to full_message)
        self.message = message


class ValidationError(TransactionError):
    """A transaction was built incorrectly and must not execute.

    Raised synchronously by ``add_operation()`` and stored on the transaction
    by ``prepare()``.

    Attributes:
        operation_id: Offending operation, if the error concerns one

    Examples:
        - Duplicate operation id
        - Operation added after the transaction left ``Initializing``
    """

    def __init__(
        self,
        message: str,
        operation_id: str | None = None,
        transaction_id: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            operation_id: Identifier of the offending operation
            transaction_id: Identifier of the affected transaction
        """
        self.operation_id = operation_id
        super().__init__(message, transaction_id=transaction_id)


class DependencyError(ValidationError):
    """An operation depends on an unknown id, or dependencies form a cycle."""

    pass


class OperationLimitError(ValidationError):
    """Adding an operation would exceed the transaction's ``max_operations``."""

    pass


class InvalidStateTransitionError(TransactionError):
    """A lifecycle method was called from a state that does not allow it.

    Attributes:
        from_state: State the transaction was in
        to_state: State the call tried to reach
    """

    def __init__(
        self,
        message: str,
        from_state: Any = None,
        to_state: Any = None,
        transaction_id: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            from_state: Current transaction state
            to_state: Requested transaction state
            transaction_id: Identifier of the affected transaction
        """
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message, transaction_id=transaction_id)


class RollbackError(TransactionError):
    """One or more inverse actions failed during rollback.

    This is the one unrecoverable outcome: the external systems may be left
    partially mutated and a human has to repair them.

    Attributes:
        failures: ``(operation_id, error)`` pairs for every inverse that failed
        reason: The error that triggered the rollback, if any
    """

    def __init__(
        self,
        message: str,
        failures: list[tuple[str, BaseException]] | None = None,
        reason: BaseException | None = None,
        transaction_id: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            failures: Operations whose inverse failed, with the error raised
            reason: Error that triggered the rollback
            transaction_id: Identifier of the affected transaction
        """
        self.failures = list(failures or [])
        self.reason = reason
        super().__init__(message, transaction_id=transaction_id)

    @property
    def failed_operation_ids(self) -> list[str]:
        """Ids of the operations that could not be undone, in sweep order."""
        return [operation_id for operation_id, _ in self.failures]


# =============================================================================
# Operation Errors
# =============================================================================


class OperationError(RepoAtomicError):
    """An operation's forward action failed.

    Attributes:
        operation_id: Identifier of the failed operation
    """

    def __init__(self, message: str, operation_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            operation_id: Identifier of the failed operation
        """
        self.operation_id = operation_id
        full_message = message
        if operation_id:
            full_message = f"{message} (operation: {operation_id})"
        super().__init__(full_message)
        self.message = message


class PostConditionError(OperationError):
    """An operation's post-condition did not hold.

    Treated exactly like an execution failure: a side effect that cannot be
    verified is not trusted.
    """

    pass


# =============================================================================
# External System Errors
# =============================================================================


class GitOperationError(RepoAtomicError):
    """Git operation errors.

    Examples:
        - Directory is not a Git repository
        - Branch or tag already exists
        - Nothing to commit
        - Push rejected by the remote
    """

    pass


class ExternalServiceError(RepoAtomicError):
    """Code-hosting API communication errors.

    Examples:
        - HTTP request failed
        - API returned an error status
        - Service timeout
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class ProvisioningError(RepoAtomicError):
    """The infrastructure-provisioning binary failed.

    Attributes:
        returncode: Exit code of the binary, if it ran
        stderr: Captured standard error, if any
    """

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            returncode: Exit code of the provisioning binary
            stderr: Captured standard error output
        """
        self.returncode = returncode
        self.stderr = stderr

        full_message = message
        if returncode is not None:
            full_message = f"{message} (exit code {returncode})"

        super().__init__(full_message)
        self.message = message
