"""Unit tests for engine/operation.py."""

from functools import partial
from unittest.mock import MagicMock, patch

import pytest

from repo_atomic.engine.operation import Operation, RetryPolicy
from repo_atomic.enums import OperationKind
from repo_atomic.exceptions import PostConditionError


class TestOperationInit:
    """Tests for Operation construction."""

    def test_defaults(self):
        """Test default kind, policy and captured fields."""
        op = Operation(id="a", action=lambda: None, inverse=lambda: None)

        assert op.kind == OperationKind.PROCESS_EXECUTION
        assert op.policy == OperationKind.PROCESS_EXECUTION.default_policy()
        assert op.dependencies == set()
        assert not op.attempted and not op.completed and not op.rolled_back
        assert op.pre_state is None and op.post_state is None

    def test_dependencies_accept_single_string(self):
        """Test a bare string is one dependency, not characters."""
        op = Operation(id="b", action=lambda: None, inverse=lambda: None, dependencies="create-branch")
        assert op.dependencies == {"create-branch"}

    def test_kind_from_value(self):
        """Test kind may be given by its value."""
        op = Operation(id="a", action=lambda: None, inverse=lambda: None, kind="remote-api")
        assert op.kind is OperationKind.REMOTE_API

    @pytest.mark.parametrize("bad_id", ["", "   "])
    def test_empty_id_rejected(self, bad_id):
        """Test empty ids are rejected."""
        with pytest.raises(ValueError):
            Operation(id=bad_id, action=lambda: None, inverse=lambda: None)

    def test_non_callable_rejected(self):
        """Test action and inverse must be callable."""
        with pytest.raises(TypeError):
            Operation(id="a", action="rm -rf", inverse=lambda: None)

    def test_self_dependency_rejected(self):
        """Test an operation cannot depend on itself."""
        with pytest.raises(ValueError):
            Operation(id="a", action=lambda: None, inverse=lambda: None, dependencies={"a"})

    def test_explicit_policy_overrides_kind(self):
        """Test retry_policy wins over the kind default."""
        policy = RetryPolicy(max_attempts=5)
        op = Operation(id="a", action=lambda: None, inverse=lambda: None, retry_policy=policy)
        assert op.policy is policy


class TestOperationExecute:
    """Tests for execute()."""

    def test_success(self, capturer):
        """Test a successful action stores result and snapshots."""
        op = Operation(id="a", action=lambda: 42, inverse=lambda: None)
        result = op.execute(capturer)

        assert result.success
        assert bool(result)
        assert op.result == 42
        assert op.completed and op.attempted
        assert op.attempts == 1
        assert op.pre_state is not None and op.post_state is not None

    def test_failure_does_not_raise(self, capturer):
        """Test a failing action is reported, not raised."""
        op = Operation(id="a", action=MagicMock(side_effect=OSError("disk full")), inverse=lambda: None)
        result = op.execute(capturer)

        assert not result.success
        assert isinstance(result.error, OSError)
        assert op.attempted and not op.completed
        assert op.last_error is result.error
        assert op.post_state is None

    def test_retries_per_policy(self, capturer):
        """Test the forward action is retried up to max_attempts."""
        action = MagicMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        op = Operation(
            id="a",
            action=action,
            inverse=lambda: None,
            retry_policy=RetryPolicy(max_attempts=3, backoff_factor=0),
        )

        result = op.execute(capturer)

        assert result.success
        assert result.attempts == 3
        assert action.call_count == 3

    def test_network_default_retries_with_backoff(self, capturer):
        """Test the network kind retries three times with backoff."""
        action = MagicMock(side_effect=TimeoutError("slow"))
        op = Operation(id="a", action=action, inverse=lambda: None, kind=OperationKind.NETWORK)

        with patch("repo_atomic.utils.retry.time.sleep") as sleep:
            result = op.execute(capturer)

        assert not result.success
        assert action.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0]

    def test_completed_operation_not_rerun(self, capturer):
        """Test execute() on a completed operation is a no-op success."""
        action = MagicMock(return_value=None)
        op = Operation(id="a", action=action, inverse=lambda: None)
        op.execute(capturer)
        op.execute(capturer)
        assert action.call_count == 1


class TestOperationRollback:
    """Tests for rollback()."""

    def test_rollback_is_idempotent(self, capturer):
        """Test a second rollback does not invoke the inverse again."""
        inverse = MagicMock(return_value=None)
        op = Operation(id="a", action=lambda: None, inverse=inverse)
        op.execute(capturer)

        first = op.rollback()
        second = op.rollback()

        assert first.success and second.success
        assert inverse.call_count == 1
        assert op.rolled_back

    def test_failing_inverse_does_not_raise(self, capturer):
        """Test a raising inverse is captured in rollback_error."""
        op = Operation(id="a", action=lambda: None, inverse=MagicMock(side_effect=RuntimeError("locked")))
        op.execute(capturer)

        result = op.rollback()

        assert not result.success
        assert isinstance(op.rollback_error, RuntimeError)
        assert op.last_error is op.rollback_error
        assert not op.rolled_back

    def test_inverse_retried_after_failure(self, capturer):
        """Test a failed inverse may be invoked again later."""
        inverse = MagicMock(side_effect=[RuntimeError("locked"), None])
        op = Operation(id="a", action=lambda: None, inverse=inverse)
        op.execute(capturer)

        assert not op.rollback().success
        assert op.rollback().success
        assert inverse.call_count == 2
        assert op.rollback_error is None

    def test_rollback_before_execute(self):
        """Test rollback of an operation that never ran calls its tolerant inverse."""
        inverse = MagicMock(return_value=None)
        op = Operation(id="a", action=lambda: None, inverse=inverse)

        assert op.rollback().success
        assert inverse.call_count == 1
        assert not op.rolled_back

    def test_warning_from_inverse(self, capturer):
        """Test a string returned by the inverse becomes a warning."""
        op = Operation(id="a", action=lambda: None, inverse=lambda: "  closed instead of deleted ")
        op.execute(capturer)

        result = op.rollback()

        assert result.success
        assert result.warning == "closed instead of deleted"
        assert op.rollback_warning == "closed instead of deleted"


class TestOperationValidate:
    """Tests for validate() and precheck()."""

    def test_no_post_condition(self):
        """Test an absent post-condition succeeds."""
        op = Operation(id="a", action=lambda: None, inverse=lambda: None)
        assert op.validate().success

    @pytest.mark.parametrize("value", [False, None, 0, ""])
    def test_falsy_post_condition(self, value):
        """Test falsy post-condition results fail."""
        op = Operation(id="a", action=lambda: None, inverse=lambda: None, post_condition=lambda: value)
        result = op.validate()
        assert not result.success
        assert isinstance(result.error, PostConditionError)
        assert result.error.operation_id == "a"

    def test_raising_post_condition(self):
        """Test a raising post-condition fails with the cause chained."""
        op = Operation(
            id="a",
            action=lambda: None,
            inverse=lambda: None,
            post_condition=partial(int, "not a number"),
        )
        result = op.validate()
        assert not result.success
        assert isinstance(result.error.__cause__, ValueError)

    def test_precheck(self):
        """Test pre-conditions are evaluated by precheck()."""
        ok = Operation(id="a", action=lambda: None, inverse=lambda: None, pre_condition=lambda: True)
        bad = Operation(id="b", action=lambda: None, inverse=lambda: None, pre_condition=lambda: False)
        assert ok.precheck().success
        assert not bad.precheck().success


class TestOperationToDict:
    """Tests for to_dict()."""

    def test_to_dict(self, capturer):
        """Test the serialized shape."""
        op = Operation(
            id="b",
            action=MagicMock(side_effect=RuntimeError("nope")),
            inverse=lambda: None,
            kind=OperationKind.FILE_SYSTEM,
            description="write file",
            dependencies={"z", "a"},
        )
        op.execute(capturer)
        data = op.to_dict()

        assert data["id"] == "b"
        assert data["kind"] == "file-system"
        assert data["dependencies"] == ["a", "z"]
        assert data["attempted"] is True
        assert data["completed"] is False
        assert data["last_error"] == "RuntimeError: nope"
        assert data["pre_state"]["working_directory"]
        assert data["post_state"] is None
