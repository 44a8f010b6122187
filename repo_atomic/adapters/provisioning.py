"""Infrastructure-provisioning adapter for OpenTofu/Terraform.

``ProvisioningRunner`` drives the provisioning binary through
``run_command``. ``ProvisioningOperations`` builds the ``plan`` and ``apply``
operations of a provisioning transaction.

Rolling back an apply is scoped to what the plan said it would create: the
addresses of planned creations are read from ``show -json`` at plan time and
the inverse destroys exactly those with ``-target``. When the change set
cannot be scoped (no creations known), the inverse destroys nothing and
returns a warning instead, which the transaction records in its audit trail.

Example:
    >>> runner = ProvisioningRunner("tofu", working_dir="infra")
    >>> ops = ProvisioningOperations(runner)
    >>> plan_op, plan = ops.plan("infra/release.tfplan")
    >>> apply_op = ops.apply(plan, depends_on=plan_op.id)
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from repo_atomic.engine.operation import Operation
from repo_atomic.enums import OperationKind
from repo_atomic.exceptions import ProvisioningError
from repo_atomic.utils.process import run_command

log = structlog.get_logger(__name__)


class ProvisioningRunner:
    """Run provisioning commands in a working directory.

    Attributes:
        binary: Executable name (``tofu`` or ``terraform``).
        working_dir: Directory holding the configuration.
        var_files: Variable files passed to plan/destroy with ``-var-file``.
        auto_approve: Pass ``-auto-approve`` to apply/destroy.
        timeout: Seconds to wait for any single command. When unset, each
            call uses the timeout it is given, if any.
    """

    def __init__(
        self,
        binary: str = "tofu",
        working_dir: str | Path = ".",
        var_files: Iterable[str] = (),
        auto_approve: bool = True,
        timeout: float | None = None,
    ) -> None:
        self.binary = binary
        self.working_dir = Path(working_dir)
        self.var_files = list(var_files)
        self.auto_approve = auto_approve
        self.timeout = timeout

    def init(self, timeout: float | None = None) -> None:
        self._run("init", "-input=false", timeout=timeout)

    def plan(self, out: str | Path, timeout: float | None = None) -> Path:
        """Write a plan to ``out`` and return its path."""
        planfile = Path(out)
        self._run("plan", "-input=false", f"-out={planfile}", *self._var_args(), timeout=timeout)
        return planfile

    def planned_creations(self, planfile: str | Path, timeout: float | None = None) -> list[str]:
        """Resource addresses the plan will create.

        Raises:
            ProvisioningError: If the plan cannot be read or is not JSON.
        """
        stdout = self._run("show", "-json", str(planfile), timeout=timeout)
        try:
            plan = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"Unreadable plan output from {self.binary} show") from e

        addresses = [
            change["address"]
            for change in plan.get("resource_changes") or []
            if "create" in (change.get("change") or {}).get("actions", [])
        ]
        log.debug("planned_creations", planfile=str(planfile), count=len(addresses))
        return addresses

    def apply(self, planfile: str | Path, timeout: float | None = None) -> None:
        args = ["apply", "-input=false"]
        if self.auto_approve:
            args.append("-auto-approve")
        self._run(*args, str(planfile), timeout=timeout)

    def destroy(self, targets: Iterable[str] | None = None, timeout: float | None = None) -> None:
        """Destroy resources, limited to ``targets`` when given."""
        args = ["destroy", "-input=false"]
        if self.auto_approve:
            args.append("-auto-approve")
        args.extend(f"-target={target}" for target in targets or ())
        self._run(*args, *self._var_args(), timeout=timeout)

    def _var_args(self) -> list[str]:
        return [f"-var-file={path}" for path in self.var_files]

    def _run(self, *args: str, timeout: float | None = None) -> str:
        if self.timeout is not None:
            timeout = self.timeout
        log.info("provisioning_command", binary=self.binary, command=args[0], working_dir=str(self.working_dir))
        try:
            stdout, _, _ = run_command(self.binary, *args, cwd=self.working_dir, timeout=timeout)
        except FileNotFoundError as e:
            raise ProvisioningError(f"Provisioning binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(f"{self.binary} {args[0]} timed out after {e.timeout}s") from e
        except subprocess.CalledProcessError as e:
            log.error("provisioning_command_failed", command=args[0], returncode=e.returncode)
            raise ProvisioningError(
                f"{self.binary} {args[0]} exited with code {e.returncode}",
                returncode=e.returncode,
                stderr=e.stderr,
            ) from e
        return stdout


@dataclass
class PlanResult:
    """Outcome of a plan operation, read by the apply operation."""

    planfile: Path
    creations: list[str] = field(default_factory=list)
    created: bool = False


class ProvisioningOperations:
    """Build transaction operations over a ``ProvisioningRunner``.

    Each command runs with the ``timeout_seconds`` of its operation's
    retry policy unless the runner sets its own timeout.
    """

    def __init__(self, runner: ProvisioningRunner) -> None:
        self.runner = runner

    def init(self, *, op_id: str = "provisioning-init", depends_on: Iterable[str] | str = ()) -> Operation:
        """Initialize the working directory. Nothing to undo."""
        operation = Operation(
            id=op_id,
            action=lambda: self.runner.init(timeout=operation.policy.timeout_seconds),
            inverse=lambda: None,
            kind=OperationKind.PROCESS_EXECUTION,
            description=f"{self.runner.binary} init",
            dependencies=depends_on,
        )
        return operation

    def plan(
        self,
        planfile: str | Path,
        *,
        op_id: str = "provisioning-plan",
        depends_on: Iterable[str] | str = (),
    ) -> tuple[Operation, PlanResult]:
        """Plan into ``planfile`` and record planned creations.

        The inverse deletes the planfile if this operation wrote it.
        """
        result = PlanResult(Path(planfile))
        target = self.runner.working_dir / result.planfile

        def action() -> list[str]:
            result.created = not target.exists()
            timeout = operation.policy.timeout_seconds
            self.runner.plan(result.planfile, timeout=timeout)
            result.creations = self.runner.planned_creations(result.planfile, timeout=timeout)
            return result.creations

        def inverse() -> None:
            if result.created:
                target.unlink(missing_ok=True)

        operation = Operation(
            id=op_id,
            action=action,
            inverse=inverse,
            kind=OperationKind.PROCESS_EXECUTION,
            description=f"{self.runner.binary} plan -> {result.planfile}",
            post_condition=target.exists,
            dependencies=depends_on,
        )
        return operation, result

    def apply(
        self,
        plan: PlanResult,
        *,
        op_id: str = "provisioning-apply",
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Apply a plan; the inverse destroys the resources it created."""

        def inverse() -> str | None:
            if not plan.creations:
                return (
                    "No planned creations were recorded; nothing was destroyed. "
                    "Review the applied changes manually"
                )
            self.runner.destroy(targets=plan.creations, timeout=operation.policy.timeout_seconds)
            return None

        operation = Operation(
            id=op_id,
            action=lambda: self.runner.apply(plan.planfile, timeout=operation.policy.timeout_seconds),
            inverse=inverse,
            kind=OperationKind.PROCESS_EXECUTION,
            description=f"{self.runner.binary} apply {plan.planfile}",
            dependencies=depends_on,
        )
        return operation
