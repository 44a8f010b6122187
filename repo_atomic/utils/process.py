"""Blocking subprocess utilities.

Provides subprocess execution for the adapters that drive external binaries
(the infrastructure-provisioning tool). Every call blocks the thread running
the transaction, which is what the transaction engine expects.

Example:
    >>> from repo_atomic.utils.process import run_command
    >>> stdout, stderr, code = run_command("tofu", "plan", cwd="/infra")
    >>> if code == 0:
    ...     print(stdout)
"""

import subprocess
from collections.abc import Mapping
from pathlib import Path


def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command without shell interpolation and wait for it.

    Args:
        *args: Command and arguments as separate strings.
            Example: "tofu", "apply", "-auto-approve", "plan.tfplan"
        cwd: Working directory for command execution. If None, uses the
            current working directory of the parent process.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for command completion. If exceeded,
            the process is killed and subprocess.TimeoutExpired is raised.
        env: Full environment for the child process. If None, the parent's
            environment is inherited.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        subprocess.TimeoutExpired: If timeout is exceeded.
        FileNotFoundError: If the command executable is not found.
    """
    completed = subprocess.run(
        list(args),
        cwd=cwd,
        capture_output=True,
        timeout=timeout,
        env=dict(env) if env is not None else None,
        check=False,
    )

    stdout = (completed.stdout or b"").decode("utf-8", errors="replace")
    stderr = (completed.stderr or b"").decode("utf-8", errors="replace")

    if check and completed.returncode != 0:
        raise subprocess.CalledProcessError(
            completed.returncode,
            list(args),
            stdout,
            stderr,
        )

    return stdout, stderr, completed.returncode
