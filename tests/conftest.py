"""Pytest configuration and shared fixtures."""

import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from repo_atomic.engine.events import EventEmitter
from repo_atomic.engine.operation import Operation
from repo_atomic.engine.snapshot import SnapshotCapturer
from repo_atomic.engine.transaction import Transaction
from repo_atomic.enums import OperationKind


class CallLog:
    """Records the order in which stub actions and inverses run."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def action(self, op_id: str, fail: bool = False, result: Any = None) -> Callable[[], Any]:
        def run() -> Any:
            self.calls.append(f"do:{op_id}")
            if fail:
                raise RuntimeError(f"{op_id} exploded")
            return result

        return run

    def inverse(self, op_id: str, fail: bool = False, warning: str | None = None) -> Callable[[], Any]:
        def undo() -> Any:
            self.calls.append(f"undo:{op_id}")
            if fail:
                raise RuntimeError(f"cannot undo {op_id}")
            return warning

        return undo

    def count(self, entry: str) -> int:
        return self.calls.count(entry)

    @property
    def undone(self) -> list[str]:
        return [c.split(":", 1)[1] for c in self.calls if c.startswith("undo:")]


@pytest.fixture
def call_log() -> CallLog:
    """Fresh call recorder."""
    return CallLog()


@pytest.fixture
def make_op(call_log: CallLog) -> Callable[..., Operation]:
    """Factory for stub operations wired to ``call_log``."""

    def factory(
        op_id: str,
        *,
        fail: bool = False,
        inverse_fails: bool = False,
        warning: str | None = None,
        depends_on: tuple[str, ...] | str = (),
        kind: OperationKind = OperationKind.CONFIGURATION,
        **kwargs: Any,
    ) -> Operation:
        return Operation(
            id=op_id,
            action=call_log.action(op_id, fail=fail),
            inverse=call_log.inverse(op_id, fail=inverse_fails, warning=warning),
            kind=kind,
            description=f"stub {op_id}",
            dependencies=depends_on,
            **kwargs,
        )

    return factory


@pytest.fixture
def capturer(tmp_path: Path) -> SnapshotCapturer:
    """Snapshot capturer with no source and an empty environment."""
    return SnapshotCapturer(tmp_path, environ={})


@pytest.fixture
def emitter() -> EventEmitter:
    """Event emitter instance."""
    return EventEmitter()


@pytest.fixture
def transaction(capturer: SnapshotCapturer, emitter: EventEmitter) -> Transaction:
    """Auto-committing transaction with a quiet capturer."""
    return Transaction("test transaction", transaction_id="txn-test", capturer=capturer, emitter=emitter)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Temporary git repository with one commit on ``main``."""
    git = pytest.importorskip("git")
    if shutil.which("git") is None:
        pytest.skip("git executable not installed")

    path = tmp_path / "repo"
    path.mkdir()
    repo = git.Repo.init(path, initial_branch="main")
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test User")
        config.set_value("user", "email", "test@example.com")
        config.set_value("commit", "gpgsign", "false")
        config.set_value("tag", "gpgsign", "false")
    (path / "README.md").write_text("# test\n")
    repo.index.add(["README.md"])
    repo.index.commit("Initial commit")
    return path


@pytest.fixture
def bare_remote(tmp_path: Path, git_repo: Path) -> Path:
    """Bare repository registered as ``origin`` of ``git_repo``."""
    import git

    remote_path = tmp_path / "remote.git"
    git.Repo.init(remote_path, bare=True)
    git.Repo(git_repo).create_remote("origin", str(remote_path))
    return remote_path
