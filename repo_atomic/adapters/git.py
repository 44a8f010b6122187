"""Git working-tree adapter and version-control operations.

``GitRepository`` wraps a local repository through GitPython and exposes the
primitive mutations transactions need (branches, commits, tags, pushes),
each with a tolerant counterpart suitable for use as an inverse. It also
satisfies the snapshot probe protocol, so it can be handed to a
``SnapshotCapturer`` to record the checked-out reference and pending
changes around each operation.

``VersionControlOperations`` turns those primitives into ``Operation``
objects with natural inverses and post-conditions.

Example:
    >>> repo = GitRepository("/path/to/repo")
    >>> vcs = VersionControlOperations(repo)
    >>> txn.add_operation(vcs.create_branch("fix/42"))
    >>> txn.add_operation(vcs.commit_changes("Fix #42", depends_on="create-branch-fix/42"))

Thread Safety:
    GitRepository caches the git.Repo object. A working tree is mutated by
    one transaction at a time; the class does no locking of its own.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from functools import partial
from pathlib import Path

import git
import structlog
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from repo_atomic.engine.operation import Operation
from repo_atomic.enums import OperationKind
from repo_atomic.exceptions import GitOperationError

log = structlog.get_logger(__name__)


class GitRepository:
    """Local git repository driven through GitPython.

    Attributes:
        repo_path: Resolved path to the working tree.
        remote_name: Remote used by push/fetch/pull.
    """

    def __init__(self, path: str | Path = ".", remote: str = "origin") -> None:
        """Initialize the adapter.

        Args:
            path: Any path inside the working tree.
            remote: Name of the remote used for network operations.

        Note:
            The repository is opened lazily on first use.
        """
        self.repo_path = Path(path).resolve()
        self.remote_name = remote
        self._repo: git.Repo | None = None

    @property
    def repo(self) -> git.Repo:
        """The underlying ``git.Repo``, opened on first access.

        Raises:
            GitOperationError: If the path is not inside a git repository.
        """
        if self._repo is None:
            try:
                self._repo = git.Repo(self.repo_path, search_parent_directories=True)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise GitOperationError(f"Not a git repository: {self.repo_path}") from e
        return self._repo

    @property
    def root(self) -> Path:
        """Top of the working tree; porcelain paths are relative to it."""
        return Path(self.repo.working_tree_dir)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def current_reference(self) -> str | None:
        """Name of the checked-out branch, or the head sha when detached."""
        repo = self.repo
        if repo.head.is_detached:
            return repo.head.commit.hexsha
        try:
            return repo.active_branch.name
        except TypeError:
            return None

    def status_summary(self) -> list[str]:
        """Porcelain status lines for the working tree."""
        output = self._git("status", "--porcelain")
        return [line for line in output.splitlines() if line.strip()]

    def head_sha(self) -> str | None:
        """Sha of HEAD, or None in a repository without commits."""
        try:
            return self.repo.head.commit.hexsha
        except ValueError:
            return None

    def branch_exists(self, name: str) -> bool:
        return name in {head.name for head in self.repo.heads}

    def is_checked_out(self, name: str) -> bool:
        return self.current_reference() == name

    def tag_exists(self, name: str) -> bool:
        return name in {tag.name for tag in self.repo.tags}

    def remote_branch_exists(self, name: str) -> bool:
        output = self._git("ls-remote", "--heads", self.remote_name, name)
        return bool(output.strip())

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def create_branch(self, name: str, start_point: str | None = None, checkout: bool = True) -> str:
        """Create a branch and optionally check it out.

        Returns:
            The branch name.
        """
        log.info("git_create_branch", branch=name, start_point=start_point, checkout=checkout)
        args = ["checkout", "-b", name] if checkout else ["branch", name]
        if start_point:
            args.append(start_point)
        self._git(*args)
        return name

    def switch_branch(self, name: str) -> str:
        log.info("git_switch_branch", branch=name)
        self._git("checkout", name)
        return name

    def delete_branch(self, name: str, force: bool = True) -> None:
        """Delete a local branch. A no-op when the branch does not exist."""
        if not self.branch_exists(name):
            log.debug("git_delete_branch_skipped", branch=name, reason="absent")
            return
        log.info("git_delete_branch", branch=name, force=force)
        self._git("branch", "-D" if force else "-d", name)

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def commit_all(self, message: str) -> str:
        """Stage every change in the working tree and commit it.

        Returns:
            The new commit sha.

        Raises:
            GitOperationError: If there is nothing to commit.
        """
        self._git("add", "--all")
        if not self._git("status", "--porcelain").strip():
            raise GitOperationError("Nothing to commit: working tree clean")
        log.info("git_commit", message=message.splitlines()[0] if message else "")
        self._git("commit", "-m", message)
        return self.repo.head.commit.hexsha

    def reset_to(self, ref: str, hard: bool = True) -> None:
        """Move HEAD to ``ref``.

        A mixed reset (``hard=False``) keeps the working tree, so the
        changes of the undone commits come back as uncommitted edits.
        """
        log.info("git_reset", ref=ref, hard=hard)
        self._git("reset", "--hard" if hard else "--mixed", ref)

    def changed_paths(self) -> list[str]:
        """Paths with uncommitted changes, untracked files listed one by one."""
        output = self._git("status", "--porcelain", "--untracked-files=all")
        paths = []
        for line in output.splitlines():
            if not line.strip():
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            paths.append(path.strip('"'))
        return paths

    def tracked_at_head(self, path: str) -> bool:
        try:
            self.repo.head.commit.tree / path
        except (KeyError, ValueError):
            return False
        return True

    def restore_path(self, path: str) -> None:
        """Return ``path`` to its state at HEAD, removing it if HEAD lacks it."""
        if self.tracked_at_head(path):
            self._git("checkout", "HEAD", "--", path)
        else:
            self._git("rm", "--cached", "--quiet", "--ignore-unmatch", "--", path)
            (self.root / path).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Remote
    # ------------------------------------------------------------------

    def fetch(self) -> None:
        log.info("git_fetch", remote=self.remote_name)
        self._git("fetch", self.remote_name)

    def pull(self, branch: str) -> None:
        log.info("git_pull", remote=self.remote_name, branch=branch)
        self._git("pull", "--ff-only", self.remote_name, branch)

    def push(self, branch: str, set_upstream: bool = True) -> None:
        log.info("git_push", remote=self.remote_name, branch=branch)
        args = ["push"]
        if set_upstream:
            args.append("--set-upstream")
        self._git(*args, self.remote_name, branch)

    def delete_remote_branch(self, branch: str) -> None:
        """Delete a branch on the remote. Tolerates a branch already gone."""
        if not self.remote_branch_exists(branch):
            log.debug("git_delete_remote_branch_skipped", branch=branch, reason="absent")
            return
        log.info("git_delete_remote_branch", remote=self.remote_name, branch=branch)
        self._git("push", self.remote_name, "--delete", branch)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def create_tag(self, name: str, message: str | None = None) -> str:
        """Create an annotated tag (lightweight when no message is given)."""
        log.info("git_create_tag", tag=name)
        if message:
            self._git("tag", "-a", name, "-m", message)
        else:
            self._git("tag", name)
        return name

    def delete_tag(self, name: str) -> None:
        """Delete a local tag. A no-op when the tag does not exist."""
        if not self.tag_exists(name):
            log.debug("git_delete_tag_skipped", tag=name, reason="absent")
            return
        log.info("git_delete_tag", tag=name)
        self._git("tag", "-d", name)

    def push_tag(self, name: str) -> None:
        log.info("git_push_tag", remote=self.remote_name, tag=name)
        self._git("push", self.remote_name, f"refs/tags/{name}")

    def remote_tag_exists(self, name: str) -> bool:
        output = self._git("ls-remote", "--tags", self.remote_name, f"refs/tags/{name}")
        return bool(output.strip())

    def delete_remote_tag(self, name: str) -> None:
        """Delete a tag on the remote. Tolerates a tag already gone."""
        if not self.remote_tag_exists(name):
            log.debug("git_delete_remote_tag_skipped", tag=name, reason="absent")
            return
        log.info("git_delete_remote_tag", remote=self.remote_name, tag=name)
        self._git("push", self.remote_name, "--delete", f"refs/tags/{name}")

    def _git(self, *args: str) -> str:
        """Run a git subcommand in the working tree.

        Raises:
            GitOperationError: Wrapping any GitPython command failure.
        """
        try:
            return self.repo.git.execute(["git", *args])
        except GitCommandError as e:
            stderr = (e.stderr or "").strip()
            raise GitOperationError(f"git {args[0]} failed: {stderr or e}") from e


class VersionControlOperations:
    """Build transaction operations over a ``GitRepository``.

    Every factory returns an ``Operation`` of kind ``VERSION_CONTROL`` whose
    id defaults to a readable slug of the action (``create-branch-fix/42``).
    Pass ``op_id`` to override it and ``depends_on`` to declare ordering.
    """

    def __init__(self, repo: GitRepository) -> None:
        self.repo = repo

    def create_branch(
        self,
        name: str,
        start_point: str | None = None,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Create and check out ``name``.

        The inverse switches back to the branch checked out before the
        action ran, then deletes ``name``.
        """
        previous: dict[str, str | None] = {"ref": None}

        def action() -> str:
            previous["ref"] = self.repo.current_reference()
            return self.repo.create_branch(name, start_point=start_point)

        def inverse() -> None:
            if previous["ref"] and self.repo.is_checked_out(name):
                self.repo.switch_branch(previous["ref"])
            self.repo.delete_branch(name)

        return Operation(
            id=op_id or f"create-branch-{name}",
            action=action,
            inverse=inverse,
            kind=OperationKind.VERSION_CONTROL,
            description=f"Create and check out branch {name}",
            pre_condition=lambda: not self.repo.branch_exists(name),
            post_condition=partial(self.repo.is_checked_out, name),
            dependencies=depends_on,
        )

    def switch_branch(
        self,
        name: str,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Check out ``name``; the inverse checks the previous branch out again."""
        previous: dict[str, str | None] = {"ref": None}

        def action() -> str:
            previous["ref"] = self.repo.current_reference()
            return self.repo.switch_branch(name)

        def inverse() -> None:
            if previous["ref"] and not self.repo.is_checked_out(previous["ref"]):
                self.repo.switch_branch(previous["ref"])

        return Operation(
            id=op_id or f"switch-branch-{name}",
            action=action,
            inverse=inverse,
            kind=OperationKind.VERSION_CONTROL,
            description=f"Check out branch {name}",
            post_condition=partial(self.repo.is_checked_out, name),
            dependencies=depends_on,
        )

    def commit_changes(
        self,
        message: str,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Commit every pending change.

        The inverse moves HEAD back to the pre-commit head with a mixed
        reset, and only if the head actually moved. The committed changes
        stay in the working tree as uncommitted edits.
        """
        heads: dict[str, str | None] = {"before": None, "after": None}

        def action() -> str:
            heads["before"] = self.repo.head_sha()
            heads["after"] = self.repo.commit_all(message)
            return heads["after"]

        def inverse() -> None:
            before = heads["before"]
            if before is None or heads["after"] is None:
                return
            if self.repo.head_sha() != before:
                self.repo.reset_to(before, hard=False)

        def head_moved() -> bool:
            return heads["after"] is not None and self.repo.head_sha() == heads["after"] != heads["before"]

        return Operation(
            id=op_id or "commit-changes",
            action=action,
            inverse=inverse,
            kind=OperationKind.VERSION_CONTROL,
            description=f"Commit changes: {message.splitlines()[0] if message else ''}",
            post_condition=head_moved,
            dependencies=depends_on,
        )

    def apply_changes(
        self,
        changes: Callable[[], object],
        *,
        op_id: str = "apply-changes",
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Run ``changes`` against the working tree.

        Paths that already had uncommitted edits are saved before the action
        runs. The inverse puts those back as they were and returns every
        other changed path to its state at HEAD, so edits made before the
        transaction survive a rollback.
        """
        pending: dict[str, bytes | None] = {}

        def action() -> object:
            pending.clear()
            for path in self.repo.changed_paths():
                target = self.repo.root / path
                pending[path] = target.read_bytes() if target.is_file() else None
            return changes()

        def inverse() -> None:
            for path in self.repo.changed_paths():
                if path not in pending:
                    self.repo.restore_path(path)
            for path, content in pending.items():
                target = self.repo.root / path
                if content is None:
                    target.unlink(missing_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(content)

        return Operation(
            id=op_id,
            action=action,
            inverse=inverse,
            kind=OperationKind.FILE_SYSTEM,
            description="Apply file changes",
            dependencies=depends_on,
        )

    def push_branch(
        self,
        branch: str,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Push ``branch`` to the remote; the inverse deletes it there."""
        return Operation(
            id=op_id or f"push-branch-{branch}",
            action=partial(self.repo.push, branch),
            inverse=partial(self.repo.delete_remote_branch, branch),
            kind=OperationKind.VERSION_CONTROL,
            description=f"Push branch {branch} to {self.repo.remote_name}",
            dependencies=depends_on,
        )

    def create_tag(
        self,
        name: str,
        message: str | None = None,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Create tag ``name``; the inverse deletes it."""
        return Operation(
            id=op_id or f"create-tag-{name}",
            action=partial(self.repo.create_tag, name, message),
            inverse=partial(self.repo.delete_tag, name),
            kind=OperationKind.VERSION_CONTROL,
            description=f"Create tag {name}",
            pre_condition=lambda: not self.repo.tag_exists(name),
            post_condition=partial(self.repo.tag_exists, name),
            dependencies=depends_on,
        )

    def push_tag(
        self,
        name: str,
        *,
        op_id: str | None = None,
        depends_on: Iterable[str] | str = (),
    ) -> Operation:
        """Push tag ``name``; the inverse deletes it on the remote."""
        return Operation(
            id=op_id or f"push-tag-{name}",
            action=partial(self.repo.push_tag, name),
            inverse=partial(self.repo.delete_remote_tag, name),
            kind=OperationKind.VERSION_CONTROL,
            description=f"Push tag {name} to {self.repo.remote_name}",
            dependencies=depends_on,
        )
