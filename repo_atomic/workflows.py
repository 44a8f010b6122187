"""Transaction builders for the operational workflows.

Each builder creates a transaction through the caller's
``TransactionRegistry``, adds the operations of one workflow with their
dependencies, and returns it un-prepared. The caller runs ``prepare()`` and
``execute()`` (and ``commit()`` when auto-commit is off).

Workflows:
    - Patch: branch, optional file changes, commit, and optionally push,
      open an issue and a pull request, and label them.
    - Release: bump the version file, commit, tag, and optionally push the
      branch and the tag.
    - Provisioning: init, plan and apply infrastructure changes.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from pathlib import Path

import structlog

from repo_atomic.adapters.filesystem import write_file
from repo_atomic.adapters.git import GitRepository, VersionControlOperations
from repo_atomic.adapters.hosting import HostingClient, HostingOperations
from repo_atomic.adapters.provisioning import ProvisioningOperations, ProvisioningRunner
from repo_atomic.engine.registry import TransactionRegistry
from repo_atomic.engine.transaction import Transaction
from repo_atomic.exceptions import ValidationError

log = structlog.get_logger(__name__)

SEMVER_PATTERN = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:-[0-9A-Za-z.-]+)?$")


def build_patch_transaction(
    registry: TransactionRegistry,
    repo: GitRepository,
    *,
    description: str,
    branch: str,
    commit_message: str,
    base_branch: str,
    changes: Callable[[], object] | None = None,
    push: bool = False,
    hosting: HostingClient | None = None,
    create_issue: bool = False,
    create_pr: bool = False,
    labels: Iterable[str] = (),
    **overrides: object,
) -> Transaction:
    """Build a patch transaction.

    Args:
        registry: Registry that owns the transaction.
        repo: Working tree to patch.
        description: Transaction description, also used as issue/PR title.
        branch: Branch to create for the patch.
        commit_message: Commit message.
        base_branch: Branch the patch starts from and the PR targets.
        changes: Optional callable applying the file changes. On rollback
            the paths it touched return to their pre-transaction state;
            edits that were already pending are kept.
        push: Push the branch to the remote.
        hosting: Hosting client, required for ``create_issue``/``create_pr``.
        create_issue: Open a tracking issue.
        create_pr: Open a pull request (requires ``push``).
        labels: Labels for the pull request, or the issue when no PR is made.
        **overrides: Per-transaction options passed to ``registry.create``.

    Raises:
        ValidationError: If the option combination is inconsistent.
    """
    labels = list(labels)
    if (create_issue or create_pr) and hosting is None:
        raise ValidationError("Creating an issue or pull request requires a hosting client")
    if create_pr and not push:
        raise ValidationError("A pull request needs the branch pushed; enable push")
    if labels and not (create_issue or create_pr):
        raise ValidationError("Labels need an issue or pull request to attach to")

    txn = registry.create(description, **overrides)
    vcs = VersionControlOperations(repo)

    branch_op = txn.add_operation(vcs.create_branch(branch, start_point=base_branch))
    last = branch_op.id

    if changes is not None:
        changes_op = txn.add_operation(vcs.apply_changes(changes, depends_on=last))
        last = changes_op.id

    commit_op = txn.add_operation(vcs.commit_changes(commit_message, depends_on=last))
    last = commit_op.id

    push_op = None
    if push:
        push_op = txn.add_operation(vcs.push_branch(branch, depends_on=last))

    label_target = None
    if hosting is not None and (create_issue or create_pr):
        remote = HostingOperations(hosting)
        if create_issue:
            issue_op, issue = remote.create_issue(
                description,
                f"Tracking patch on branch `{branch}`.",
                depends_on=commit_op.id,
            )
            txn.add_operation(issue_op)
            label_target, label_dep = issue, issue_op.id
        if create_pr and push_op is not None:
            pr_op, pull = remote.create_pull_request(
                description,
                commit_message,
                head=branch,
                base=base_branch,
                depends_on=push_op.id,
            )
            txn.add_operation(pr_op)
            label_target, label_dep = pull, pr_op.id
        if labels and label_target is not None:
            txn.add_operation(remote.add_labels(label_target, labels, depends_on=label_dep))

    log.info("patch_transaction_built", transaction_id=txn.id, operations=len(txn.operations))
    return txn


def build_release_transaction(
    registry: TransactionRegistry,
    repo: GitRepository,
    *,
    version: str,
    version_file: str | Path,
    message: str | None = None,
    push: bool = False,
    **overrides: object,
) -> Transaction:
    """Build a release transaction tagging ``v<version>``.

    Raises:
        ValidationError: If ``version`` is not ``MAJOR.MINOR.PATCH`` with an
            optional pre-release suffix.
    """
    if not SEMVER_PATTERN.match(version):
        raise ValidationError(f"Invalid version '{version}': expected MAJOR.MINOR.PATCH[-PRERELEASE]")

    tag = f"v{version}"
    message = message or f"Release {tag}"
    path = Path(version_file)
    if not path.is_absolute():
        path = repo.repo_path / path

    branch = repo.current_reference() if push else None
    if push and not branch:
        raise ValidationError("Cannot push a release from a repository without a checked-out branch")

    txn = registry.create(f"Release {tag}", **overrides)
    vcs = VersionControlOperations(repo)

    write_op = txn.add_operation(write_file(path, f"{version}\n", op_id="write-version-file"))
    commit_op = txn.add_operation(vcs.commit_changes(message, depends_on=write_op.id))
    tag_op = txn.add_operation(vcs.create_tag(tag, message, depends_on=commit_op.id))

    if branch:
        push_op = txn.add_operation(vcs.push_branch(branch, depends_on=tag_op.id))
        txn.add_operation(vcs.push_tag(tag, depends_on=push_op.id))

    log.info("release_transaction_built", transaction_id=txn.id, version=version)
    return txn


def build_provisioning_transaction(
    registry: TransactionRegistry,
    runner: ProvisioningRunner,
    *,
    description: str,
    planfile: str | Path,
    **overrides: object,
) -> Transaction:
    """Build an init, plan, apply provisioning transaction."""
    txn = registry.create(description, **overrides)
    ops = ProvisioningOperations(runner)

    init_op = txn.add_operation(ops.init())
    plan_op, plan = ops.plan(planfile, depends_on=init_op.id)
    txn.add_operation(plan_op)
    txn.add_operation(ops.apply(plan, depends_on=plan_op.id))

    log.info("provisioning_transaction_built", transaction_id=txn.id, planfile=str(planfile))
    return txn
