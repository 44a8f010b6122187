"""
Point-in-time snapshots of the external environment around an operation.

A snapshot records the minimum needed to explain after the fact why a
rollback was or was not safe: where the mutated system currently points (the
checked-out branch or commit), a summary of uncommitted local changes, an
allow-listed slice of the process environment, and a timestamp.

Snapshots are diagnostic only. Failing to capture part of one (the working
tree being briefly unreadable, for example) logs a warning and yields a
snapshot with the missing fields set to ``None``; it never fails the
operation being observed.

Snapshots are attached to operations (``pre_state`` / ``post_state``), never
to the transaction, so a post-mortem can diff them per operation::

    >>> op.pre_state.diff(op.post_state)
    {'current_reference': ('main', 'feature/fix-42')}
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol

import structlog

log = structlog.get_logger(__name__)

# Variable names whose values are safe to copy into snapshots and reports.
# Anything holding credentials must never appear here.
DEFAULT_ENVIRONMENT_ALLOWLIST: tuple[str, ...] = (
    "CI",
    "GITHUB_ACTIONS",
    "GITHUB_REF",
    "GITHUB_SHA",
    "GITHUB_RUN_ID",
    "TF_WORKSPACE",
    "TF_DATA_DIR",
)


class SnapshotSource(Protocol):
    """Read-only view of the external system an operation mutates."""

    def current_reference(self) -> str | None: ...

    def status_summary(self) -> list[str]: ...


@dataclass(frozen=True)
class SystemSnapshot:
    """Immutable description of external state at one point in time.

    Attributes:
        timestamp: When the snapshot was captured (UTC).
        working_directory: Directory the snapshot describes.
        current_reference: Active branch, or commit sha when detached.
            ``None`` when it could not be determined.
        pending_changes: One line per uncommitted change, ``None`` when the
            working tree could not be read.
        relevant_environment: Read-only mapping of allow-listed variables
            that were set at capture time.
        capture_errors: Messages for every part that failed to capture.
    """

    timestamp: datetime
    working_directory: str
    current_reference: str | None = None
    pending_changes: tuple[str, ...] | None = None
    relevant_environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    capture_errors: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        """Check whether every part of the snapshot was captured."""
        return not self.capture_errors

    def diff(self, other: SystemSnapshot) -> dict[str, tuple[Any, Any]]:
        """Compare with a later snapshot, for diagnostics only.

        Args:
            other: Snapshot captured after this one.

        Returns:
            Mapping of field name to ``(before, after)`` for every field
            that differs, excluding the timestamp.
        """
        changes: dict[str, tuple[Any, Any]] = {}
        for name in ("working_directory", "current_reference", "pending_changes"):
            before = getattr(self, name)
            after = getattr(other, name)
            if before != after:
                changes[name] = (before, after)
        if dict(self.relevant_environment) != dict(other.relevant_environment):
            changes["relevant_environment"] = (
                dict(self.relevant_environment),
                dict(other.relevant_environment),
            )
        return changes

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "working_directory": self.working_directory,
            "current_reference": self.current_reference,
            "pending_changes": list(self.pending_changes) if self.pending_changes is not None else None,
            "relevant_environment": dict(self.relevant_environment),
            "capture_errors": list(self.capture_errors),
        }


class SnapshotCapturer:
    """Capture ``SystemSnapshot`` instances for operations.

    Args:
        working_directory: Directory being mutated. Defaults to the current
            directory.
        source: Optional probe for the current reference and pending
            changes (``repo_atomic.adapters.git.GitRepository`` satisfies
            it). Without one, those fields are left ``None``.
        environment_allowlist: Names of environment variables to record.
            Only these are ever read.
        environ: Environment mapping to read from. Defaults to
            ``os.environ``.

    Example:
        >>> capturer = SnapshotCapturer("/repo", source=GitRepository("/repo"))
        >>> snap = capturer.capture()
        >>> snap.current_reference
        'main'
    """

    def __init__(
        self,
        working_directory: str | Path = ".",
        source: SnapshotSource | None = None,
        environment_allowlist: Iterable[str] = DEFAULT_ENVIRONMENT_ALLOWLIST,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.working_directory = str(Path(working_directory).resolve())
        self.source = source
        self.environment_allowlist = tuple(environment_allowlist)
        self._environ = environ

    def capture(self) -> SystemSnapshot:
        """Capture a snapshot of the current external state.

        Never raises: probe failures are logged as warnings and recorded in
        ``capture_errors``.
        """
        errors: list[str] = []
        reference: str | None = None
        changes: tuple[str, ...] | None = None

        if self.source is not None:
            try:
                reference = self.source.current_reference()
            except Exception as e:
                errors.append(f"current_reference: {e}")
                log.warning("snapshot_capture_failed", part="current_reference", error=str(e))

            try:
                changes = tuple(self.source.status_summary())
            except Exception as e:
                errors.append(f"pending_changes: {e}")
                log.warning("snapshot_capture_failed", part="pending_changes", error=str(e))

        return SystemSnapshot(
            timestamp=datetime.now(UTC),
            working_directory=self.working_directory,
            current_reference=reference,
            pending_changes=changes,
            relevant_environment=MappingProxyType(self._read_environment()),
            capture_errors=tuple(errors),
        )

    def _read_environment(self) -> dict[str, str]:
        environ = self._environ if self._environ is not None else os.environ
        return {name: environ[name] for name in self.environment_allowlist if name in environ}
