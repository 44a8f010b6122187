"""Filesystem operations.

``write_file`` builds an operation that replaces a file's content atomically
(temporary file then rename, the same way state files are written) and whose
inverse puts back the previous content, or removes the file when it did not
exist before.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

import structlog

from repo_atomic.engine.operation import Operation
from repo_atomic.enums import OperationKind

log = structlog.get_logger(__name__)


def atomic_write(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` through a temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


def write_file(
    path: str | Path,
    content: str,
    *,
    op_id: str | None = None,
    depends_on: Iterable[str] | str = (),
) -> Operation:
    """Build an operation that writes ``content`` to ``path``.

    Args:
        path: File to write.
        content: New text content.
        op_id: Operation id; defaults to ``write-<filename>``.
        depends_on: Ids of operations that must complete first.

    Returns:
        A ``FILE_SYSTEM`` operation whose post-condition checks the file
        holds ``content``.
    """
    target = Path(path)
    previous: dict[str, str | None] = {"content": None}
    state = {"captured": False}

    def action() -> Path:
        if not state["captured"]:
            previous["content"] = target.read_text(encoding="utf-8") if target.exists() else None
            state["captured"] = True
        log.info("write_file", path=str(target), existed=previous["content"] is not None)
        atomic_write(target, content)
        return target

    def inverse() -> None:
        if not state["captured"]:
            return
        if previous["content"] is None:
            log.info("remove_file", path=str(target))
            target.unlink(missing_ok=True)
        else:
            log.info("restore_file", path=str(target))
            atomic_write(target, previous["content"])

    def holds_content() -> bool:
        return target.exists() and target.read_text(encoding="utf-8") == content

    return Operation(
        id=op_id or f"write-{target.name}",
        action=action,
        inverse=inverse,
        kind=OperationKind.FILE_SYSTEM,
        description=f"Write {target}",
        post_condition=holds_content,
        dependencies=depends_on,
    )
