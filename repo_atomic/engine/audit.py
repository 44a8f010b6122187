"""Append-only audit trail kept on each transaction."""

from collections.abc import Iterator
from datetime import UTC, datetime


class AuditTrail:
    """Timestamped, append-only record of transitions and operation outcomes.

    Entries are formatted as ``"<ISO timestamp> [<category>] <message>"`` and
    can only be added, never removed or edited. ``entries`` returns a copy.

    Example:
        >>> trail = AuditTrail()
        >>> trail.record("state", "initializing -> prepared")
        >>> len(trail)
        1
    """

    def __init__(self) -> None:
        self._entries: list[str] = []

    def record(self, category: str, message: str) -> str:
        """Append one entry and return it."""
        entry = f"{datetime.now(UTC).isoformat()} [{category}] {message}"
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._entries))
