"""
Publish/subscribe hook for terminal transaction outcomes.

The coordinator publishes a ``TransactionEvent`` when a transaction is
committed, rolled back, or ends in ``Failed`` after a partial rollback.
Status dashboards and notifiers subscribe per event type. Publishing with no
subscriber is a silent no-op, and a subscriber that raises is logged and
skipped so it can never change the outcome of the transaction.

Example:
    >>> emitter = EventEmitter()
    >>> emitter.subscribe(EventType.TRANSACTION_COMMITTED, lambda e: print(e.transaction_id))
    >>> txn = Transaction("release 1.2.0", emitter=emitter)
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any

import structlog

from repo_atomic.enums import EventType, TransactionState

log = structlog.get_logger(__name__)

EventHandler = Callable[["TransactionEvent"], None]


@dataclass(frozen=True)
class TransactionEvent:
    """Notification that a transaction reached a terminal outcome.

    Attributes:
        event_type: Which outcome occurred.
        transaction_id: Identifier of the transaction.
        description: Transaction description.
        state: Final transaction state.
        metrics: Snapshot of the transaction metrics as a dictionary.
        duration: Wall-clock seconds from execution start to the outcome.
        reason: Error message that triggered a rollback, if any.
        timestamp: When the event was created (UTC).
    """

    event_type: EventType
    transaction_id: str
    description: str
    state: TransactionState
    metrics: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    reason: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "event_type": str(self.event_type),
            "transaction_id": self.transaction_id,
            "description": self.description,
            "state": str(self.state),
            "metrics": dict(self.metrics),
            "duration": self.duration,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


class EventEmitter:
    """In-process dispatcher for ``TransactionEvent`` notifications."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Register ``handler`` for events of ``event_type``."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def has_subscribers(self, event_type: EventType) -> bool:
        with self._lock:
            return bool(self._handlers.get(event_type))

    def publish(self, event: TransactionEvent) -> int:
        """Deliver ``event`` to every subscriber of its type.

        Returns:
            Number of handlers that ran without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                log.error(
                    "event_subscriber_failed",
                    event_type=str(event.event_type),
                    transaction_id=event.transaction_id,
                    error=str(e),
                    exc_info=True,
                )
        return delivered
