"""Event bus infrastructure for the problem discovery engine.

Provides a synchronous pub-sub bus and an in-memory event store that records
the course of discovery runs.  The bus dispatches ``DomainEvent`` instances
to registered handlers, catching and logging handler errors so that a
faulty subscriber never interrupts a run.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from collections.abc import Callable, Sequence

from problem_discovery.domain.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], None]


# ===================================================================== #
#  Event Bus                                                             #
# ===================================================================== #

class EventBus:
    """Thread-safe synchronous pub-sub for domain events.

    Handlers are invoked in registration order, global handlers first.  A
    handler that raises is logged and skipped.

    Usage::

        bus = EventBus()
        bus.subscribe(ProblemsMerged, on_merge)
        pipeline = ProblemDiscoveryPipeline(config, event_bus=bus)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)
        self._global_handlers: list[Handler] = []

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        """Register *handler* for a specific *event_type*."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register *handler* to receive every published event."""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: type[DomainEvent], handler: Handler) -> bool:
        """Remove *handler* from *event_type*. Returns ``True`` if found."""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            try:
                handlers.remove(handler)
                return True
            except ValueError:
                return False

    def publish(self, event: DomainEvent) -> None:
        """Publish *event* to all matching handlers."""
        with self._lock:
            global_snapshot = list(self._global_handlers)
            typed_snapshot = list(self._handlers.get(type(event), []))

        for handler in (*global_snapshot, *typed_snapshot):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "EventBus: handler %r failed on %s", handler, type(event).__name__
                )

    def handler_count(self, event_type: type[DomainEvent] | None = None) -> int:
        """Number of handlers for *event_type*, or in total when ``None``."""
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(event_type, []))
            total = sum(len(hs) for hs in self._handlers.values())
            return total + len(self._global_handlers)


# ===================================================================== #
#  Event Store                                                           #
# ===================================================================== #

class EventStore:
    """In-memory append-only event log.

    Wire it to a bus to record every event of a run::

        store = EventStore()
        bus.subscribe_all(store.append)
    """

    def __init__(self, max_size: int = 0) -> None:
        """Create a store.

        Parameters
        ----------
        max_size:
            Maximum number of events to keep.  ``0`` means unlimited.
        """
        self._events: list[DomainEvent] = []
        self._max_size = max_size
        self._lock = threading.Lock()

    def append(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self._max_size > 0 and len(self._events) > self._max_size:
                self._events = self._events[-self._max_size:]

    def query(
        self,
        event_type: type[DomainEvent] | None = None,
        source_id: str | None = None,
        since: float | None = None,
    ) -> Sequence[DomainEvent]:
        """Return events matching all of the given filters, oldest first."""
        with self._lock:
            result: list[DomainEvent] = list(self._events)
        if event_type is not None:
            result = [e for e in result if isinstance(e, event_type)]
        if source_id is not None:
            result = [e for e in result if e.source_id == source_id]
        if since is not None:
            result = [e for e in result if e.timestamp >= since]
        return result

    def counts(self) -> dict[str, int]:
        """Number of stored events per event class name."""
        with self._lock:
            return dict(Counter(type(e).__name__ for e in self._events))

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
