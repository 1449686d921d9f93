"""Tests for EventBus and EventStore."""

from __future__ import annotations

import logging

import pytest

from problem_discovery.domain.events import (
    DomainEvent,
    ProblemPruned,
    ProblemsMerged,
    StrategySwitched,
)
from problem_discovery.infrastructure.event_bus import EventBus, EventStore


class TestEventBus:
    """Test synchronous EventBus subscribe, publish, unsubscribe."""

    def test_subscribe_and_publish(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []
        bus.subscribe(ProblemPruned, received.append)

        event = ProblemPruned(source_id="test", problem_id="problem-a", reason="capacity")
        bus.publish(event)
        assert received == [event]

    def test_typed_subscription_filters_events(self) -> None:
        bus = EventBus()
        pruned: list[DomainEvent] = []
        bus.subscribe(ProblemPruned, pruned.append)

        bus.publish(ProblemsMerged(source_id="test", primary_id="problem-a"))
        bus.publish(ProblemPruned(source_id="test", problem_id="problem-b"))
        assert len(pruned) == 1

    def test_global_handlers_run_first(self) -> None:
        bus = EventBus()
        order: list[str] = []
        bus.subscribe(StrategySwitched, lambda e: order.append("typed"))
        bus.subscribe_all(lambda e: order.append("global"))
        bus.publish(StrategySwitched(previous="feedback-driven", current="depth-first"))
        assert order == ["global", "typed"]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []
        bus.subscribe(ProblemPruned, received.append)
        assert bus.unsubscribe(ProblemPruned, received.append) is True
        assert bus.unsubscribe(ProblemPruned, received.append) is False
        bus.publish(ProblemPruned())
        assert received == []

    def test_failing_handler_does_not_block_others(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []

        def boom(event: DomainEvent) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(ProblemPruned, boom)
        bus.subscribe(ProblemPruned, received.append)
        with caplog.at_level(logging.ERROR):
            bus.publish(ProblemPruned())
        assert len(received) == 1
        assert "handler" in caplog.text

    def test_handler_count(self) -> None:
        bus = EventBus()
        bus.subscribe(ProblemPruned, lambda e: None)
        bus.subscribe_all(lambda e: None)
        assert bus.handler_count(ProblemPruned) == 1
        assert bus.handler_count(ProblemsMerged) == 0
        assert bus.handler_count() == 2


class TestEventStore:

    def test_append_and_query(self) -> None:
        store = EventStore()
        store.append(ProblemPruned(source_id="pipeline", timestamp=10.0))
        store.append(ProblemsMerged(source_id="other", timestamp=20.0))
        assert len(store) == 2
        assert len(store.query(ProblemPruned)) == 1
        assert len(store.query(source_id="other")) == 1
        assert len(store.query(since=15.0)) == 1

    def test_max_size_keeps_newest(self) -> None:
        store = EventStore(max_size=2)
        for i in range(3):
            store.append(ProblemPruned(problem_id=f"problem-{i}"))
        assert [e.problem_id for e in store.query()] == ["problem-1", "problem-2"]

    def test_counts_and_clear(self) -> None:
        store = EventStore()
        store.append(ProblemPruned())
        store.append(ProblemPruned())
        store.append(ProblemsMerged())
        assert store.counts() == {"ProblemPruned": 2, "ProblemsMerged": 1}
        store.clear()
        assert len(store) == 0
