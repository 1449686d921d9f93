"""Shared fixtures for the problem discovery test suite."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from problem_discovery.domain.entities import Problem
from problem_discovery.infrastructure.config import DiscoveryConfig
from problem_discovery.infrastructure.event_bus import EventBus, EventStore
from tests.helpers.problems import build_problem


@pytest.fixture
def make_problem() -> Callable[..., Problem]:
    """Factory fixture for ``Problem`` instances."""
    return build_problem


@pytest.fixture
def sample_problem() -> Problem:
    return build_problem(
        problem_id="problem-a",
        authenticity=7.0,
        urgency=6.0,
        scale=6.0,
        solution_gap=7.0,
        feasibility=5.0,
        confidence=0.7,
        evidence_count=2,
    )


@pytest.fixture
def quiet_config() -> DiscoveryConfig:
    """Single iteration, no branching, small concurrency."""
    return DiscoveryConfig(max_iterations=1, enable_branching=False, max_concurrency=2)


@pytest.fixture
def recorded_bus() -> tuple[EventBus, EventStore]:
    """Event bus wired to an in-memory store."""
    bus = EventBus()
    store = EventStore()
    bus.subscribe_all(store.append)
    return bus, store
