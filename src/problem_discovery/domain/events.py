"""Domain events for the problem discovery engine.

Every event is a frozen dataclass inheriting from ``DomainEvent``.  The
pipeline emits events as a run progresses; listeners (logging, metrics,
presentation) subscribe through the ``EventBus``.

All events carry a ``timestamp`` and a ``source_id`` identifying the
originating component.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .enums import PipelineState
from .values import IterationMetrics

# ---------------------------------------------------------------------------
# Base event
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    timestamp: float = field(default_factory=time.time)
    source_id: str = ""


# ---------------------------------------------------------------------------
# Run lifecycle events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DiscoveryStarted(DomainEvent):
    """A discovery run began for a keyword."""

    keyword: str = ""


@dataclass(frozen=True)
class ProblemsSeeded(DomainEvent):
    """The explorer produced the initial problem set."""

    keyword: str = ""
    problem_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class IterationCompleted(DomainEvent):
    """An iteration finished and its metrics were recorded."""

    metrics: IterationMetrics | None = None


@dataclass(frozen=True)
class DiscoveryCompleted(DomainEvent):
    """A run reached a terminal state."""

    keyword: str = ""
    final_state: PipelineState = PipelineState.EXHAUSTED
    problem_count: int = 0
    iterations: int = 0


# ---------------------------------------------------------------------------
# Set maintenance events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StrategySwitched(DomainEvent):
    """The bandit picked a different exploration strategy."""

    previous: str = ""
    current: str = ""


@dataclass(frozen=True)
class ProblemsMerged(DomainEvent):
    """Secondary problems were absorbed into a primary one."""

    primary_id: str = ""
    absorbed_ids: tuple[str, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class BranchExplored(DomainEvent):
    """A branch was materialised into a child problem."""

    parent_id: str = ""
    child_id: str = ""
    branch_id: str = ""


@dataclass(frozen=True)
class ProblemPruned(DomainEvent):
    """A problem was dropped to respect the tracking capacity."""

    problem_id: str = ""
    reason: str = ""
    overall: float = 0.0
