"""Exploration strategies and the UCB1 bandit that chooses between them.

An exploration strategy is an ordering over problems: it decides which
problems each stage looks at first and which survive top-N pruning.  After
every iteration the bandit credits the strategy that was in charge with the
share of successful problems and, in adaptive mode, picks the next strategy
by UCB1.

Classes
-------
BaseExplorationStrategy
    Abstract base class for orderings.
DepthFirstStrategy
    Best problems first (overall descending).
BreadthFirstStrategy
    Least-refined problems first (iteration count ascending).
EvidenceDrivenStrategy
    Least-evidenced problems first (evidence count ascending).
FeedbackDrivenStrategy
    Most-discussed problems first (feedback count descending).
StrategyBandit
    UCB1 selection with exponential-moving-average success rates.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any

from problem_discovery.domain.entities import Problem
from problem_discovery.domain.values import StrategyStats

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "feedback-driven"
MAX_EMA_ALPHA = 0.3


# ===================================================================== #
#  Strategies                                                            #
# ===================================================================== #


class BaseExplorationStrategy(ABC):
    """Ordering of problems used to prioritise work and pruning."""

    name: str = ""

    @abstractmethod
    def sort_key(self, problem: Problem) -> Any:
        """Key such that ascending order is the strategy's priority order."""

    def order(self, problems: Iterable[Problem]) -> list[Problem]:
        """Sort *problems* by priority; ties go to the smaller id."""
        return sorted(problems, key=lambda p: (self.sort_key(p), p.problem_id))


class DepthFirstStrategy(BaseExplorationStrategy):
    name = "depth-first"

    def sort_key(self, problem: Problem) -> Any:
        return -problem.overall


class BreadthFirstStrategy(BaseExplorationStrategy):
    name = "breadth-first"

    def sort_key(self, problem: Problem) -> Any:
        return problem.metadata.iteration_count


class EvidenceDrivenStrategy(BaseExplorationStrategy):
    name = "evidence-driven"

    def sort_key(self, problem: Problem) -> Any:
        return len(problem.evidence)


class FeedbackDrivenStrategy(BaseExplorationStrategy):
    name = "feedback-driven"

    def sort_key(self, problem: Problem) -> Any:
        return -len(problem.feedback_history)


def default_strategies() -> dict[str, BaseExplorationStrategy]:
    """Fresh instances of the four built-in strategies, keyed by name."""
    strategies: list[BaseExplorationStrategy] = [
        DepthFirstStrategy(),
        BreadthFirstStrategy(),
        EvidenceDrivenStrategy(),
        FeedbackDrivenStrategy(),
    ]
    return {s.name: s for s in strategies}


# ===================================================================== #
#  UCB1 Bandit                                                           #
# ===================================================================== #


class StrategyBandit:
    """Chooses exploration strategies by UCB1.

    Each strategy keeps a success rate and a sample count.  Strategies with
    no samples are unscored; when none is scored the bandit falls back to
    ``feedback-driven``.

    Parameters
    ----------
    strategies:
        Available strategies; defaults to the four built-ins.
    initial:
        Name of the strategy in charge before the first selection.
    """

    def __init__(
        self,
        strategies: Sequence[BaseExplorationStrategy] | None = None,
        initial: str = DEFAULT_STRATEGY,
    ) -> None:
        self._strategies = (
            {s.name: s for s in strategies} if strategies else default_strategies()
        )
        if initial not in self._strategies:
            raise ValueError(f"Unknown strategy {initial!r}")
        self._stats: dict[str, StrategyStats] = {
            name: StrategyStats() for name in self._strategies
        }
        self._current = initial
        self._lock = threading.Lock()

    # -- queries ------------------------------------------------------------

    @property
    def current(self) -> BaseExplorationStrategy:
        return self._strategies[self._current]

    @property
    def current_name(self) -> str:
        return self._current

    @property
    def names(self) -> list[str]:
        return list(self._strategies)

    def stats(self) -> dict[str, StrategyStats]:
        with self._lock:
            return dict(self._stats)

    def ucb_scores(self) -> dict[str, float]:
        """UCB1 score of every strategy that has samples."""
        with self._lock:
            total = sum(s.samples for s in self._stats.values())
            return {
                name: s.success_rate + math.sqrt(2.0 * math.log(total) / s.samples)
                for name, s in self._stats.items()
                if s.samples > 0
            }

    # -- updates ------------------------------------------------------------

    def seed(self, name: str, stats: StrategyStats) -> None:
        """Overwrite the statistics of *name* (warm start)."""
        if name not in self._strategies:
            raise KeyError(f"Unknown strategy {name!r}")
        with self._lock:
            self._stats[name] = stats

    def select(self) -> BaseExplorationStrategy:
        """Make the strategy with the highest UCB1 score current."""
        scores = self.ucb_scores()
        if scores:
            best = max(sorted(scores), key=lambda name: scores[name])
        else:
            best = DEFAULT_STRATEGY if DEFAULT_STRATEGY in self._strategies else self._current
        if best != self._current:
            logger.info(
                "StrategyBandit: switching %s -> %s (ucb %.3f)",
                self._current,
                best,
                scores.get(best, float("nan")),
            )
        self._current = best
        return self.current

    def record(self, success_rate: float, problem_count: int) -> StrategyStats:
        """Credit the current strategy with *success_rate* over *problem_count*.

        The new rate is an exponential moving average with
        ``alpha = min(0.3, problem_count / new_total_samples)``.
        """
        with self._lock:
            stats = self._stats[self._current]
            total = stats.samples + problem_count
            if total <= 0:
                return stats
            alpha = min(MAX_EMA_ALPHA, problem_count / total)
            rate = (1.0 - alpha) * stats.success_rate + alpha * success_rate
            updated = StrategyStats(success_rate=rate, samples=total)
            self._stats[self._current] = updated
        logger.debug(
            "StrategyBandit: %s success %.2f over %d samples",
            self._current,
            updated.success_rate,
            updated.samples,
        )
        return updated
