"""Tests for exploration strategies and the UCB1 bandit."""

from __future__ import annotations

import math

import pytest

from problem_discovery.domain.values import StrategyStats
from problem_discovery.services.strategies import (
    BreadthFirstStrategy,
    DepthFirstStrategy,
    EvidenceDrivenStrategy,
    FeedbackDrivenStrategy,
    StrategyBandit,
    default_strategies,
)
from problem_discovery.testing import make_feedback
from tests.helpers.problems import build_problem

# ===================================================================== #
#  Orderings                                                              #
# ===================================================================== #


@pytest.fixture
def problems():
    strong = build_problem(problem_id="problem-c", authenticity=9.0, evidence_count=3,
                           iteration_count=2)
    fresh = build_problem(problem_id="problem-b", evidence_count=1)
    discussed = build_problem(problem_id="problem-a", iteration_count=1, evidence_count=2)
    discussed.add_feedback(make_feedback("evaluator-1", discussed))
    discussed.add_feedback(make_feedback("simulator-1", discussed))
    return [strong, fresh, discussed]


def _ids(ordered) -> list[str]:
    return [p.problem_id for p in ordered]


class TestStrategies:

    def test_default_strategies(self) -> None:
        assert list(default_strategies()) == [
            "depth-first",
            "breadth-first",
            "evidence-driven",
            "feedback-driven",
        ]

    def test_depth_first_prefers_quality(self, problems) -> None:
        assert _ids(DepthFirstStrategy().order(problems)) == ["problem-c", "problem-a", "problem-b"]

    def test_breadth_first_prefers_fewer_iterations(self, problems) -> None:
        assert _ids(BreadthFirstStrategy().order(problems)) == [
            "problem-b", "problem-a", "problem-c"
        ]

    def test_evidence_driven_prefers_less_evidence(self, problems) -> None:
        assert _ids(EvidenceDrivenStrategy().order(problems)) == [
            "problem-b", "problem-a", "problem-c"
        ]

    def test_feedback_driven_prefers_discussion(self, problems) -> None:
        assert _ids(FeedbackDrivenStrategy().order(problems)) == [
            "problem-a", "problem-b", "problem-c"
        ]


# ===================================================================== #
#  Bandit                                                                 #
# ===================================================================== #


class TestStrategyBandit:

    def test_starts_feedback_driven(self) -> None:
        bandit = StrategyBandit()
        assert bandit.current_name == "feedback-driven"
        assert bandit.ucb_scores() == {}

    def test_unknown_initial_rejected(self) -> None:
        with pytest.raises(ValueError):
            StrategyBandit(initial="random-walk")

    def test_select_without_samples_keeps_default(self) -> None:
        bandit = StrategyBandit(initial="depth-first")
        assert bandit.select().name == "feedback-driven"

    def test_record_uses_capped_moving_average(self) -> None:
        bandit = StrategyBandit()
        first = bandit.record(1.0, 5)
        assert first.samples == 5
        assert first.success_rate == pytest.approx(0.3)
        second = bandit.record(1.0, 5)
        assert second.samples == 10
        assert second.success_rate == pytest.approx(0.51)

    def test_record_small_batch_uses_sample_share(self) -> None:
        bandit = StrategyBandit()
        bandit.seed("feedback-driven", StrategyStats(success_rate=0.5, samples=18))
        stats = bandit.record(1.0, 2)
        assert stats.success_rate == pytest.approx(0.55)

    def test_ucb_scores(self) -> None:
        bandit = StrategyBandit()
        bandit.seed("depth-first", StrategyStats(success_rate=0.6, samples=4))
        bandit.seed("breadth-first", StrategyStats(success_rate=0.2, samples=4))
        scores = bandit.ucb_scores()
        bonus = math.sqrt(2.0 * math.log(8) / 4)
        assert scores == {
            "depth-first": pytest.approx(0.6 + bonus),
            "breadth-first": pytest.approx(0.2 + bonus),
        }

    def test_seed_unknown_strategy(self) -> None:
        with pytest.raises(KeyError):
            StrategyBandit().seed("random-walk", StrategyStats())

    def test_converges_on_successful_strategy(self) -> None:
        bandit = StrategyBandit()
        bandit.seed("depth-first", StrategyStats(success_rate=0.9, samples=20))
        for name in ("breadth-first", "evidence-driven", "feedback-driven"):
            bandit.seed(name, StrategyStats(success_rate=0.1, samples=20))

        chosen = []
        for _ in range(10):
            strategy = bandit.select()
            chosen.append(strategy.name)
            bandit.record(1.0 if strategy.name == "depth-first" else 0.0, 5)

        assert chosen == ["depth-first"] * 10
        assert bandit.stats()["depth-first"].success_rate > 0.9

    def test_ties_break_by_name(self) -> None:
        bandit = StrategyBandit()
        for name in bandit.names:
            bandit.seed(name, StrategyStats(success_rate=0.5, samples=3))
        assert bandit.select().name == "breadth-first"
