"""Tests for domain value objects."""

from __future__ import annotations

import pytest

from problem_discovery.domain.enums import AgentType, EvidenceType, FeedbackType
from problem_discovery.domain.values import (
    DIMENSION_WEIGHTS,
    ORIGINAL_PROBLEM_KEY,
    AgentFeedback,
    Evidence,
    QualityScore,
    QualityThresholds,
    clamp,
    round_half_up,
    weighted_overall,
)

# ===================================================================== #
#  QualityScore                                                           #
# ===================================================================== #


class TestQualityScore:

    def test_weights_sum_to_one(self) -> None:
        assert sum(DIMENSION_WEIGHTS.values()) == pytest.approx(1.0)

    def test_default_overall(self) -> None:
        assert QualityScore().overall == 5.0

    def test_overall_is_weighted_and_rounded(self) -> None:
        score = QualityScore(
            authenticity=7.0, urgency=6.0, scale=6.0, solution_gap=7.0, feasibility=5.0
        )
        assert score.overall == pytest.approx(6.4)
        assert weighted_overall(7.3, 6.1, 5.9, 7.7, 4.4) == pytest.approx(6.6)

    def test_overall_rounds_halves_up(self) -> None:
        assert weighted_overall(5.2, 5.0, 5.0, 5.0, 5.0) == 5.1
        assert weighted_overall(8.0, 7.0, 7.0, 7.0, 7.0) == 7.3
        assert QualityScore(authenticity=5.2).overall == 5.1

    def test_overall_tracks_dimensions(self) -> None:
        score = QualityScore().with_updates(authenticity=9.0)
        assert score.overall == weighted_overall(9.0, 5.0, 5.0, 5.0, 5.0)

    def test_out_of_range_dimension_rejected(self) -> None:
        with pytest.raises(ValueError, match="urgency"):
            QualityScore(urgency=11.0)
        with pytest.raises(ValueError, match="confidence"):
            QualityScore(confidence=1.5)

    def test_clamped(self) -> None:
        score = QualityScore.clamped(authenticity=14.0, scale=0.0, confidence=-0.2)
        assert score.authenticity == 10.0
        assert score.scale == 1.0
        assert score.confidence == 0.0

    def test_clamped_rejects_unknown_field(self) -> None:
        with pytest.raises(ValueError, match="Unknown score field"):
            QualityScore.clamped(overall=7.0)

    def test_with_updates_returns_new_instance(self) -> None:
        original = QualityScore()
        updated = original.with_updates(feasibility=12.0)
        assert updated.feasibility == 10.0
        assert original.feasibility == 5.0

    def test_to_dict_includes_overall(self) -> None:
        data = QualityScore().to_dict()
        assert data["overall"] == 5.0
        assert data["confidence"] == 0.5
        assert set(data) == {
            "authenticity",
            "urgency",
            "scale",
            "solution_gap",
            "feasibility",
            "confidence",
            "overall",
        }


def test_clamp() -> None:
    assert clamp(0.5, 1.0, 10.0) == 1.0
    assert clamp(12.0, 1.0, 10.0) == 10.0
    assert clamp(4.2, 1.0, 10.0) == 4.2


# ===================================================================== #
#  Evidence / feedback                                                    #
# ===================================================================== #


class TestEvidence:

    def test_relevance_range(self) -> None:
        with pytest.raises(ValueError):
            Evidence(type=EvidenceType.FORUM_POST, source="s", content="c", relevance_score=1.2)

    def test_with_origin_tags_copy(self) -> None:
        evidence = Evidence(
            type=EvidenceType.FORUM_POST, source="s", content="c", metadata={"k": 1}
        )
        tagged = evidence.with_origin("problem-b")
        assert tagged.metadata == {"k": 1, ORIGINAL_PROBLEM_KEY: "problem-b"}
        assert ORIGINAL_PROBLEM_KEY not in evidence.metadata
        assert tagged.timestamp == evidence.timestamp


class TestAgentFeedback:

    def _feedback(self, **overrides: object) -> AgentFeedback:
        kwargs: dict[str, object] = {
            "agent_id": "evaluator-1",
            "agent_type": AgentType.EVALUATOR,
            "problem_id": "problem-a",
            "feedback_type": FeedbackType.VALIDATION,
            "timestamp": 100.0,
        }
        kwargs.update(overrides)
        return AgentFeedback(**kwargs)  # type: ignore[arg-type]

    def test_confidence_range(self) -> None:
        with pytest.raises(ValueError):
            self._feedback(confidence_score=1.1)

    def test_dedup_key_ignores_feedback_id(self) -> None:
        first = self._feedback()
        second = self._feedback(feedback_type=FeedbackType.REJECTION)
        assert first.feedback_id != second.feedback_id
        assert first.dedup_key == second.dedup_key == ("evaluator-1", 100.0)

    def test_reassigned_remembers_origin(self) -> None:
        moved = self._feedback().reassigned("problem-z")
        assert moved.problem_id == "problem-z"
        assert moved.metadata[ORIGINAL_PROBLEM_KEY] == "problem-a"
        assert moved.dedup_key == ("evaluator-1", 100.0)


def test_quality_thresholds_range() -> None:
    assert QualityThresholds().min_overall_score == 6.0
    with pytest.raises(ValueError):
        QualityThresholds(min_overall_score=0.5)


class TestRoundHalfUp:

    def test_halves_round_up(self) -> None:
        assert round_half_up(5.05) == 5.1
        assert round_half_up(7.25) == 7.3
        assert round_half_up(6.45) == 6.5

    def test_below_half_rounds_down(self) -> None:
        assert round_half_up(5.04) == 5.0
        assert round_half_up(7.0) == 7.0

    def test_digits(self) -> None:
        assert round_half_up(2.675, 2) == 2.68
        assert round_half_up(6.5, 0) == 7.0
