"""Quality evaluation: weighted scoring and adaptive pass thresholds.

The ``QualityEvaluator`` owns three things:

* the single formula for a problem's ``overall`` score (re-exported from
  the domain as ``weighted_overall``);
* the adaptive pass threshold for a problem, adjusted for confidence,
  evidence, iteration count and feedback consistency, with factors that
  are learned per domain from problems seen so far;
* the oracle-backed pass/fail decision and re-scoring, each with a
  deterministic fallback.

Classes
-------
QualityEvaluator
    Threshold computation, threshold learning, oracle decisions.
ThresholdDecision
    Result of ``QualityEvaluator.assess_threshold``.
DomainPerformance
    Running quality statistics for one domain.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, replace

import numpy as np
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, Field

from problem_discovery.domain.entities import Problem
from problem_discovery.domain.enums import FeedbackType
from problem_discovery.domain.values import (
    QualityScore,
    QualityThresholds,
    ThresholdAdjustmentFactors,
    clamp,
    weighted_overall,
)
from problem_discovery.infrastructure.config import DiscoveryConfig
from problem_discovery.infrastructure.oracle import SemanticOracle

logger = logging.getLogger(__name__)

__all__ = [
    "SUCCESS_QUALITY",
    "DomainPerformance",
    "QualityEvaluator",
    "ThresholdDecision",
    "feedback_consistency",
    "weighted_overall",
]

# A problem with overall >= SUCCESS_QUALITY counts as a success, both for
# threshold learning and for the strategy bandit.
SUCCESS_QUALITY = 7.0

LOW_CONFIDENCE = 0.6
CONSISTENT_SHARE = 0.7
MIN_PROBLEMS_FOR_LEARNING = 5
MIN_DOMAIN_PROBLEMS = 3
MIN_VALIDATED_PROBLEMS = 2
MAX_LEARNING_RATE = 0.3
GLOBAL_THRESHOLD_BOUNDS = (5.0, 9.0)


# -- Structured output schemas -----------------------------------------------


class ThresholdDecisionOutput(BaseModel):
    """Structured output schema for a pass/fail confirmation."""

    meets_threshold: bool = Field(description="Whether the problem passes")
    adjusted_threshold: float = Field(
        ge=1.0, le=10.0, description="Refined pass threshold for this problem"
    )
    reasoning: str = Field(default="", description="Why the decision was made")


class QualityScoreOutput(BaseModel):
    """Structured output schema for re-scoring a problem."""

    authenticity: float = Field(ge=1.0, le=10.0, description="Is the need real?")
    urgency: float = Field(ge=1.0, le=10.0, description="How pressing is it?")
    scale: float = Field(ge=1.0, le=10.0, description="How many people have it?")
    solution_gap: float = Field(ge=1.0, le=10.0, description="How poorly is it solved?")
    feasibility: float = Field(ge=1.0, le=10.0, description="How buildable is a fix?")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence in this scoring")
    reasoning: str = Field(default="", description="Short justification")


# -- Prompts -----------------------------------------------------------------

_THRESHOLD_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a quality gate for a problem discovery engine. Decide "
            "whether a candidate problem is strong enough to keep tracking.\n\n"
            "A locally computed adaptive threshold is supplied; it already "
            "accounts for confidence, evidence, refinement rounds and feedback "
            "consistency. Confirm or override the pass decision and return the "
            "threshold you actually applied.",
        ),
        (
            "human",
            "## Problem\n{formulation}\n\n"
            "**Domain**: {domain}\n"
            "**Scores**: {scores}\n"
            "**Evidence items**: {evidence_count}\n"
            "**Feedback items**: {feedback_count}\n"
            "**Refinement rounds**: {iteration_count}\n"
            "**Adaptive threshold**: {adaptive_threshold}\n\n"
            "Does this problem meet the threshold?",
        ),
    ]
)

_RESCORE_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You score candidate user problems on five dimensions from 1 to 10: "
            "authenticity, urgency, scale, solution_gap and feasibility, plus "
            "a confidence between 0 and 1. Base the scores on the formulation "
            "and the evidence. Do not compute an overall score.",
        ),
        (
            "human",
            "## Problem\n{formulation}\n\n"
            "**Original formulation**: {original_formulation}\n"
            "**Domain**: {domain}\n"
            "**Current scores**: {scores}\n"
            "**Evidence**:\n{evidence}\n\n"
            "Re-score this problem.",
        ),
    ]
)


# -- Value types -------------------------------------------------------------


@dataclass(frozen=True)
class ThresholdDecision:
    """Outcome of a pass/fail check."""

    meets: bool
    threshold: float
    reasoning: str = ""
    degraded: bool = False


@dataclass(frozen=True)
class DomainPerformance:
    """Sample-weighted running statistics for one domain."""

    average_quality: float = 0.0
    success_rate: float = 0.0
    samples: int = 0


def feedback_consistency(problem: Problem) -> tuple[FeedbackType | None, float]:
    """Dominant feedback type on *problem* and its share of all feedback."""
    if not problem.feedback_history:
        return None, 0.0
    counts = Counter(fb.feedback_type for fb in problem.feedback_history)
    dominant, count = counts.most_common(1)[0]
    return dominant, count / len(problem.feedback_history)


def _success_rate(problems: Sequence[Problem]) -> float:
    return float(np.mean([p.overall >= SUCCESS_QUALITY for p in problems]))


# -- QualityEvaluator ------------------------------------------------------


class QualityEvaluator:
    """Adaptive thresholds and scoring for problems.

    Parameters
    ----------
    config:
        Discovery configuration (thresholds, adaptive mode, timeouts).
    oracle:
        Semantic oracle; defaults to an unavailable one, which makes every
        decision deterministic.
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        oracle: SemanticOracle | None = None,
    ) -> None:
        self.config = config or DiscoveryConfig()
        self._oracle = oracle or SemanticOracle()
        self._global_threshold = self.config.initial_quality_threshold
        self._learned_factors: dict[str, ThresholdAdjustmentFactors] = {}
        self._performance: dict[str, DomainPerformance] = {}
        self._lock = threading.Lock()

    # -- state --------------------------------------------------------------

    @property
    def global_threshold(self) -> float:
        return self._global_threshold

    @property
    def learned_factors(self) -> dict[str, ThresholdAdjustmentFactors]:
        with self._lock:
            return dict(self._learned_factors)

    @property
    def domain_performance(self) -> dict[str, DomainPerformance]:
        with self._lock:
            return dict(self._performance)

    # -- thresholds ---------------------------------------------------------

    def threshold_for(self, problem: Problem) -> QualityThresholds:
        """Configured thresholds for the problem's domain, else global ones."""
        for thresholds in self.config.domain_thresholds:
            if thresholds.domain in problem.domain:
                return thresholds
        return QualityThresholds(
            domain=None,
            min_overall_score=self._global_threshold,
            adjustment_factors=self.config.adjustment_factors,
        )

    def adjustment_factors_for(
        self, problem: Problem, base: QualityThresholds | None = None
    ) -> ThresholdAdjustmentFactors:
        """Learned factors for the problem's domain, else configured ones."""
        with self._lock:
            for domain in problem.domain:
                learned = self._learned_factors.get(domain)
                if learned is not None:
                    return learned
        if base is not None and base.adjustment_factors is not None:
            return base.adjustment_factors
        return self.config.adjustment_factors

    def adaptive_threshold(
        self, problem: Problem, base: QualityThresholds | None = None
    ) -> float:
        """Pass threshold for *problem*, clamped to ``[1, 10]``.

        Starting from ``base.min_overall_score`` the threshold is lowered for
        low-confidence problems, raised with evidence volume and relevance,
        raised logarithmically with refinement rounds, and moved by
        consistent feedback (up for validation, down for rejection).
        """
        base = base or self.threshold_for(problem)
        threshold = base.min_overall_score
        if not self.config.adaptive_quality_thresholds:
            return threshold

        factors = self.adjustment_factors_for(problem, base)
        score = problem.quality_score

        if score.confidence < LOW_CONFIDENCE:
            threshold += factors.low_confidence_adjustment

        if problem.evidence:
            mean_relevance = float(np.mean([e.relevance_score for e in problem.evidence]))
            evidence_effect = len(problem.evidence) * 0.1 * (0.5 + (mean_relevance - 0.5) * 2)
            threshold += min(factors.high_evidence_boost, evidence_effect)

        iterations = problem.metadata.iteration_count
        if iterations > 0:
            threshold += min(factors.iteration_boost * math.log(iterations + 1), 1.0)

        dominant, share = feedback_consistency(problem)
        if share > CONSISTENT_SHARE:
            mean_confidence = float(
                np.mean([fb.confidence_score for fb in problem.feedback_history])
            )
            if dominant is FeedbackType.VALIDATION:
                threshold += factors.feedback_consistency_boost * mean_confidence
            elif dominant is FeedbackType.REJECTION:
                threshold -= factors.feedback_consistency_boost * mean_confidence

        return clamp(threshold, 1.0, 10.0)

    # -- oracle-backed decisions --------------------------------------------

    def assess_threshold(self, problem: Problem) -> ThresholdDecision:
        """Pass/fail decision, confirmed by the oracle when available."""
        threshold = self.adaptive_threshold(problem)
        result = self._oracle.request(
            _THRESHOLD_PROMPT,
            {
                "formulation": problem.current_formulation,
                "domain": ", ".join(problem.domain),
                "scores": json.dumps(problem.quality_score.to_dict()),
                "evidence_count": len(problem.evidence),
                "feedback_count": len(problem.feedback_history),
                "iteration_count": problem.metadata.iteration_count,
                "adaptive_threshold": f"{threshold:.2f}",
            },
            ThresholdDecisionOutput,
            timeout=self.config.oracle_timeout,
        )
        if not result.is_ok:
            return ThresholdDecision(
                meets=problem.overall >= threshold,
                threshold=threshold,
                reasoning="deterministic comparison against adaptive threshold",
                degraded=True,
            )
        output = result.value
        logger.debug(
            "QualityEvaluator: %s %s threshold %.2f (local %.2f): %s",
            problem.problem_id,
            "meets" if output.meets_threshold else "fails",
            output.adjusted_threshold,
            threshold,
            output.reasoning[:100],
        )
        return ThresholdDecision(
            meets=output.meets_threshold,
            threshold=output.adjusted_threshold,
            reasoning=output.reasoning,
        )

    def meets_threshold(self, problem: Problem) -> bool:
        return self.assess_threshold(problem).meets

    def recalculate_score(self, problem: Problem) -> QualityScore:
        """Re-score *problem*; never raises.

        The fallback nudges authenticity up with high-relevance evidence and
        moves confidence by 0.1 depending on the amount of evidence.
        """
        result = self._oracle.request(
            _RESCORE_PROMPT,
            {
                "formulation": problem.current_formulation,
                "original_formulation": problem.original_formulation,
                "domain": ", ".join(problem.domain),
                "scores": json.dumps(problem.quality_score.to_dict()),
                "evidence": "\n".join(
                    f"- [{e.type.value}, relevance {e.relevance_score:.2f}] {e.content[:200]}"
                    for e in problem.evidence
                )
                or "None",
            },
            QualityScoreOutput,
            timeout=self.config.oracle_timeout,
        )
        if result.is_ok:
            output = result.value
            return QualityScore.clamped(
                authenticity=output.authenticity,
                urgency=output.urgency,
                scale=output.scale,
                solution_gap=output.solution_gap,
                feasibility=output.feasibility,
                confidence=output.confidence,
            )

        score = problem.quality_score
        high_relevance = sum(1 for e in problem.evidence if e.relevance_score > 0.7)
        authenticity = min(10.0, score.authenticity + min(1.0, high_relevance / 5))
        if len(problem.evidence) > 2:
            confidence = score.confidence + 0.1
        else:
            confidence = score.confidence - 0.1
        return score.with_updates(
            authenticity=authenticity,
            confidence=clamp(confidence, 0.1, 1.0),
        )

    # -- learning -----------------------------------------------------------

    def learn_from_problems(self, problems: Sequence[Problem]) -> None:
        """Tune per-domain adjustment factors from validated problems."""
        if not self.config.adaptive_quality_thresholds:
            return
        if len(problems) < MIN_PROBLEMS_FOR_LEARNING:
            return

        by_domain: dict[str, list[Problem]] = defaultdict(list)
        for problem in problems:
            if problem.feedback_history:
                by_domain[problem.domain[0]].append(problem)

        for domain, group in sorted(by_domain.items()):
            if len(group) < MIN_DOMAIN_PROBLEMS:
                continue
            validated = [
                p
                for p in group
                if any(fb.feedback_type is FeedbackType.VALIDATION for fb in p.feedback_history)
            ]
            if len(validated) < MIN_VALIDATED_PROBLEMS:
                continue
            self._learn_domain(domain, validated)

    def _learn_domain(self, domain: str, validated: list[Problem]) -> None:
        domain_rate = _success_rate(validated)
        batch = len(validated)

        with self._lock:
            perf = self._performance.get(domain, DomainPerformance())
            total = perf.samples + batch
            rate = min(MAX_LEARNING_RATE, batch / total)
            mean_quality = float(np.mean([p.overall for p in validated]))
            self._performance[domain] = DomainPerformance(
                average_quality=(perf.average_quality * perf.samples + mean_quality * batch) / total,
                success_rate=(perf.success_rate * perf.samples + domain_rate * batch) / total,
                samples=total,
            )
            factors = self._learned_factors.get(domain)

        if factors is None:
            factors = self.config.adjustment_factors
            for thresholds in self.config.domain_thresholds:
                if thresholds.domain == domain and thresholds.adjustment_factors is not None:
                    factors = thresholds.adjustment_factors
                    break

        def nudged(value: float, subgroup: list[Problem], low: float, high: float) -> float:
            if not subgroup:
                return value
            sub_rate = _success_rate(subgroup)
            if sub_rate > domain_rate + 0.1:
                value += rate
            elif sub_rate < domain_rate - 0.1:
                value -= rate
            return clamp(value, low, high)

        high_evidence = [p for p in validated if len(p.evidence) > 3]
        high_iteration = [p for p in validated if p.metadata.iteration_count > 2]
        consistent = [p for p in validated if feedback_consistency(p)[1] > CONSISTENT_SHARE]
        low_confidence = [p for p in validated if p.quality_score.confidence < LOW_CONFIDENCE]

        low_adjustment = factors.low_confidence_adjustment
        if low_confidence:
            low_rate = _success_rate(low_confidence)
            if low_rate > domain_rate - 0.05:
                low_adjustment = min(-0.1, low_adjustment + rate)
            elif low_rate < domain_rate - 0.2:
                low_adjustment = max(-1.0, low_adjustment - rate)

        learned = replace(
            factors,
            high_evidence_boost=nudged(factors.high_evidence_boost, high_evidence, 0.1, 1.0),
            iteration_boost=nudged(factors.iteration_boost, high_iteration, 0.05, 0.5),
            feedback_consistency_boost=nudged(
                factors.feedback_consistency_boost, consistent, 0.1, 0.8
            ),
            low_confidence_adjustment=low_adjustment,
        )
        with self._lock:
            self._learned_factors[domain] = learned

        logger.info(
            "QualityEvaluator: learned factors for %s from %d problems "
            "(success rate %.2f, learning rate %.2f)",
            domain,
            batch,
            domain_rate,
            rate,
        )

    def update_global_threshold(self, problems: Sequence[Problem]) -> float:
        """Re-learn factors and move the global threshold towards the mean.

        Returns the (possibly unchanged) global threshold.
        """
        if not self.config.adaptive_quality_thresholds:
            return self._global_threshold
        if len(problems) < MIN_PROBLEMS_FOR_LEARNING:
            return self._global_threshold

        self.learn_from_problems(problems)
        mean_quality = float(np.mean([p.overall for p in problems]))
        if mean_quality > 8.0:
            factor = 1.05
        elif mean_quality < 4.0:
            factor = 0.8
        else:
            factor = 0.9
        low, high = GLOBAL_THRESHOLD_BOUNDS
        self._global_threshold = clamp(mean_quality * factor, low, high)
        logger.info(
            "QualityEvaluator: global threshold -> %.2f (mean quality %.2f)",
            self._global_threshold,
            mean_quality,
        )
        return self._global_threshold
