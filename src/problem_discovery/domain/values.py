"""Value objects for the problem discovery engine.

All types here are frozen dataclasses: immutable and compared by value.
They represent scores, evidence, audit records and thresholds that have no
identity beyond their content.
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .enums import AgentType, EvidenceType, EvolutionStage, FeedbackType, RelationshipType

# ---------------------------------------------------------------------------
# QualityScore
# ---------------------------------------------------------------------------

SCORE_DIMENSIONS: tuple[str, ...] = (
    "authenticity",
    "urgency",
    "scale",
    "solution_gap",
    "feasibility",
)

DIMENSION_WEIGHTS: Mapping[str, float] = {
    "authenticity": 0.25,
    "urgency": 0.20,
    "scale": 0.20,
    "solution_gap": 0.25,
    "feasibility": 0.10,
}

MIN_DIMENSION = 1.0
MAX_DIMENSION = 10.0


def round_half_up(value: float, digits: int = 1) -> float:
    """Round *value* to *digits* decimals, rounding halves up.

    The builtin ``round`` rounds halves to even on the binary value, so
    ``5.05`` may become ``5.0``.  Float noise below 1e-9 is absorbed.
    """
    factor = 10**digits
    return math.floor(value * factor + 0.5 + 1e-9) / factor


def weighted_overall(
    authenticity: float,
    urgency: float,
    scale: float,
    solution_gap: float,
    feasibility: float,
) -> float:
    """Weighted mean of the five quality dimensions, rounded to one decimal."""
    total = (
        DIMENSION_WEIGHTS["authenticity"] * authenticity
        + DIMENSION_WEIGHTS["urgency"] * urgency
        + DIMENSION_WEIGHTS["scale"] * scale
        + DIMENSION_WEIGHTS["solution_gap"] * solution_gap
        + DIMENSION_WEIGHTS["feasibility"] * feasibility
    )
    return round_half_up(total)


def clamp(value: float, low: float, high: float) -> float:
    """Clamp *value* into ``[low, high]``."""
    return max(low, min(high, value))


@dataclass(frozen=True)
class QualityScore:
    """Multi-dimensional quality assessment of a problem.

    The five dimensions live in ``[1, 10]`` and ``confidence`` in ``[0, 1]``.
    ``overall`` is derived from the dimensions on every access, so it can
    never disagree with them.
    """

    authenticity: float = 5.0
    urgency: float = 5.0
    scale: float = 5.0
    solution_gap: float = 5.0
    feasibility: float = 5.0
    confidence: float = 0.5

    def __post_init__(self) -> None:
        for name in SCORE_DIMENSIONS:
            value = getattr(self, name)
            if not MIN_DIMENSION <= value <= MAX_DIMENSION:
                raise ValueError(
                    f"{name} must be in [{MIN_DIMENSION}, {MAX_DIMENSION}], got {value}"
                )
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    @classmethod
    def clamped(cls, **values: float) -> QualityScore:
        """Build a score, clamping every supplied value into its legal range."""
        fixed: dict[str, float] = {}
        for name, value in values.items():
            if name == "confidence":
                fixed[name] = clamp(float(value), 0.0, 1.0)
            elif name in SCORE_DIMENSIONS:
                fixed[name] = clamp(float(value), MIN_DIMENSION, MAX_DIMENSION)
            else:
                raise ValueError(f"Unknown score field: {name!r}")
        return cls(**fixed)

    @property
    def overall(self) -> float:
        """Weighted overall score (see ``weighted_overall``)."""
        return weighted_overall(
            self.authenticity,
            self.urgency,
            self.scale,
            self.solution_gap,
            self.feasibility,
        )

    def with_updates(self, **values: float) -> QualityScore:
        """Return a copy with the given fields replaced (and clamped)."""
        merged = {name: getattr(self, name) for name in (*SCORE_DIMENSIONS, "confidence")}
        merged.update(values)
        return QualityScore.clamped(**merged)

    def to_dict(self) -> dict[str, float]:
        data = {name: getattr(self, name) for name in SCORE_DIMENSIONS}
        data["confidence"] = self.confidence
        data["overall"] = self.overall
        return data


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

ORIGINAL_PROBLEM_KEY = "original_problem_id"


@dataclass(frozen=True)
class Evidence:
    """A single supporting observation for a problem."""

    type: EvidenceType
    source: str
    content: str
    relevance_score: float = 0.5
    timestamp: float = field(default_factory=time.time)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.relevance_score <= 1.0:
            raise ValueError(
                f"relevance_score must be in [0, 1], got {self.relevance_score}"
            )

    def with_origin(self, problem_id: str) -> Evidence:
        """Copy tagged with the id of the problem it was merged from."""
        return replace(self, metadata={**self.metadata, ORIGINAL_PROBLEM_KEY: problem_id})


# ---------------------------------------------------------------------------
# EvolutionRecord
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EvolutionRecord:
    """Audit entry for a single formulation change."""

    stage: EvolutionStage
    previous_formulation: str
    current_formulation: str
    agent: str
    reasoning: str = ""
    quality_score_before: QualityScore | None = None
    quality_score_after: QualityScore | None = None
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Relationships and merge history
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProblemRelationship:
    """Directed link from a problem to another problem id."""

    problem_id: str
    relationship_type: RelationshipType
    similarity_score: float | None = None


@dataclass(frozen=True)
class MergeRecord:
    """Which problems were absorbed into this one, and why."""

    merged_problem_ids: tuple[str, ...]
    merge_reasoning: str = ""
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# AgentFeedback and its parts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationResult:
    """Validity judgement attached to a feedback item."""

    is_valid: bool
    validation_reasoning: str = ""
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class SuggestedChange:
    """A field-level change proposed by a collaborator."""

    field_name: str
    suggested_value: Any
    change_reasoning: str = ""


@dataclass(frozen=True)
class AlternativeBranch:
    """An alternative formulation proposed by a collaborator."""

    alternative_formulation: str
    branch_reasoning: str = ""
    estimated_quality_score: float = 5.0


@dataclass(frozen=True)
class AgentFeedback:
    """Immutable judgement about a problem from one collaborator.

    Feedback is deduplicated on a problem by ``(agent_id, timestamp)``.
    """

    agent_id: str
    agent_type: AgentType
    problem_id: str
    feedback_type: FeedbackType
    confidence_score: float = 0.5
    validation_results: ValidationResult | None = None
    suggested_changes: tuple[SuggestedChange, ...] = ()
    alternative_branches: tuple[AlternativeBranch, ...] = ()
    rejection_reason: str | None = None
    timestamp: float = field(default_factory=time.time)
    feedback_id: str = field(default_factory=lambda: f"fb-{uuid.uuid4().hex[:8]}")
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValueError(
                f"confidence_score must be in [0, 1], got {self.confidence_score}"
            )

    @property
    def dedup_key(self) -> tuple[str, float]:
        return (self.agent_id, self.timestamp)

    def reassigned(self, problem_id: str) -> AgentFeedback:
        """Copy re-homed onto *problem_id*, remembering where it came from."""
        return replace(
            self,
            problem_id=problem_id,
            metadata={**self.metadata, ORIGINAL_PROBLEM_KEY: self.problem_id},
        )


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ThresholdAdjustmentFactors:
    """Additive adjustments applied on top of a base pass threshold."""

    low_confidence_adjustment: float = -0.5
    high_evidence_boost: float = 0.5
    iteration_boost: float = 0.2
    feedback_consistency_boost: float = 0.3


@dataclass(frozen=True)
class QualityThresholds:
    """Pass thresholds, either global or scoped to one domain."""

    domain: str | None = None
    min_overall_score: float = 6.0
    min_authenticity: float = 5.0
    min_urgency: float = 5.0
    min_scale: float = 5.0
    min_solution_gap: float = 5.0
    min_feasibility: float = 5.0
    adjustment_factors: ThresholdAdjustmentFactors | None = None

    def __post_init__(self) -> None:
        if not MIN_DIMENSION <= self.min_overall_score <= MAX_DIMENSION:
            raise ValueError(
                f"min_overall_score must be in [1, 10], got {self.min_overall_score}"
            )


# ---------------------------------------------------------------------------
# Run metrics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IterationMetrics:
    """Snapshot of the active set at the end of one iteration."""

    iteration_number: int
    problem_count: int
    average_quality_score: float
    top_problem_id: str | None
    processing_time_ms: float
    strategy: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StrategyStats:
    """Bandit statistics for one exploration strategy."""

    success_rate: float = 0.0
    samples: int = 0
