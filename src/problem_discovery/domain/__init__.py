"""Domain layer for the problem discovery engine.

Re-exports all public domain types so that consumers can write::

    from problem_discovery.domain import Problem, QualityScore, FeedbackType
"""

# -- Enumerations -------------------------------------------------------------
from .enums import (
    AgentType,
    EvidenceType,
    EvolutionStage,
    ExplorationStatus,
    FeedbackStrategy,
    FeedbackType,
    PipelineState,
    RelationshipType,
    SimilarityAlgorithm,
)

# -- Value Objects ------------------------------------------------------------
from .values import (
    DIMENSION_WEIGHTS,
    AgentFeedback,
    AlternativeBranch,
    Evidence,
    EvolutionRecord,
    IterationMetrics,
    MergeRecord,
    ProblemRelationship,
    QualityScore,
    QualityThresholds,
    StrategyStats,
    SuggestedChange,
    ThresholdAdjustmentFactors,
    ValidationResult,
    round_half_up,
    weighted_overall,
)

# -- Entities -----------------------------------------------------------------
from .entities import Problem, ProblemBranch, ProblemMetadata

# -- Aggregates ---------------------------------------------------------------
from .aggregates import ProblemSet

# -- Domain Events ------------------------------------------------------------
from .events import (
    BranchExplored,
    DiscoveryCompleted,
    DiscoveryStarted,
    DomainEvent,
    IterationCompleted,
    ProblemPruned,
    ProblemsMerged,
    ProblemsSeeded,
    StrategySwitched,
)

# -- Exceptions ---------------------------------------------------------------
from .exceptions import (
    CollaboratorError,
    ConfigurationError,
    InvariantViolationError,
    OracleError,
    ProblemDiscoveryError,
)

__all__ = [
    # Enums
    "AgentType",
    "EvidenceType",
    "EvolutionStage",
    "ExplorationStatus",
    "FeedbackStrategy",
    "FeedbackType",
    "PipelineState",
    "RelationshipType",
    "SimilarityAlgorithm",
    # Values
    "DIMENSION_WEIGHTS",
    "AgentFeedback",
    "AlternativeBranch",
    "Evidence",
    "EvolutionRecord",
    "IterationMetrics",
    "MergeRecord",
    "ProblemRelationship",
    "QualityScore",
    "QualityThresholds",
    "StrategyStats",
    "SuggestedChange",
    "ThresholdAdjustmentFactors",
    "ValidationResult",
    "round_half_up",
    "weighted_overall",
    # Entities
    "Problem",
    "ProblemBranch",
    "ProblemMetadata",
    # Aggregates
    "ProblemSet",
    # Events
    "BranchExplored",
    "DiscoveryCompleted",
    "DiscoveryStarted",
    "DomainEvent",
    "IterationCompleted",
    "ProblemPruned",
    "ProblemsMerged",
    "ProblemsSeeded",
    "StrategySwitched",
    # Exceptions
    "CollaboratorError",
    "ConfigurationError",
    "InvariantViolationError",
    "OracleError",
    "ProblemDiscoveryError",
]
