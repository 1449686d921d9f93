"""Domain enumerations for the problem discovery engine.

These enums capture the fixed vocabularies used across the domain layer:
feedback kinds, exploration lifecycle, relationship kinds, evidence sources,
feedback incorporation strategies, collaborator roles and pipeline states.
"""

from enum import Enum


class FeedbackType(Enum):
    """Kind of judgement carried by an ``AgentFeedback``."""

    VALIDATION = "validation"
    REFINEMENT = "refinement"
    BRANCH_SUGGESTION = "branch_suggestion"
    REJECTION = "rejection"


class ExplorationStatus(Enum):
    """Lifecycle status of a Problem within a run."""

    INITIAL = "initial"
    VALIDATING = "validating"
    FINALIZED = "finalized"


class RelationshipType(Enum):
    """Kind of link between two problems."""

    PARENT = "parent"
    CHILD = "child"
    SIMILAR = "similar"  # symmetric


class EvidenceType(Enum):
    """Origin of an evidence item attached to a problem."""

    SEARCH_RESULT = "search_result"
    FORUM_POST = "forum_post"
    QUERY_SUGGESTION = "query_suggestion"
    USER_JOURNEY = "user_journey"
    CONTENT_GAP = "content_gap"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    EXPERT_OPINION = "expert_opinion"


class FeedbackStrategy(Enum):
    """How the feedback processor is asked to weigh conflicting feedback."""

    ACCEPT_ALL = "accept_all"
    MAJORITY_VOTE = "majority_vote"
    CONFIDENCE_WEIGHTED = "confidence_weighted"


class AgentType(Enum):
    """Role of a discovery collaborator."""

    EXPLORER = "explorer"
    SIMULATOR = "simulator"
    EVALUATOR = "evaluator"
    STRATEGIST = "strategist"


class EvolutionStage(Enum):
    """Pipeline stage that produced a formulation change."""

    REFINEMENT = "refinement"
    MERGE = "merge"
    BRANCHING = "branching"


class PipelineState(Enum):
    """Finite-state-machine states of a discovery run."""

    IDLE = "idle"
    SEEDING = "seeding"
    ITERATING = "iterating"
    CONVERGED = "converged"  # terminal
    EXHAUSTED = "exhausted"  # terminal: max iterations reached
    CANCELLED = "cancelled"  # terminal


class SimilarityAlgorithm(Enum):
    """Similarity measure the oracle is instructed to apply."""

    JACCARD = "jaccard"
    LEVENSHTEIN = "levenshtein"
    EMBEDDING = "embedding"
    HYBRID = "hybrid"
