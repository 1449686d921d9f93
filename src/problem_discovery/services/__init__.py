"""Service layer for the problem discovery engine.

Re-exports public service types for convenient top-level access::

    from problem_discovery.services import (
        QualityEvaluator, SimilarityDetector, FeedbackProcessor,
        StrategyBandit, ProblemDiscoveryPipeline, DiscoveryResult,
        ExplorerAgent, SimulatorAgent, EvaluatorAgent, StrategistAgent,
    )
"""

from problem_discovery.services.collaborators import (
    DiscoveryAgent,
    EvaluationResponse,
    EvaluatorAgent,
    ExplorerAgent,
    ExplorerResponse,
    SimulationResponse,
    SimulatorAgent,
    StrategistAgent,
    StrategyResponse,
    parse_response,
    problem_payload,
)
from problem_discovery.services.feedback import FeedbackProcessor
from problem_discovery.services.pipeline import (
    DiscoveryResult,
    ProblemDiscoveryPipeline,
    ProcessingMetrics,
)
from problem_discovery.services.quality import QualityEvaluator, ThresholdDecision
from problem_discovery.services.similarity import SimilarityDetector
from problem_discovery.services.strategies import (
    BaseExplorationStrategy,
    BreadthFirstStrategy,
    DepthFirstStrategy,
    EvidenceDrivenStrategy,
    FeedbackDrivenStrategy,
    StrategyBandit,
)

__all__ = [
    # Collaborators
    "DiscoveryAgent",
    "ExplorerAgent",
    "SimulatorAgent",
    "EvaluatorAgent",
    "StrategistAgent",
    "ExplorerResponse",
    "SimulationResponse",
    "EvaluationResponse",
    "StrategyResponse",
    "parse_response",
    "problem_payload",
    # Quality
    "QualityEvaluator",
    "ThresholdDecision",
    # Similarity / feedback
    "SimilarityDetector",
    "FeedbackProcessor",
    # Strategies
    "BaseExplorationStrategy",
    "DepthFirstStrategy",
    "BreadthFirstStrategy",
    "EvidenceDrivenStrategy",
    "FeedbackDrivenStrategy",
    "StrategyBandit",
    # Pipeline
    "ProblemDiscoveryPipeline",
    "DiscoveryResult",
    "ProcessingMetrics",
]
