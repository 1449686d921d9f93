"""Discovery collaborators: the agents the pipeline delegates work to.

The pipeline talks to four kinds of agent (explorer, simulator, evaluator,
strategist) through JSON-shaped requests and responses.  Concrete agents
(and their prompts) live outside this package; this module defines the
abstract interfaces and the pydantic schemas that every response is
validated against.  A response that fails validation is replaced by the
schema's typed default, so a malformed answer simply contributes nothing.

Response keys use camelCase on the wire (``highValueProblems``); the models
accept either camelCase or snake_case.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from problem_discovery.domain.entities import Problem
from problem_discovery.domain.enums import AgentType
from problem_discovery.domain.values import AgentFeedback

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _as_list(value: list[str] | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [v for v in value if isinstance(v, str) and v.strip()]


# ===================================================================== #
#  Explorer                                                              #
# ===================================================================== #


class RawProblem(_WireModel):
    question: str = Field(min_length=1)
    overall_score: float | None = None
    reasoning: str | None = None
    original_query: str | None = None
    is_expanded: bool = False


class ExplorerResponse(_WireModel):
    high_value_problems: list[RawProblem] = Field(default_factory=list)

    @field_validator("high_value_problems", mode="before")
    @classmethod
    def _drop_invalid_problems(cls, value: Any) -> Any:
        """Validate seeds one by one so a bad item only loses itself."""
        if not isinstance(value, list):
            return value
        kept: list[RawProblem] = []
        for item in value:
            try:
                kept.append(RawProblem.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "Explorer seed dropped (%d error(s)): %r", exc.error_count(), item
                )
        return kept


# ===================================================================== #
#  Simulator                                                             #
# ===================================================================== #


class UserValidation(_WireModel):
    urgency_score: float = 0.0
    pain_point_score: float = 0.0
    frequency_score: float = 0.0


class SimulationValidation(_WireModel):
    user_validations: list[UserValidation] = Field(default_factory=list)


class JourneyStep(_WireModel):
    query: str = ""
    satisfaction: float | None = None
    pain_points: list[str] = Field(default_factory=list)


class UserJourney(_WireModel):
    search_steps: list[JourneyStep] = Field(default_factory=list)
    satisfaction_reached: bool | None = None
    pain_points: list[str] = Field(default_factory=list)


class SimulationResponse(_WireModel):
    validity_score: float | None = None
    validation: SimulationValidation | None = None
    target_audience: list[str] | str | None = None
    user_journey: UserJourney | None = None

    @property
    def audience(self) -> list[str]:
        return _as_list(self.target_audience)


# ===================================================================== #
#  Evaluator                                                             #
# ===================================================================== #


class MarketGapAnalysis(_WireModel):
    gap_severity: float | None = None
    unmet_needs: list[str] = Field(default_factory=list)
    opportunity_size: str | None = None


class SolutionEvaluation(_WireModel):
    title: str = ""
    url: str | None = None
    overall_score: float = 10.0
    weaknesses: list[str] = Field(default_factory=list)


class SolutionGapAnalysis(_WireModel):
    market_gap_analysis: MarketGapAnalysis | None = None
    solution_evaluations: list[SolutionEvaluation] = Field(default_factory=list)


class GapAnalysis(_WireModel):
    id: str
    gap_severity: float | None = None
    solution_gap_analysis: SolutionGapAnalysis | None = None


class ContentGap(_WireModel):
    description: str = Field(min_length=1)
    severity: float = 0.0


class QualityAnalysis(_WireModel):
    content_gaps: list[ContentGap] = Field(default_factory=list)


class ContentAnalysis(_WireModel):
    quality_analysis: QualityAnalysis | None = None


class EvaluationResponse(_WireModel):
    problem_gap_analyses: list[GapAnalysis] = Field(default_factory=list)
    content_analysis: ContentAnalysis | None = None


# ===================================================================== #
#  Strategist                                                            #
# ===================================================================== #


class Opportunity(_WireModel):
    title: str = ""
    key_problem_solved: str | None = None
    market_potential: float | None = None
    implementation_difficulty: float | None = None
    priority: float | None = None
    target_users: list[str] | str | None = None


class MvpDesign(_WireModel):
    name: str = ""
    problem_to_solve: str | None = None
    core_features: list[str] = Field(default_factory=list)
    time_to_mvp: str | None = None
    resource_estimate: str | None = None


class RefinementScores(_WireModel):
    authenticity: float | None = None
    urgency: float | None = None
    scale: float | None = None
    solution_gap: float | None = None
    feasibility: float | None = None


class ProblemRefinement(_WireModel):
    problem_id: str
    refined_formulation: str | None = None
    refinement_reasoning: str | None = None
    domains: list[str] = Field(default_factory=list)
    target_audience: list[str] = Field(default_factory=list)
    quality_scores: RefinementScores | None = None


class FeedbackLoop(_WireModel):
    description: str = ""
    new_keywords: list[str] = Field(default_factory=list)


class StrategyResponse(_WireModel):
    prioritized_opportunities: list[Opportunity] = Field(default_factory=list)
    mvp_designs: list[MvpDesign] = Field(default_factory=list)
    problem_refinements: list[ProblemRefinement] = Field(default_factory=list)
    feedback_loops: list[FeedbackLoop] = Field(default_factory=list)


# ===================================================================== #
#  Response parsing                                                      #
# ===================================================================== #


def parse_response(schema: type[ResponseT], raw: Any, agent_name: str = "") -> ResponseT:
    """Validate *raw* against *schema*, falling back to ``schema()``."""
    if isinstance(raw, schema):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True)
    if raw is None:
        return schema()
    try:
        return schema.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Collaborator %s returned a malformed %s (%d error(s)); using defaults",
            agent_name or "?",
            schema.__name__,
            exc.error_count(),
        )
        return schema()


def problem_payload(problem: Problem) -> dict[str, Any]:
    """camelCase view of *problem* sent to collaborators."""
    score = problem.quality_score
    return {
        "id": problem.problem_id,
        "originalFormulation": problem.original_formulation,
        "currentFormulation": problem.current_formulation,
        "domain": list(problem.domain),
        "targetAudience": list(problem.target_audience),
        "qualityScore": {
            "authenticity": score.authenticity,
            "urgency": score.urgency,
            "scale": score.scale,
            "solutionGap": score.solution_gap,
            "feasibility": score.feasibility,
            "overall": score.overall,
            "confidence": score.confidence,
        },
        "evidence": [
            {"type": e.type.value, "source": e.source, "content": e.content}
            for e in problem.evidence
        ],
        "iterationCount": problem.metadata.iteration_count,
        "explorationStatus": problem.metadata.exploration_status.value,
    }


# ===================================================================== #
#  Agent interfaces                                                      #
# ===================================================================== #


class DiscoveryAgent(ABC):
    """Abstract collaborator.

    Subclasses implement :meth:`process`, returning either a dict shaped
    like :attr:`response_schema` or an instance of it.
    """

    agent_type: ClassVar[AgentType]
    response_schema: ClassVar[type[BaseModel]]

    def __init__(self, agent_id: str | None = None, name: str = "") -> None:
        self.agent_id = agent_id or f"{self.agent_type.value}-{uuid.uuid4().hex[:6]}"
        self.name = name or type(self).__name__

    @abstractmethod
    def process(self, request: Mapping[str, Any]) -> Any:
        """Handle one request."""

    def provide_feedback(self, problem: Problem) -> AgentFeedback | None:
        """Judge *problem*; agents without an opinion return ``None``."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(agent_id={self.agent_id!r})"


class ExplorerAgent(DiscoveryAgent):
    """Seeds a run: ``{keyword}`` -> ``{highValueProblems: [...]}``."""

    agent_type = AgentType.EXPLORER
    response_schema = ExplorerResponse


class SimulatorAgent(DiscoveryAgent):
    """Validates one problem: ``{problem, iteration}`` -> simulation result."""

    agent_type = AgentType.SIMULATOR
    response_schema = SimulationResponse


class EvaluatorAgent(DiscoveryAgent):
    """Analyses solution gaps: ``{problems, sourceKeyword, iteration}``."""

    agent_type = AgentType.EVALUATOR
    response_schema = EvaluationResponse


class StrategistAgent(DiscoveryAgent):
    """Proposes opportunities: ``{problems, sourceKeyword, iteration}``."""

    agent_type = AgentType.STRATEGIST
    response_schema = StrategyResponse
