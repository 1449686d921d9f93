"""Problem discovery pipeline: the iteration state machine.

A run seeds an active set of problems from the explorer, then repeats a
fixed sequence of stages until the iteration budget is spent, the average
quality converges, or the run is cancelled:

strategy update -> simulate -> evaluate -> strategize -> feedback ->
similarity/merge -> branching -> prune -> bandit update

Stages run strictly in sequence.  Inside a stage, per-problem collaborator
and oracle calls fan out over a bounded thread pool; their results are
applied to the arena in the stage's deterministic order, so the final state
does not depend on completion order.

Classes
-------
ProcessingMetrics
    Cumulative counters for a run.
DiscoveryResult
    Immutable outcome of a run.
ProblemDiscoveryPipeline
    The state machine itself.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from langchain_core.language_models import BaseChatModel

from problem_discovery.domain.aggregates import ProblemSet
from problem_discovery.domain.entities import Problem, ProblemBranch, ProblemMetadata
from problem_discovery.domain.enums import (
    AgentType,
    EvidenceType,
    EvolutionStage,
    ExplorationStatus,
    FeedbackType,
    PipelineState,
    RelationshipType,
)
from problem_discovery.domain.events import (
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
from problem_discovery.domain.exceptions import CollaboratorError, ConfigurationError
from problem_discovery.domain.values import (
    AgentFeedback,
    Evidence,
    EvolutionRecord,
    IterationMetrics,
    QualityScore,
    SuggestedChange,
    ValidationResult,
    round_half_up,
)
from problem_discovery.infrastructure.config import DiscoveryConfig
from problem_discovery.infrastructure.event_bus import EventBus
from problem_discovery.infrastructure.oracle import SemanticOracle
from problem_discovery.services.collaborators import (
    ContentAnalysis,
    DiscoveryAgent,
    EvaluationResponse,
    ExplorerResponse,
    GapAnalysis,
    MvpDesign,
    Opportunity,
    ProblemRefinement,
    RawProblem,
    SimulationResponse,
    StrategyResponse,
    parse_response,
    problem_payload,
)
from problem_discovery.services.feedback import FeedbackProcessor
from problem_discovery.services.quality import SUCCESS_QUALITY, QualityEvaluator
from problem_discovery.services.similarity import SimilarityDetector
from problem_discovery.services.strategies import DepthFirstStrategy, StrategyBandit

logger = logging.getLogger(__name__)

# Convergence: the average overall must exceed CONVERGENCE_QUALITY and have
# moved by less than CONVERGENCE_DELTA since the previous iteration.
CONVERGENCE_QUALITY = 7.5
CONVERGENCE_DELTA = 0.1

SEED_CONFIDENCE = 0.7
SIMULATION_CONFIDENCE = 0.8
BRANCH_CONFIDENCE = 0.6
SIGNIFICANT_GAP_SEVERITY = 7.0
REFINEMENT_FEEDBACK_CONFIDENCE = 0.7

_OPPORTUNITY_FEASIBILITY: tuple[tuple[tuple[str, ...], float], ...] = (
    (("large", "big", "high", "huge"), 8.0),
    (("medium", "moderate", "mid"), 6.0),
    (("small", "low", "niche", "limited"), 4.0),
)
_QUICK_BUILD = ("quick", "fast", "short", "week", "days")
_LOW_RESOURCE = ("low", "small", "minimal", "lean", "solo")

_FAILED = object()


# ===================================================================== #
#  Results                                                               #
# ===================================================================== #


@dataclass
class ProcessingMetrics:
    """Cumulative counters for one run.

    Attributes
    ----------
    total_time_ms:
        Wall-clock duration of the run.
    total_iterations:
        Iterations that ran to completion.
    initial_problem_count / final_problem_count:
        Size of the active set after seeding and at the end.
    quality_improvement:
        Final mean overall minus the mean after the first iteration.
    branches_explored / merges_performed / feedback_processed:
        Work done by the branching, similarity and feedback stages.
    feedback_loops_processed / suggested_keywords:
        Strategist feedback loops that proposed new keywords, and those
        keywords.
    problems_pruned:
        Problems removed to respect capacity.
    collaborator_failures:
        Collaborator calls that raised and were skipped.
    """

    total_time_ms: float = 0.0
    total_iterations: int = 0
    initial_problem_count: int = 0
    final_problem_count: int = 0
    quality_improvement: float = 0.0
    branches_explored: int = 0
    merges_performed: int = 0
    feedback_processed: int = 0
    feedback_loops_processed: int = 0
    problems_pruned: int = 0
    collaborator_failures: int = 0
    suggested_keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DiscoveryResult:
    """Immutable outcome of a discovery run."""

    source_keyword: str
    discovered_problems: tuple[Problem, ...]
    iterations: tuple[IterationMetrics, ...]
    metrics: ProcessingMetrics
    final_state: PipelineState

    @property
    def top_problem(self) -> Problem | None:
        return self.discovered_problems[0] if self.discovered_problems else None


# ===================================================================== #
#  Pipeline                                                              #
# ===================================================================== #


class ProblemDiscoveryPipeline:
    """Iterative refinement of a set of candidate problems.

    Parameters
    ----------
    config:
        Run configuration; validated here, so an invalid config fails fast
        with ``ConfigurationError``.
    model:
        Chat model backing the semantic oracle.  ``None`` runs every
        judgement through its deterministic fallback.
    oracle:
        Pre-built oracle; overrides *model*.
    quality_evaluator / similarity_detector / feedback_processor / bandit:
        Optional pre-built services (defaults share the pipeline's oracle).
    event_bus:
        Receives run events when given.
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        *,
        model: BaseChatModel | None = None,
        oracle: SemanticOracle | None = None,
        quality_evaluator: QualityEvaluator | None = None,
        similarity_detector: SimilarityDetector | None = None,
        feedback_processor: FeedbackProcessor | None = None,
        bandit: StrategyBandit | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config or DiscoveryConfig()
        self.config.validate()
        timeout = self.config.oracle_timeout
        self.oracle = oracle or SemanticOracle(model, timeout=timeout)
        self.quality = quality_evaluator or QualityEvaluator(self.config, self.oracle)
        self.similarity = similarity_detector or SimilarityDetector(
            self.config.similarity_detection, self.oracle, timeout=timeout
        )
        self.feedback = feedback_processor or FeedbackProcessor(
            self.config.feedback_strategy, self.oracle, timeout=timeout
        )
        self.bandit = bandit or StrategyBandit()
        self._event_bus = event_bus
        self._agents: dict[AgentType, DiscoveryAgent] = {}
        self._cancel_event = threading.Event()
        self._external_cancel: threading.Event | None = None
        self._state = PipelineState.IDLE
        self._keyword = ""
        self._problems = ProblemSet()
        self._iterations: list[IterationMetrics] = []
        self._metrics = ProcessingMetrics()

    # -- setup / control ----------------------------------------------------

    def register_agent(self, agent: DiscoveryAgent) -> None:
        """Register *agent* for its role, replacing any previous one."""
        self._agents[agent.agent_type] = agent
        logger.debug("Pipeline: registered %r as %s", agent, agent.agent_type.value)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def problems(self) -> ProblemSet:
        return self._problems

    def cancel(self) -> None:
        """Ask the running ``discover`` call to stop before its next stage."""
        self._cancel_event.set()

    def _cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        return self._external_cancel is not None and self._external_cancel.is_set()

    def _emit(self, event: DomainEvent) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)

    # -- run ----------------------------------------------------------------

    def discover(
        self, keyword: str, cancel_event: threading.Event | None = None
    ) -> DiscoveryResult:
        """Run a full discovery for *keyword*.

        Raises
        ------
        ConfigurationError
            If *keyword* is blank or no explorer is registered.
        CollaboratorError
            If the explorer fails while seeding.
        """
        keyword = keyword.strip() if isinstance(keyword, str) else ""
        if not keyword:
            raise ConfigurationError(
                "Discovery keyword must be a non-empty string", field_name="keyword"
            )
        started = time.monotonic()
        self._keyword = keyword
        self._problems = ProblemSet()
        self._iterations = []
        self._metrics = ProcessingMetrics()
        self._cancel_event.clear()
        self._external_cancel = cancel_event

        explorer = self._agents.get(AgentType.EXPLORER)
        if explorer is None:
            raise ConfigurationError(
                "An explorer agent must be registered before discovery",
                field_name="agents.explorer",
            )

        self._emit(DiscoveryStarted(source_id="pipeline", keyword=keyword))
        logger.info("Pipeline: starting discovery for %r", keyword)

        self._state = PipelineState.SEEDING
        self._seed(explorer)
        self._metrics.initial_problem_count = len(self._problems)

        self._state = PipelineState.ITERATING
        final_state = PipelineState.EXHAUSTED
        for iteration in range(1, self.config.max_iterations + 1):
            if not self._run_iteration(iteration):
                final_state = PipelineState.CANCELLED
                break
            if self._has_converged():
                final_state = PipelineState.CONVERGED
                logger.info("Pipeline: converged after iteration %d", iteration)
                break

        return self._finalize(final_state, started)

    def _run_iteration(self, iteration: int) -> bool:
        """Run one iteration; ``False`` if it was cancelled part-way."""
        started = time.monotonic()
        boundary = time.time()
        stages: list[tuple[str, Callable[[], None]]] = [
            ("strategy", self._update_strategy),
            ("simulation", lambda: self._simulate(iteration)),
            ("evaluation", lambda: self._evaluate(iteration)),
            ("strategist", lambda: self._strategize(iteration)),
            ("feedback", lambda: self._process_feedback(boundary)),
            ("similarity", self._merge_similar),
            ("branching", self._explore_branches),
            ("pruning", self._prune),
            ("bandit", self._update_bandit),
        ]
        for name, stage in stages:
            if self._cancelled():
                logger.info(
                    "Pipeline: cancelled before %s stage of iteration %d", name, iteration
                )
                return False
            logger.debug("Pipeline: iteration %d, %s stage", iteration, name)
            stage()

        top = self._problems.by_quality(1)
        metrics = IterationMetrics(
            iteration_number=iteration,
            problem_count=len(self._problems),
            average_quality_score=round(self._problems.average_quality(), 2),
            top_problem_id=top[0].problem_id if top else None,
            processing_time_ms=(time.monotonic() - started) * 1000.0,
            strategy=self.bandit.current_name,
        )
        self._iterations.append(metrics)
        self._metrics.total_iterations = iteration
        self._emit(IterationCompleted(source_id="pipeline", metrics=metrics))
        logger.info(
            "Pipeline: iteration %d done, %d problems, average quality %.2f (%s)",
            iteration,
            metrics.problem_count,
            metrics.average_quality_score,
            metrics.strategy,
        )
        return True

    def _has_converged(self) -> bool:
        if len(self._iterations) < 2:
            return False
        latest = self._iterations[-1].average_quality_score
        previous = self._iterations[-2].average_quality_score
        return latest - previous < CONVERGENCE_DELTA and latest > CONVERGENCE_QUALITY

    def _finalize(self, final_state: PipelineState, started: float) -> DiscoveryResult:
        cap = self.config.max_problems_to_track
        if len(self._problems) > cap:
            keep = self._problems.by_quality(cap)
            self._problems.retain(p.problem_id for p in keep)

        ranked = self._problems.by_quality()
        metrics = self._metrics
        metrics.final_problem_count = len(ranked)
        if self._iterations and ranked:
            final_mean = float(np.mean([p.overall for p in ranked]))
            metrics.quality_improvement = round(
                final_mean - self._iterations[0].average_quality_score, 2
            )
        metrics.total_time_ms = (time.monotonic() - started) * 1000.0
        self._state = final_state

        self._emit(
            DiscoveryCompleted(
                source_id="pipeline",
                keyword=self._keyword,
                final_state=final_state,
                problem_count=len(ranked),
                iterations=metrics.total_iterations,
            )
        )
        logger.info(
            "Pipeline: %s with %d problems after %d iteration(s)",
            final_state.value,
            len(ranked),
            metrics.total_iterations,
        )
        return DiscoveryResult(
            source_keyword=self._keyword,
            discovered_problems=tuple(p.copy() for p in ranked),
            iterations=tuple(self._iterations),
            metrics=metrics,
            final_state=final_state,
        )

    # -- helpers ------------------------------------------------------------

    def _ordered(self, problems: Sequence[Problem] | None = None) -> list[Problem]:
        """Problems in the current strategy's priority order."""
        pool = self._problems.ordered() if problems is None else problems
        return self.bandit.current.order(pool)

    def _fan_out(
        self,
        func: Callable[[Any], Any],
        items: Sequence[Any],
        label: str,
    ) -> list[Any]:
        """Apply *func* to *items* concurrently; results keep input order.

        A call that raises yields ``_FAILED`` and is logged.
        """
        if not items:
            return []
        workers = min(self.config.max_concurrency, len(items))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(func, item) for item in items]
            results: list[Any] = []
            for item, future in zip(items, futures):
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.warning("Pipeline: %s failed for %s: %s", label, _describe(item), exc)
                    self._metrics.collaborator_failures += 1
                    results.append(_FAILED)
        return results

    def _collect_feedback(self, agent: DiscoveryAgent, problem: Problem) -> int:
        try:
            feedback = agent.provide_feedback(problem.copy())
        except Exception as exc:
            logger.warning(
                "Pipeline: %s feedback failed for %s: %s",
                agent.agent_type.value,
                problem.problem_id,
                exc,
            )
            self._metrics.collaborator_failures += 1
            return 0
        if feedback is None:
            return 0
        if feedback.problem_id != problem.problem_id:
            feedback = feedback.reassigned(problem.problem_id)
        return int(problem.add_feedback(feedback))

    def _new_problem(
        self,
        formulation: str,
        score: QualityScore,
        created_by: str,
        evidence: list[Evidence] | None = None,
    ) -> Problem:
        return Problem(
            original_formulation=formulation,
            domain=[self._keyword],
            quality_score=score,
            evidence=list(evidence or []),
            metadata=ProblemMetadata(
                source_keyword=self._keyword,
                created_by=created_by,
                updated_by=created_by,
            ),
        )

    # -- seeding ------------------------------------------------------------

    def _seed(self, explorer: DiscoveryAgent) -> None:
        try:
            raw = explorer.process({"keyword": self._keyword})
        except Exception as exc:
            raise CollaboratorError(
                f"Explorer failed while seeding: {exc}",
                agent_type=AgentType.EXPLORER.value,
            ) from exc

        response = parse_response(ExplorerResponse, raw, explorer.name)
        for item in response.high_value_problems:
            self._problems.add(self._problem_from_seed(item))

        self._emit(
            ProblemsSeeded(
                source_id="pipeline",
                keyword=self._keyword,
                problem_ids=tuple(p.problem_id for p in self._problems.ordered()),
            )
        )
        logger.info("Pipeline: seeded %d problem(s)", len(self._problems))

    def _problem_from_seed(self, item: RawProblem) -> Problem:
        score = QualityScore.clamped(
            authenticity=item.overall_score if item.overall_score else 5.0,
            urgency=5.0,
            scale=5.0,
            solution_gap=5.0,
            feasibility=5.0,
            confidence=SEED_CONFIDENCE,
        )
        evidence = []
        if item.original_query:
            evidence.append(
                Evidence(
                    type=EvidenceType.QUERY_SUGGESTION,
                    source="explorer",
                    content=item.original_query,
                    relevance_score=1.0,
                    metadata={"is_expanded": item.is_expanded, "reasoning": item.reasoning or ""},
                )
            )
        return self._new_problem(item.question, score, AgentType.EXPLORER.value, evidence)

    # -- stage a: strategy --------------------------------------------------

    def _update_strategy(self) -> None:
        if not self.config.adaptive_quality_thresholds:
            return
        previous = self.bandit.current_name
        current = self.bandit.select().name
        if current != previous:
            self._emit(StrategySwitched(source_id="pipeline", previous=previous, current=current))

    # -- stage b: simulate --------------------------------------------------

    def _simulate(self, iteration: int) -> None:
        simulator = self._agents.get(AgentType.SIMULATOR)
        if simulator is None:
            logger.debug("Pipeline: no simulator registered, skipping simulation")
            return

        candidates = [p for p in self._ordered() if not p.is_finalized]
        requests = [
            {"problem": problem_payload(p), "iteration": iteration} for p in candidates
        ]
        responses = self._fan_out(simulator.process, requests, "simulation")
        for problem, raw in zip(candidates, responses):
            if raw is _FAILED:
                continue
            response = parse_response(SimulationResponse, raw, simulator.name)
            self._apply_simulation(problem, response)

    def _apply_simulation(self, problem: Problem, response: SimulationResponse) -> None:
        if response.validity_score is None:
            return
        updates: dict[str, float] = {"authenticity": response.validity_score}
        validations = response.validation.user_validations if response.validation else []
        if validations:
            urgency = np.mean([v.urgency_score for v in validations])
            frequency = np.mean([v.frequency_score for v in validations])
            updates["urgency"] = round_half_up(float(urgency))
            updates["scale"] = round_half_up(float(frequency))
            updates["confidence"] = SIMULATION_CONFIDENCE
        problem.update_scores(**updates)

        if response.audience:
            problem.target_audience = []
            problem.merge_audience(response.audience)

        journey = response.user_journey
        if journey is not None:
            for step in journey.search_steps:
                if step.pain_points or (step.satisfaction is not None and step.satisfaction < 0.5):
                    problem.add_evidence(
                        Evidence(
                            type=EvidenceType.USER_JOURNEY,
                            source="journey_simulator",
                            content=(
                                f'Query: "{step.query}" - satisfaction: {step.satisfaction} - '
                                f"pain points: {', '.join(step.pain_points) or 'none'}"
                            ),
                            relevance_score=0.9,
                            metadata={"query": step.query, "satisfaction": step.satisfaction},
                        )
                    )
            if journey.satisfaction_reached is not None:
                outcome = "found" if journey.satisfaction_reached else "did not find"
                problem.add_evidence(
                    Evidence(
                        type=EvidenceType.USER_JOURNEY,
                        source="journey_simulator",
                        content=(
                            f"User journey simulation {outcome} a satisfactory solution; "
                            f"{len(journey.pain_points)} pain point(s) identified."
                        ),
                        relevance_score=0.95,
                        metadata={"satisfaction_reached": journey.satisfaction_reached},
                    )
                )

        problem.metadata.exploration_status = ExplorationStatus.VALIDATING
        problem.touch(AgentType.SIMULATOR.value)

    # -- stage b: evaluate --------------------------------------------------

    def _evaluate(self, iteration: int) -> None:
        evaluator = self._agents.get(AgentType.EVALUATOR)
        if evaluator is None:
            logger.debug("Pipeline: no evaluator registered, skipping evaluation")
            return

        selected = self._ordered(self._problems.by_quality(self.config.evaluation_top_n))
        size = self.config.evaluation_batch_size
        collected = 0
        for start in range(0, len(selected), size):
            batch = selected[start:start + size]
            try:
                raw = evaluator.process(
                    {
                        "problems": [problem_payload(p) for p in batch],
                        "sourceKeyword": self._keyword,
                        "iteration": iteration,
                    }
                )
            except Exception as exc:
                logger.warning("Pipeline: evaluation batch failed, skipping: %s", exc)
                self._metrics.collaborator_failures += 1
                continue

            response = parse_response(EvaluationResponse, raw, evaluator.name)
            in_batch = {p.problem_id: p for p in batch}
            for analysis in response.problem_gap_analyses:
                problem = in_batch.get(analysis.id)
                if problem is None:
                    logger.debug("Pipeline: gap analysis for unknown problem %s", analysis.id)
                    continue
                self._apply_gap_analysis(problem, analysis)
                collected += self._collect_feedback(evaluator, problem)
            if response.content_analysis is not None:
                self._apply_content_analysis(response.content_analysis)

        logger.info(
            "Pipeline: evaluated %d problem(s), %d feedback item(s)", len(selected), collected
        )

    def _apply_gap_analysis(self, problem: Problem, analysis: GapAnalysis) -> None:
        gap = analysis.solution_gap_analysis
        market = gap.market_gap_analysis if gap is not None else None

        if analysis.gap_severity is not None:
            updates: dict[str, float] = {"solution_gap": analysis.gap_severity}
            if market is not None and market.opportunity_size:
                size = market.opportunity_size.lower()
                for keywords, feasibility in _OPPORTUNITY_FEASIBILITY:
                    if any(k in size for k in keywords):
                        updates["feasibility"] = feasibility
                        break
            if market is not None:
                updates["confidence"] = min(1.0, problem.quality_score.confidence + 0.1)
            problem.update_scores(**updates)
            problem.metadata.exploration_status = ExplorationStatus.VALIDATING
            problem.touch(AgentType.EVALUATOR.value)

        if gap is None:
            return
        for solution in gap.solution_evaluations:
            if solution.weaknesses or solution.overall_score < 6:
                problem.add_evidence(
                    Evidence(
                        type=EvidenceType.CONTENT_GAP,
                        source=solution.url or "solution_analysis",
                        content=(
                            f'Solution "{solution.title}" has weaknesses: '
                            f"{', '.join(solution.weaknesses) or 'none listed'}. "
                            f"Overall score: {solution.overall_score}/10"
                        ),
                        relevance_score=0.85,
                        metadata={"title": solution.title, "overall_score": solution.overall_score},
                    )
                )
        if market is not None:
            problem.add_evidence(
                Evidence(
                    type=EvidenceType.COMPETITOR_ANALYSIS,
                    source="gap_analyzer",
                    content=(
                        f"Market gap severity: {market.gap_severity}/10. "
                        f"Unmet needs: {', '.join(market.unmet_needs) or 'none listed'}. "
                        f"Opportunity size: {market.opportunity_size or 'unknown'}"
                    ),
                    relevance_score=0.9,
                    metadata={"gap_severity": market.gap_severity},
                )
            )

    def _apply_content_analysis(self, analysis: ContentAnalysis) -> None:
        if analysis.quality_analysis is None:
            return
        for gap in analysis.quality_analysis.content_gaps:
            if gap.severity < SIGNIFICANT_GAP_SEVERITY:
                continue
            description = gap.description.strip()
            needle = description.lower()
            evidence = Evidence(
                type=EvidenceType.CONTENT_GAP,
                source="content_analysis",
                content=f"Content gap: {description}. Severity: {gap.severity}/10",
                relevance_score=0.85,
                metadata={"severity": gap.severity},
            )
            matched = next(
                (
                    p
                    for p in self._problems.ordered()
                    if needle in p.current_formulation.lower()
                    or p.current_formulation.lower() in needle
                ),
                None,
            )
            if matched is not None:
                matched.add_evidence(evidence)
                if gap.severity > matched.quality_score.solution_gap:
                    matched.update_scores(solution_gap=gap.severity)
                continue
            if len(self._problems) >= self.config.max_problems_to_track:
                continue
            score = QualityScore.clamped(
                authenticity=7.0,
                urgency=6.0,
                scale=6.0,
                solution_gap=gap.severity,
                feasibility=5.0,
                confidence=SEED_CONFIDENCE,
            )
            created = self._new_problem(description, score, AgentType.EVALUATOR.value, [evidence])
            self._problems.add(created)
            logger.info("Pipeline: content gap became problem %s", created.problem_id)

    # -- stage b: strategize ------------------------------------------------

    def _strategize(self, iteration: int) -> None:
        strategist = self._agents.get(AgentType.STRATEGIST)
        if strategist is None:
            logger.debug("Pipeline: no strategist registered, skipping strategy stage")
            return

        selected = self._ordered(self._problems.by_quality(self.config.strategy_top_n))
        if not selected:
            return
        try:
            raw = strategist.process(
                {
                    "problems": [problem_payload(p) for p in selected],
                    "sourceKeyword": self._keyword,
                    "iteration": iteration,
                }
            )
        except Exception as exc:
            logger.warning("Pipeline: strategist failed, skipping stage: %s", exc)
            self._metrics.collaborator_failures += 1
            return

        response = parse_response(StrategyResponse, raw, strategist.name)
        for opportunity in response.prioritized_opportunities:
            problem = _match(selected, opportunity.key_problem_solved)
            if problem is not None:
                self._apply_opportunity(problem, opportunity)
        for design in response.mvp_designs:
            problem = _match(selected, design.problem_to_solve)
            if problem is not None:
                self._apply_mvp_design(problem, design)
        for refinement in response.problem_refinements:
            self._apply_refinement(strategist, refinement)
        for loop in response.feedback_loops:
            keywords = [k.strip() for k in loop.new_keywords if k.strip()]
            if not keywords:
                continue
            self._metrics.feedback_loops_processed += 1
            for keyword in keywords:
                if keyword not in self._metrics.suggested_keywords:
                    self._metrics.suggested_keywords.append(keyword)
            logger.info("Pipeline: feedback loop suggests keywords %s", keywords)

        collected = sum(self._collect_feedback(strategist, p) for p in selected)
        logger.info(
            "Pipeline: strategist covered %d problem(s), %d feedback item(s)",
            len(selected),
            collected,
        )

    def _apply_opportunity(self, problem: Problem, opportunity: Opportunity) -> None:
        problem.add_evidence(
            Evidence(
                type=EvidenceType.EXPERT_OPINION,
                source="strategist",
                content=(
                    f"Strategic opportunity: {opportunity.title}. "
                    f"Market potential: {opportunity.market_potential}/10. "
                    f"Priority: {opportunity.priority}/10"
                ),
                relevance_score=0.9,
                metadata={"title": opportunity.title},
            )
        )
        score = problem.quality_score
        updates: dict[str, float] = {}
        if opportunity.market_potential:
            updates["scale"] = max(score.scale, opportunity.market_potential)
            updates["urgency"] = max(score.urgency, opportunity.market_potential * 0.8)
        if opportunity.implementation_difficulty:
            updates["feasibility"] = 11.0 - opportunity.implementation_difficulty
        if updates:
            problem.update_scores(**updates)
        users = opportunity.target_users
        if users:
            problem.merge_audience([users] if isinstance(users, str) else list(users))
        problem.metadata.exploration_status = ExplorationStatus.FINALIZED
        problem.touch(AgentType.STRATEGIST.value)

    def _apply_mvp_design(self, problem: Problem, design: MvpDesign) -> None:
        problem.add_evidence(
            Evidence(
                type=EvidenceType.EXPERT_OPINION,
                source="strategist",
                content=(
                    f'MVP design: "{design.name}". '
                    f"Core features: {', '.join(design.core_features) or 'none listed'}"
                ),
                relevance_score=0.85,
                metadata={"name": design.name, "time_to_mvp": design.time_to_mvp},
            )
        )
        if design.time_to_mvp and design.resource_estimate:
            quick = any(k in design.time_to_mvp.lower() for k in _QUICK_BUILD)
            lean = any(k in design.resource_estimate.lower() for k in _LOW_RESOURCE)
            if quick and lean:
                problem.update_scores(feasibility=problem.quality_score.feasibility + 1.0)

    def _apply_refinement(self, strategist: DiscoveryAgent, refinement: ProblemRefinement) -> None:
        if refinement.problem_id not in self._problems:
            logger.warning(
                "Pipeline: refinement for unknown problem %s", refinement.problem_id
            )
            return
        problem = self._problems.get(refinement.problem_id)
        if refinement.quality_scores is not None:
            updates = {
                name: value
                for name, value in refinement.quality_scores.model_dump().items()
                if value
            }
            if updates:
                problem.update_scores(**updates)
        domains = [d.strip() for d in refinement.domains if d.strip()]
        if domains:
            problem.domain = list(dict.fromkeys(domains))
        if refinement.target_audience:
            problem.target_audience = []
            problem.merge_audience(refinement.target_audience)

        formulation = (refinement.refined_formulation or "").strip()
        if formulation and formulation != problem.current_formulation:
            reasoning = refinement.refinement_reasoning or "Strategic refinement"
            problem.add_feedback(
                AgentFeedback(
                    agent_id=strategist.agent_id,
                    agent_type=AgentType.STRATEGIST,
                    problem_id=problem.problem_id,
                    feedback_type=FeedbackType.REFINEMENT,
                    confidence_score=REFINEMENT_FEEDBACK_CONFIDENCE,
                    validation_results=ValidationResult(
                        is_valid=True, validation_reasoning=reasoning
                    ),
                    suggested_changes=(
                        SuggestedChange("current_formulation", formulation, reasoning),
                    ),
                )
            )
        problem.touch(AgentType.STRATEGIST.value)

    # -- stage c: feedback --------------------------------------------------

    def _process_feedback(self, boundary: float) -> None:
        feedback_map: dict[str, list[AgentFeedback]] = {}
        for problem in self._ordered():
            fresh = [fb for fb in problem.feedback_history if fb.timestamp >= boundary]
            if fresh:
                feedback_map[problem.problem_id] = fresh
        if not feedback_map:
            return

        snapshots = [
            p.copy() for p in self._ordered() if p.problem_id in feedback_map
        ]

        def refine(snapshot: Problem) -> Problem:
            updated = self.feedback.process(snapshot, feedback_map[snapshot.problem_id])
            if updated.current_formulation != snapshot.current_formulation:
                updated.quality_score = self.quality.recalculate_score(updated)
            return updated

        results = self._fan_out(refine, snapshots, "feedback processing")
        for snapshot, updated in zip(snapshots, results):
            if updated is _FAILED:
                continue
            self._problems.replace(updated)
            self._metrics.feedback_processed += len(feedback_map[snapshot.problem_id])

    # -- stage d: similarity ------------------------------------------------

    def _merge_similar(self) -> None:
        if len(self._problems) < 2:
            return
        snapshots = self._problems.snapshot()
        try:
            groups = self.similarity.detect_groups(snapshots)
        except Exception as exc:
            logger.warning("Pipeline: similarity detection failed, no groups: %s", exc)
            return
        if not groups:
            return
        for snapshot in snapshots:
            self._problems.replace(snapshot)

        for primary_id in sorted(groups):
            if primary_id not in self._problems:
                continue
            secondaries = [
                self._problems.get(sid).copy()
                for sid in groups[primary_id]
                if sid in self._problems
            ]
            if not secondaries:
                continue
            primary = self._problems.get(primary_id)
            history_before = len(primary.metadata.merge_history)
            try:
                merged = self.similarity.merge(primary.copy(), secondaries)
            except Exception as exc:
                logger.warning("Pipeline: merge into %s failed, skipping: %s", primary_id, exc)
                continue
            self._problems.replace(merged)
            absorbed = tuple(s.problem_id for s in secondaries)
            for sid in absorbed:
                self._problems.remove(sid)
            self._metrics.merges_performed += 1
            self._emit(
                ProblemsMerged(
                    source_id="pipeline",
                    primary_id=primary_id,
                    absorbed_ids=absorbed,
                    degraded=len(merged.metadata.merge_history) == history_before,
                )
            )

    # -- stage e: branching -------------------------------------------------

    def _explore_branches(self) -> None:
        if not self.config.enable_branching:
            return
        budget = self.config.max_branches_per_iteration
        parents = [
            p for p in self._problems.by_quality() if p.unexplored_branches()
        ]
        for parent in parents:
            if budget <= 0:
                break
            branches = sorted(
                parent.unexplored_branches(),
                key=lambda b: (-b.quality_score, b.branch_id),
            )[: self.config.max_branches_per_problem]
            for branch in branches:
                if budget <= 0:
                    break
                try:
                    child = self._child_from_branch(parent, branch)
                except Exception as exc:
                    logger.warning(
                        "Pipeline: branch %s of %s failed, skipping: %s",
                        branch.branch_id,
                        parent.problem_id,
                        exc,
                    )
                    continue
                self._problems.add(child)
                parent.add_relationship(child.problem_id, RelationshipType.CHILD)
                branch.mark_explored()
                parent.touch(EvolutionStage.BRANCHING.value)
                budget -= 1
                self._metrics.branches_explored += 1
                self._emit(
                    BranchExplored(
                        source_id="pipeline",
                        parent_id=parent.problem_id,
                        child_id=child.problem_id,
                        branch_id=branch.branch_id,
                    )
                )

    def _child_from_branch(self, parent: Problem, branch: ProblemBranch) -> Problem:
        score = parent.quality_score.with_updates(confidence=BRANCH_CONFIDENCE)
        child = Problem(
            original_formulation=branch.formulation,
            domain=list(parent.domain),
            target_audience=list(parent.target_audience),
            quality_score=score,
            metadata=ProblemMetadata(
                source_keyword=parent.metadata.source_keyword or self._keyword,
                created_by=EvolutionStage.BRANCHING.value,
                updated_by=EvolutionStage.BRANCHING.value,
            ),
        )
        child.evolution_path.append(
            EvolutionRecord(
                stage=EvolutionStage.BRANCHING,
                previous_formulation=parent.current_formulation,
                current_formulation=branch.formulation,
                agent=EvolutionStage.BRANCHING.value,
                reasoning=branch.creation_reason,
                quality_score_before=parent.quality_score,
                quality_score_after=score,
            )
        )
        child.add_relationship(parent.problem_id, RelationshipType.PARENT)
        return child

    # -- stage f: prune -----------------------------------------------------

    def _prune(self) -> None:
        cap = self.config.max_problems_to_track
        if len(self._problems) <= cap:
            return

        current = self._problems.ordered()
        self.quality.update_global_threshold(current)
        snapshots = [p.copy() for p in current]
        decisions = self._fan_out(self.quality.meets_threshold, snapshots, "threshold check")
        failing = sorted(
            (p for p, meets in zip(current, decisions) if meets is False),
            key=lambda p: (p.overall, p.problem_id),
        )
        for problem in failing:
            if len(self._problems) <= cap:
                break
            self._problems.remove(problem.problem_id)
            self._record_prune(problem, "below quality threshold")

        if len(self._problems) > cap:
            ordering = (
                self.bandit.current
                if self.config.adaptive_quality_thresholds
                else DepthFirstStrategy()
            )
            remaining = self._problems.ordered()
            keep = ordering.order(remaining)[:cap]
            kept_ids = {p.problem_id for p in keep}
            self._problems.retain(kept_ids)
            for problem in remaining:
                if problem.problem_id not in kept_ids:
                    self._record_prune(problem, f"capacity ({ordering.name})")

    def _record_prune(self, problem: Problem, reason: str) -> None:
        self._metrics.problems_pruned += 1
        logger.debug(
            "Pipeline: pruned %s (%.1f): %s", problem.problem_id, problem.overall, reason
        )
        self._emit(
            ProblemPruned(
                source_id="pipeline",
                problem_id=problem.problem_id,
                reason=reason,
                overall=problem.overall,
            )
        )

    # -- stage g: bandit ----------------------------------------------------

    def _update_bandit(self) -> None:
        problems = self._problems.ordered()
        if not problems:
            return
        success_rate = float(np.mean([p.overall >= SUCCESS_QUALITY for p in problems]))
        self.bandit.record(success_rate, len(problems))


def _match(problems: Sequence[Problem], text: str | None) -> Problem | None:
    """First problem whose formulation contains, or is contained in, *text*."""
    if not text or not text.strip():
        return None
    needle = text.strip().lower()
    for problem in problems:
        formulation = problem.current_formulation.lower()
        if needle in formulation or formulation in needle:
            return problem
    return None


def _describe(item: Any) -> str:
    if isinstance(item, Problem):
        return item.problem_id
    if isinstance(item, dict) and isinstance(item.get("problem"), dict):
        return str(item["problem"].get("id", "?"))
    return type(item).__name__
