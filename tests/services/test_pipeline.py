"""Tests for ProblemDiscoveryPipeline.

The pipeline is driven by scripted agents (``problem_discovery.testing``)
and, where a stage needs the oracle, a schema-routed mock chat model.
"""

from __future__ import annotations

import threading

import pytest

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
    IterationCompleted,
    ProblemPruned,
    ProblemsMerged,
    ProblemsSeeded,
    StrategySwitched,
)
from problem_discovery.domain.exceptions import CollaboratorError, ConfigurationError
from problem_discovery.domain.values import StrategyStats, weighted_overall
from problem_discovery.infrastructure.config import DiscoveryConfig
from problem_discovery.services.feedback import BranchSuggestion, FeedbackSynthesisOutput
from problem_discovery.services.pipeline import ProblemDiscoveryPipeline
from problem_discovery.services.similarity import (
    MergeOutput,
    SimilarityDetector,
    SimilarityGroup,
    SimilarityGroupsOutput,
)
from problem_discovery.services.strategies import StrategyBandit
from problem_discovery.testing import (
    FailingAgent,
    FailingChatModel,
    SchemaRoutedChatModel,
    ScriptedEvaluator,
    ScriptedExplorer,
    ScriptedSimulator,
    ScriptedStrategist,
    make_feedback,
)
from tests.helpers.problems import prompt_problem_ids

KEYWORD = "invoice reconciliation"

SEEDS = [
    {"question": "How do freelancers match partial payments to invoices?", "overallScore": 4},
    {"question": "Why do bank feeds miss invoice references?", "overallScore": 5},
    {"question": "How do agencies reconcile retainers?", "overallScore": 6},
    {"question": "Which tools flag duplicate invoices?", "overallScore": 7},
    {"question": "How to reconcile multi-currency payouts?", "overallScore": 9},
]


def _pipeline(config: DiscoveryConfig | None = None, **kwargs) -> ProblemDiscoveryPipeline:
    return ProblemDiscoveryPipeline(config or DiscoveryConfig(max_iterations=1), **kwargs)


def _seeded_ids(store) -> tuple[str, ...]:
    (seeded,) = store.query(ProblemsSeeded)
    return seeded.problem_ids


def _group_all(prompt) -> SimilarityGroupsOutput:
    ids = prompt_problem_ids(prompt)
    if len(ids) < 2:
        return SimilarityGroupsOutput()
    return SimilarityGroupsOutput(
        groups=[SimilarityGroup(primary_id=ids[0], secondary_ids=ids[1:])]
    )


class FailingDetector(SimilarityDetector):
    """Raises from grouping or from merging."""

    def __init__(self, fail_on: str) -> None:
        super().__init__()
        self.fail_on = fail_on

    def detect_groups(self, problems):
        if self.fail_on == "detect":
            raise RuntimeError("similarity index offline")
        ids = sorted(p.problem_id for p in problems)
        return {ids[0]: ids[1:]}

    def merge(self, primary, secondaries):
        raise RuntimeError("merge store offline")


# ===================================================================== #
#  Setup and seeding                                                      #
# ===================================================================== #


class TestSetup:

    def test_invalid_config_fails_fast(self) -> None:
        with pytest.raises(ConfigurationError):
            ProblemDiscoveryPipeline(DiscoveryConfig(max_iterations=0))

    def test_missing_explorer(self) -> None:
        pipeline = _pipeline()
        with pytest.raises(ConfigurationError) as excinfo:
            pipeline.discover(KEYWORD)
        assert excinfo.value.field_name == "agents.explorer"

    @pytest.mark.parametrize("keyword", ["", "   "])
    def test_blank_keyword_rejected(self, keyword: str) -> None:
        pipeline = _pipeline()
        explorer = ScriptedExplorer(["q"])
        pipeline.register_agent(explorer)
        with pytest.raises(ConfigurationError) as excinfo:
            pipeline.discover(keyword)
        assert excinfo.value.field_name == "keyword"
        assert explorer.requests == []

    def test_keyword_is_trimmed(self) -> None:
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(["q"]))
        result = pipeline.discover(f"  {KEYWORD} ")
        assert result.source_keyword == KEYWORD
        assert result.discovered_problems[0].domain == [KEYWORD]

    def test_failing_explorer(self) -> None:
        pipeline = _pipeline()
        pipeline.register_agent(FailingAgent(AgentType.EXPLORER, "search quota exceeded"))
        with pytest.raises(CollaboratorError, match="search quota exceeded") as excinfo:
            pipeline.discover(KEYWORD)
        assert excinfo.value.agent_type == "explorer"

    def test_seeding(self) -> None:
        pipeline = _pipeline()
        explorer = ScriptedExplorer(
            [
                {
                    "question": "How do freelancers match partial payments?",
                    "overallScore": 8,
                    "originalQuery": "partial payment matching",
                    "isExpanded": True,
                },
                {"question": "Why is reconciliation slow?", "overallScore": 0},
            ]
        )
        pipeline.register_agent(explorer)
        result = pipeline.discover(KEYWORD)

        assert explorer.requests == [{"keyword": KEYWORD}]
        assert result.metrics.initial_problem_count == 2
        by_text = {p.current_formulation: p for p in result.discovered_problems}
        queried = by_text["How do freelancers match partial payments?"]
        assert queried.quality_score.authenticity == 8.0
        assert queried.quality_score.confidence == 0.7
        assert queried.domain == [KEYWORD]
        assert queried.metadata.source_keyword == KEYWORD
        assert queried.metadata.created_by == "explorer"
        (evidence,) = queried.evidence
        assert evidence.type is EvidenceType.QUERY_SUGGESTION
        assert evidence.content == "partial payment matching"
        assert evidence.metadata["is_expanded"] is True
        assert by_text["Why is reconciliation slow?"].quality_score.authenticity == 5.0


# ===================================================================== #
#  End-to-end runs                                                        #
# ===================================================================== #


class TestDegradedRun:

    def test_failing_oracle_leaves_seeds_untouched(self, recorded_bus) -> None:
        bus, store = recorded_bus
        model = FailingChatModel()
        pipeline = _pipeline(model=model, event_bus=bus)
        pipeline.register_agent(ScriptedExplorer(SEEDS))

        result = pipeline.discover(KEYWORD)

        assert result.final_state is PipelineState.EXHAUSTED
        assert pipeline.state is PipelineState.EXHAUSTED
        assert len(result.discovered_problems) == 5
        expected = sorted(
            (weighted_overall(s["overallScore"], 5.0, 5.0, 5.0, 5.0) for s in SEEDS),
            reverse=True,
        )
        assert [p.overall for p in result.discovered_problems] == expected
        assert result.metrics.merges_performed == 0
        assert result.metrics.branches_explored == 0
        assert result.metrics.problems_pruned == 0
        assert result.metrics.quality_improvement == 0.0
        assert model.call_count == 1  # similarity grouping only
        assert result.top_problem.current_formulation.startswith("How to reconcile multi-currency")

        counts = store.counts()
        assert counts["DiscoveryStarted"] == 1
        assert counts["ProblemsSeeded"] == 1
        assert counts["IterationCompleted"] == 1
        assert counts["DiscoveryCompleted"] == 1
        assert "ProblemsMerged" not in counts

    def test_failing_collaborators_are_skipped(self) -> None:
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS))
        for agent_type in (AgentType.SIMULATOR, AgentType.EVALUATOR, AgentType.STRATEGIST):
            pipeline.register_agent(FailingAgent(agent_type))

        result = pipeline.discover(KEYWORD)

        # 5 simulations, 2 evaluation batches of at most 3, 1 strategist call
        assert result.metrics.collaborator_failures == 8
        assert len(result.discovered_problems) == 5
        assert all(p.quality_score.confidence == 0.7 for p in result.discovered_problems)

    def test_iteration_metrics(self) -> None:
        pipeline = _pipeline(DiscoveryConfig(max_iterations=3))
        pipeline.register_agent(ScriptedExplorer(SEEDS))
        result = pipeline.discover(KEYWORD)

        assert result.metrics.total_iterations == 3
        assert [m.iteration_number for m in result.iterations] == [1, 2, 3]
        first = result.iterations[0]
        assert first.problem_count == 5
        assert first.strategy == "feedback-driven"
        assert first.top_problem_id == result.top_problem.problem_id
        assert first.average_quality_score == round(
            sum(p.overall for p in result.discovered_problems) / 5, 2
        )


# ===================================================================== #
#  Stages                                                                 #
# ===================================================================== #


class TestSimulationStage:

    def test_simulation_updates_scores_and_evidence(self) -> None:
        simulator = ScriptedSimulator(
            {
                "validityScore": 8,
                "validation": {
                    "userValidations": [
                        {"urgencyScore": 6, "frequencyScore": 4},
                        {"urgencyScore": 8, "frequencyScore": 6},
                    ]
                },
                "targetAudience": ["freelancers", "consultants"],
                "userJourney": {
                    "searchSteps": [
                        {"query": "match payments", "satisfaction": 0.2, "painPoints": ["manual"]},
                        {"query": "reconcile tool", "satisfaction": 0.9},
                    ],
                    "satisfactionReached": False,
                    "painPoints": ["manual"],
                },
            }
        )
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        pipeline.register_agent(simulator)

        (problem,) = pipeline.discover(KEYWORD).discovered_problems

        assert simulator.requests[0]["iteration"] == 1
        assert simulator.requests[0]["problem"]["id"] == problem.problem_id
        score = problem.quality_score
        assert (score.authenticity, score.urgency, score.scale) == (8.0, 7.0, 5.0)
        assert score.confidence == 0.8
        assert problem.target_audience == ["freelancers", "consultants"]
        assert [e.type for e in problem.evidence] == [EvidenceType.USER_JOURNEY] * 2
        assert problem.evidence[-1].relevance_score == 0.95
        assert problem.metadata.exploration_status is ExplorationStatus.VALIDATING

    def test_validation_means_round_halves_up(self) -> None:
        simulator = ScriptedSimulator(
            {
                "validityScore": 7,
                "validation": {
                    "userValidations": [
                        {"urgencyScore": 7.0, "frequencyScore": 6.0},
                        {"urgencyScore": 7.5, "frequencyScore": 6.5},
                    ]
                },
            }
        )
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        pipeline.register_agent(simulator)

        (problem,) = pipeline.discover(KEYWORD).discovered_problems

        assert problem.quality_score.urgency == 7.3
        assert problem.quality_score.scale == 6.3

    def test_missing_validity_changes_nothing(self) -> None:
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        pipeline.register_agent(ScriptedSimulator({"targetAudience": "freelancers"}))
        (problem,) = pipeline.discover(KEYWORD).discovered_problems
        assert problem.target_audience == []
        assert problem.metadata.exploration_status is ExplorationStatus.INITIAL


class TestEvaluationStage:

    @staticmethod
    def _response(request):
        return {
            "problemGapAnalyses": [
                {
                    "id": request["problems"][0]["id"],
                    "gapSeverity": 8,
                    "solutionGapAnalysis": {
                        "marketGapAnalysis": {
                            "gapSeverity": 8,
                            "unmetNeeds": ["auto-matching"],
                            "opportunitySize": "Large",
                        },
                        "solutionEvaluations": [
                            {"title": "Ledgerly", "overallScore": 4, "weaknesses": ["no bank sync"]}
                        ],
                    },
                },
                {"id": "problem-unknown", "gapSeverity": 2},
            ],
            "contentAnalysis": {
                "qualityAnalysis": {
                    "contentGaps": [
                        {"description": "No tutorials for reconciling Stripe payouts", "severity": 8},
                        {"description": "Outdated screenshots", "severity": 3},
                    ]
                }
            },
        }

    def test_gap_analysis_and_content_gaps(self) -> None:
        evaluator = ScriptedEvaluator(
            self._response,
            feedback=lambda p: make_feedback("evaluator-1", p, FeedbackType.VALIDATION),
        )
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        pipeline.register_agent(evaluator)

        result = pipeline.discover(KEYWORD)

        assert evaluator.requests[0]["sourceKeyword"] == KEYWORD
        assert len(result.discovered_problems) == 2
        by_creator = {p.metadata.created_by: p for p in result.discovered_problems}

        seeded = by_creator["explorer"]
        assert seeded.quality_score.solution_gap == 8.0
        assert seeded.quality_score.feasibility == 8.0
        assert seeded.quality_score.confidence == pytest.approx(0.8)
        assert [e.type for e in seeded.evidence] == [
            EvidenceType.CONTENT_GAP,
            EvidenceType.COMPETITOR_ANALYSIS,
        ]
        assert len(seeded.feedback_history) == 1
        assert result.metrics.feedback_processed == 1

        gap = by_creator["evaluator"]
        assert gap.current_formulation == "No tutorials for reconciling Stripe payouts"
        assert gap.quality_score.solution_gap == 8.0
        assert gap.evidence[0].type is EvidenceType.CONTENT_GAP

    def test_content_gap_respects_capacity(self) -> None:
        pipeline = _pipeline(DiscoveryConfig(max_iterations=1, max_problems_to_track=1))
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        pipeline.register_agent(ScriptedEvaluator(self._response))
        assert len(pipeline.discover(KEYWORD).discovered_problems) == 1

    def test_batches(self) -> None:
        evaluator = ScriptedEvaluator()
        pipeline = _pipeline(
            DiscoveryConfig(max_iterations=1, evaluation_top_n=4, evaluation_batch_size=3)
        )
        pipeline.register_agent(ScriptedExplorer(SEEDS))
        pipeline.register_agent(evaluator)
        pipeline.discover(KEYWORD)
        assert [len(r["problems"]) for r in evaluator.requests] == [3, 1]


class TestStrategistStage:

    @staticmethod
    def _response(request):
        agencies = next(
            p["id"] for p in request["problems"] if p["currentFormulation"].startswith("Agencies")
        )
        return {
            "prioritizedOpportunities": [
                {
                    "title": "PayMatch",
                    "keyProblemSolved": "freelancers lose track of partial payments",
                    "marketPotential": 9,
                    "implementationDifficulty": 3,
                    "targetUsers": "freelancers",
                }
            ],
            "mvpDesigns": [
                {
                    "name": "CashView",
                    "problemToSolve": "Agencies cannot forecast cash flow",
                    "coreFeatures": ["forecast"],
                    "timeToMvp": "2 weeks",
                    "resourceEstimate": "solo developer",
                }
            ],
            "problemRefinements": [
                {
                    "problemId": agencies,
                    "refinedFormulation": "Small agencies cannot forecast cash flow from retainers",
                    "qualityScores": {"urgency": 8},
                }
            ],
            "feedbackLoops": [
                {"newKeywords": ["cash flow forecasting", " ", "cash flow forecasting"]},
                {"newKeywords": []},
            ],
        }

    def test_strategist_outputs_are_applied(self) -> None:
        strategist = ScriptedStrategist(self._response, agent_id="strategist-1")
        pipeline = _pipeline()
        pipeline.register_agent(
            ScriptedExplorer(
                [
                    {"question": "Freelancers lose track of partial payments", "overallScore": 8},
                    {"question": "Agencies cannot forecast cash flow", "overallScore": 6},
                ]
            )
        )
        pipeline.register_agent(strategist)

        result = pipeline.discover(KEYWORD)
        by_text = {p.current_formulation[:8]: p for p in result.discovered_problems}

        freelancers = by_text["Freelanc"]
        score = freelancers.quality_score
        assert (score.scale, score.urgency, score.feasibility) == (9.0, pytest.approx(7.2), 8.0)
        assert freelancers.target_audience == ["freelancers"]
        assert freelancers.metadata.exploration_status is ExplorationStatus.FINALIZED
        assert freelancers.evidence[0].type is EvidenceType.EXPERT_OPINION

        agencies = by_text["Agencies"]
        assert agencies.quality_score.feasibility == 6.0
        assert agencies.quality_score.urgency == 8.0
        (feedback,) = agencies.feedback_history
        assert feedback.feedback_type is FeedbackType.REFINEMENT
        assert feedback.agent_id == "strategist-1"
        assert feedback.suggested_changes[0].suggested_value.startswith("Small agencies")

        assert result.metrics.feedback_loops_processed == 1
        assert result.metrics.suggested_keywords == ["cash flow forecasting"]
        assert result.metrics.feedback_processed == 1

    def test_refinement_applied_through_feedback_synthesis(self) -> None:
        model = SchemaRoutedChatModel(
            responses={
                "FeedbackSynthesisOutput": FeedbackSynthesisOutput(
                    current_formulation="Small agencies cannot forecast cash flow from retainers"
                ),
                "QualityScoreOutput": RuntimeError("rescoring unavailable"),
                "SimilarityGroupsOutput": SimilarityGroupsOutput(),
            }
        )
        pipeline = _pipeline(model=model)
        pipeline.register_agent(
            ScriptedExplorer(
                [
                    {"question": "Freelancers lose track of partial payments", "overallScore": 8},
                    {"question": "Agencies cannot forecast cash flow", "overallScore": 6},
                ]
            )
        )
        pipeline.register_agent(ScriptedStrategist(self._response))

        result = pipeline.discover(KEYWORD)
        refined = next(
            p for p in result.discovered_problems if p.current_formulation.startswith("Small")
        )
        assert refined.original_formulation == "Agencies cannot forecast cash flow"
        assert refined.evolution_path[-1].stage is EvolutionStage.REFINEMENT
        assert refined.metadata.iteration_count == 1
        # fallback rescoring: no evidence, confidence drops by 0.1
        assert refined.quality_score.confidence == pytest.approx(0.6)


class TestMergeStage:

    def test_two_similar_problems_merge(self, recorded_bus) -> None:
        bus, store = recorded_bus
        model = SchemaRoutedChatModel(
            responses={
                "SimilarityGroupsOutput": _group_all,
                "MergeOutput": MergeOutput(
                    id="ignored",
                    current_formulation="Keeping invoices tracked and reconciled is difficult",
                    domain=[KEYWORD],
                    merge_reasoning="both describe invoice tracking",
                ),
            }
        )
        pipeline = _pipeline(model=model, event_bus=bus)
        pipeline.register_agent(
            ScriptedExplorer(["how to track invoices", "invoice tracking difficulties"])
        )

        result = pipeline.discover(KEYWORD)

        primary_id, absorbed_id = _seeded_ids(store)
        assert result.metrics.initial_problem_count == 2
        (survivor,) = result.discovered_problems
        assert survivor.problem_id == primary_id
        assert survivor.metadata.merge_history[-1].merged_problem_ids == (absorbed_id,)
        assert survivor.related_ids(RelationshipType.SIMILAR) == [absorbed_id]
        assert survivor.current_formulation.startswith("Keeping invoices")
        assert result.metrics.merges_performed == 1

        (merged_event,) = store.query(ProblemsMerged)
        assert merged_event.primary_id == primary_id
        assert merged_event.absorbed_ids == (absorbed_id,)
        assert merged_event.degraded is False

    def test_failed_merge_still_removes_secondaries(self, recorded_bus) -> None:
        bus, store = recorded_bus
        model = SchemaRoutedChatModel(
            responses={
                "SimilarityGroupsOutput": _group_all,
                "MergeOutput": RuntimeError("merge model down"),
            }
        )
        pipeline = _pipeline(model=model, event_bus=bus)
        pipeline.register_agent(
            ScriptedExplorer(["how to track invoices", "invoice tracking difficulties"])
        )

        result = pipeline.discover(KEYWORD)

        primary_id, _ = _seeded_ids(store)
        (survivor,) = result.discovered_problems
        assert survivor.problem_id == primary_id
        assert survivor.current_formulation in {
            "how to track invoices",
            "invoice tracking difficulties",
        }
        assert survivor.metadata.merge_history == []
        (merged_event,) = store.query(ProblemsMerged)
        assert merged_event.degraded is True

    @pytest.mark.parametrize("fail_on", ["detect", "merge"])
    def test_raising_detector_degrades_to_no_merge(self, recorded_bus, fail_on: str) -> None:
        bus, store = recorded_bus
        pipeline = _pipeline(similarity_detector=FailingDetector(fail_on), event_bus=bus)
        pipeline.register_agent(
            ScriptedExplorer(["how to track invoices", "invoice tracking difficulties"])
        )

        result = pipeline.discover(KEYWORD)

        assert result.final_state is PipelineState.EXHAUSTED
        assert sorted(p.problem_id for p in result.discovered_problems) == sorted(
            _seeded_ids(store)
        )
        assert result.metrics.merges_performed == 0
        assert store.query(ProblemsMerged) == []
        assert len(store.query(IterationCompleted)) == 1


class TestBranchingStage:

    FORMULATION = "Freelancers lose track of partial payments"

    def _model(self) -> SchemaRoutedChatModel:
        return SchemaRoutedChatModel(
            responses={
                "FeedbackSynthesisOutput": FeedbackSynthesisOutput(
                    current_formulation=self.FORMULATION,
                    branch_suggestions=[
                        BranchSuggestion(
                            formulation="Marketplaces hold payouts without invoice references",
                            quality_estimate=6.0,
                        ),
                        BranchSuggestion(
                            formulation="Agencies chase overdue retainers by hand",
                            reason="retainer angle",
                            quality_estimate=7.0,
                        ),
                    ],
                ),
                "SimilarityGroupsOutput": SimilarityGroupsOutput(),
            }
        )

    def _build(self, config: DiscoveryConfig, bus=None) -> ProblemDiscoveryPipeline:
        pipeline = _pipeline(config, model=self._model(), event_bus=bus)
        pipeline.register_agent(ScriptedExplorer([{"question": self.FORMULATION, "overallScore": 8}]))
        pipeline.register_agent(
            ScriptedStrategist(
                feedback=lambda p: make_feedback(
                    "strategist-1",
                    p,
                    FeedbackType.BRANCH_SUGGESTION,
                    agent_type=AgentType.STRATEGIST,
                )
            )
        )
        return pipeline

    def test_branches_become_children(self, recorded_bus) -> None:
        bus, store = recorded_bus
        pipeline = self._build(DiscoveryConfig(max_iterations=1), bus)

        result = pipeline.discover(KEYWORD)

        assert result.metrics.branches_explored == 2
        assert len(result.discovered_problems) == 3
        parent = next(
            p for p in result.discovered_problems if p.current_formulation == self.FORMULATION
        )
        children = [p for p in result.discovered_problems if p is not parent]
        assert all(b.is_explored for b in parent.branches)
        assert sorted(parent.related_ids(RelationshipType.CHILD)) == sorted(
            c.problem_id for c in children
        )
        for child in children:
            assert child.related_ids(RelationshipType.PARENT) == [parent.problem_id]
            assert child.quality_score.confidence == 0.6
            assert child.quality_score.authenticity == parent.quality_score.authenticity
            assert child.evolution_path[0].stage is EvolutionStage.BRANCHING
            assert child.metadata.iteration_count == 0

        events = store.query(BranchExplored)
        assert len(events) == 2
        first_child = next(p for p in children if p.problem_id == events[0].child_id)
        assert first_child.current_formulation.startswith("Agencies chase")

    def test_branch_budget_per_iteration(self) -> None:
        config = DiscoveryConfig(max_iterations=1, max_branches_per_iteration=1)
        result = self._build(config).discover(KEYWORD)
        assert result.metrics.branches_explored == 1
        formulations = {p.current_formulation for p in result.discovered_problems}
        assert "Agencies chase overdue retainers by hand" in formulations
        assert "Marketplaces hold payouts without invoice references" not in formulations

    def test_failed_branch_is_skipped(self, monkeypatch) -> None:
        pipeline = self._build(DiscoveryConfig(max_iterations=1))

        def broken_child(parent, branch):
            raise ValueError("branch formulation rejected")

        monkeypatch.setattr(pipeline, "_child_from_branch", broken_child)
        result = pipeline.discover(KEYWORD)

        assert result.final_state is PipelineState.EXHAUSTED
        assert result.metrics.branches_explored == 0
        (problem,) = result.discovered_problems
        assert len(problem.unexplored_branches()) == 2

    def test_branching_disabled(self) -> None:
        config = DiscoveryConfig(max_iterations=1, enable_branching=False)
        result = self._build(config).discover(KEYWORD)
        assert result.metrics.branches_explored == 0
        (problem,) = result.discovered_problems
        assert len(problem.unexplored_branches()) == 2


class TestPruneStage:

    def test_failing_problems_pruned_first(self, recorded_bus) -> None:
        bus, store = recorded_bus
        pipeline = _pipeline(DiscoveryConfig(max_iterations=1, max_problems_to_track=3),
                             event_bus=bus)
        pipeline.register_agent(
            ScriptedExplorer(
                [{"question": f"Problem {score}", "overallScore": score} for score in (9, 7, 5, 3, 1)]
            )
        )

        result = pipeline.discover(KEYWORD)

        assert [p.overall for p in result.discovered_problems] == [6.0, 5.5, 5.0]
        assert result.metrics.problems_pruned == 2
        assert pipeline.quality.global_threshold == 5.0
        pruned = store.query(ProblemPruned)
        assert [e.overall for e in pruned] == [4.0, 4.5]
        assert {e.reason for e in pruned} == {"below quality threshold"}

    def test_capacity_prune_uses_depth_first_when_not_adaptive(self, recorded_bus) -> None:
        bus, store = recorded_bus
        config = DiscoveryConfig(
            max_iterations=1, max_problems_to_track=2, adaptive_quality_thresholds=False
        )
        pipeline = _pipeline(config, event_bus=bus)
        pipeline.register_agent(
            ScriptedExplorer([f"Equal problem {i}" for i in range(4)], overall_score=9)
        )

        result = pipeline.discover(KEYWORD)

        seeded = sorted(_seeded_ids(store))
        assert sorted(p.problem_id for p in result.discovered_problems) == seeded[:2]
        assert {e.reason for e in store.query(ProblemPruned)} == {"capacity (depth-first)"}
        assert result.metrics.problems_pruned == 2


# ===================================================================== #
#  Control flow                                                           #
# ===================================================================== #


class TestControlFlow:

    def test_converges(self, recorded_bus) -> None:
        bus, store = recorded_bus
        simulator = ScriptedSimulator(
            {
                "validityScore": 9,
                "validation": {"userValidations": [{"urgencyScore": 9, "frequencyScore": 9}]},
            }
        )
        pipeline = _pipeline(DiscoveryConfig(max_iterations=5), event_bus=bus)
        pipeline.register_agent(ScriptedExplorer(SEEDS[:2]))
        pipeline.register_agent(simulator)

        result = pipeline.discover(KEYWORD)

        assert result.final_state is PipelineState.CONVERGED
        assert result.metrics.total_iterations == 2
        assert [m.average_quality_score for m in result.iterations] == [7.6, 7.6]
        (completed,) = store.query(DiscoveryCompleted)
        assert completed.final_state is PipelineState.CONVERGED
        assert completed.iterations == 2
        assert pipeline.bandit.stats()["feedback-driven"].samples == 4

    def test_cancel_event_before_first_iteration(self) -> None:
        cancel = threading.Event()
        cancel.set()
        pipeline = _pipeline(DiscoveryConfig(max_iterations=3, max_problems_to_track=3))
        pipeline.register_agent(ScriptedExplorer(SEEDS))

        result = pipeline.discover(KEYWORD, cancel_event=cancel)

        assert result.final_state is PipelineState.CANCELLED
        assert result.iterations == ()
        assert result.metrics.total_iterations == 0
        assert [p.quality_score.authenticity for p in result.discovered_problems] == [9.0, 7.0, 6.0]

    def test_cancel_mid_iteration(self, recorded_bus) -> None:
        bus, store = recorded_bus
        pipeline = _pipeline(DiscoveryConfig(max_iterations=2), event_bus=bus)
        evaluator = ScriptedEvaluator()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:2]))
        pipeline.register_agent(ScriptedSimulator(lambda request: pipeline.cancel()))
        pipeline.register_agent(evaluator)

        result = pipeline.discover(KEYWORD)

        assert result.final_state is PipelineState.CANCELLED
        assert evaluator.requests == []
        assert store.query(IterationCompleted) == []
        assert len(result.discovered_problems) == 2

    def test_strategy_switch(self, recorded_bus) -> None:
        bus, store = recorded_bus
        bandit = StrategyBandit()
        bandit.seed("depth-first", StrategyStats(success_rate=0.9, samples=10))
        pipeline = _pipeline(event_bus=bus, bandit=bandit)
        pipeline.register_agent(ScriptedExplorer(SEEDS))

        result = pipeline.discover(KEYWORD)

        (switched,) = store.query(StrategySwitched)
        assert (switched.previous, switched.current) == ("feedback-driven", "depth-first")
        assert result.iterations[0].strategy == "depth-first"
        assert bandit.stats()["depth-first"].samples == 15

    def test_no_strategy_selection_when_not_adaptive(self, recorded_bus) -> None:
        bus, store = recorded_bus
        bandit = StrategyBandit()
        bandit.seed("depth-first", StrategyStats(success_rate=0.9, samples=10))
        config = DiscoveryConfig(max_iterations=1, adaptive_quality_thresholds=False)
        pipeline = _pipeline(config, event_bus=bus, bandit=bandit)
        pipeline.register_agent(ScriptedExplorer(SEEDS))

        result = pipeline.discover(KEYWORD)

        assert store.query(StrategySwitched) == []
        assert result.iterations[0].strategy == "feedback-driven"
        assert bandit.stats()["feedback-driven"].samples == 5

    def test_results_are_copies(self) -> None:
        pipeline = _pipeline()
        pipeline.register_agent(ScriptedExplorer(SEEDS[:1]))
        result = pipeline.discover(KEYWORD)
        result.discovered_problems[0].current_formulation = "changed"
        (live,) = pipeline.problems.ordered()
        assert live.current_formulation == SEEDS[0]["question"]
