#!/usr/bin/env python3
"""Example 02: Discovery backed by a (mock) chat model.

Demonstrates:
- Passing a LangChain chat model to the pipeline; every semantic
  judgement (grouping, merging, feedback synthesis, re-scoring) then
  goes through ``SemanticOracle``
- Near-duplicate problems being merged
- Feedback synthesis proposing branches that become child problems
- Per-stage events (merges, branches, prunes)

The mock model answers by structured-output schema, so no API key is
needed.  To use a real model, pass any ``BaseChatModel`` that supports
``with_structured_output`` (for example ``ChatAnthropic``) instead.

Run:
    PYTHONPATH=src python examples/02_mock_llm_discovery.py
"""

from __future__ import annotations

import json
import logging
from typing import Any

from problem_discovery import DiscoveryConfig, ProblemDiscoveryPipeline
from problem_discovery.domain.enums import AgentType, FeedbackType
from problem_discovery.domain.events import BranchExplored, ProblemPruned, ProblemsMerged
from problem_discovery.infrastructure.event_bus import EventBus, EventStore
from problem_discovery.services.feedback import BranchSuggestion, FeedbackSynthesisOutput
from problem_discovery.services.quality import QualityScoreOutput, ThresholdDecisionOutput
from problem_discovery.services.similarity import (
    MergeOutput,
    SimilarityGroup,
    SimilarityGroupsOutput,
)
from problem_discovery.testing import (
    SchemaRoutedChatModel,
    ScriptedExplorer,
    ScriptedStrategist,
    make_feedback,
)

KEYWORD = "invoice tracking"


def _listed_problems(prompt: Any) -> list[dict[str, Any]]:
    human = prompt.to_messages()[-1].content
    return json.loads(human.split("\n", 1)[1])


def group_duplicates(prompt: Any) -> SimilarityGroupsOutput:
    """Group every pair of problems that both mention 'track'."""
    tracking = [p["id"] for p in _listed_problems(prompt) if "track" in p["formulation"].lower()]
    if len(tracking) < 2:
        return SimilarityGroupsOutput()
    return SimilarityGroupsOutput(
        groups=[
            SimilarityGroup(
                primary_id=tracking[0],
                secondary_ids=tracking[1:],
                reasoning="all describe keeping track of invoices",
            )
        ]
    )


def synthesise(prompt: Any) -> FeedbackSynthesisOutput:
    """Keep the formulation and propose one alternative direction."""
    human = prompt.to_messages()[-1].content
    formulation = human.split("\n", 2)[1]
    return FeedbackSynthesisOutput(
        current_formulation=formulation,
        branch_suggestions=[
            BranchSuggestion(
                formulation=f"{formulation} (for agencies with retainers)",
                reason="agencies mentioned in feedback",
                quality_estimate=7.0,
            )
        ],
        changes_made=[],
        evolution_reasoning="formulation already precise",
    )


def build_model() -> SchemaRoutedChatModel:
    return SchemaRoutedChatModel(
        responses={
            "SimilarityGroupsOutput": group_duplicates,
            "MergeOutput": MergeOutput(
                id="primary",
                current_formulation="Freelancers cannot keep track of which invoices were paid",
                domain=[KEYWORD, "bookkeeping"],
                target_audience=["freelancers"],
                merge_reasoning="same underlying tracking problem",
            ),
            "FeedbackSynthesisOutput": synthesise,
            "QualityScoreOutput": QualityScoreOutput(
                authenticity=7.5, urgency=7.0, scale=6.5, solution_gap=7.0,
                feasibility=6.0, confidence=0.75,
            ),
            "ThresholdDecisionOutput": ThresholdDecisionOutput(
                meets_threshold=True, adjusted_threshold=6.0, reasoning="mock"
            ),
        }
    )


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    bus = EventBus()
    store = EventStore()
    bus.subscribe_all(store.append)

    model = build_model()
    config = DiscoveryConfig(max_iterations=2, max_problems_to_track=4)
    pipeline = ProblemDiscoveryPipeline(config, model=model, event_bus=bus)
    pipeline.register_agent(
        ScriptedExplorer(
            [
                {"question": "How to track invoices", "overallScore": 7},
                {"question": "Invoice tracking difficulties", "overallScore": 6},
                {"question": "Why clients pay late", "overallScore": 8},
            ]
        )
    )
    pipeline.register_agent(
        ScriptedStrategist(
            feedback=lambda problem: make_feedback(
                "strategist-demo",
                problem,
                FeedbackType.BRANCH_SUGGESTION,
                0.7,
                alternatives=["Agencies with retainers"],
                agent_type=AgentType.STRATEGIST,
            )
        )
    )

    print("=== Discovery With A Mock Chat Model ===")
    result = pipeline.discover(KEYWORD)

    print(f"Final state: {result.final_state.value}")
    print(f"Merges: {result.metrics.merges_performed}")
    print(f"Branches explored: {result.metrics.branches_explored}")
    print(f"Pruned: {result.metrics.problems_pruned}")
    print()
    for event in store.query(ProblemsMerged):
        print(f"merged {event.absorbed_ids} into {event.primary_id}")
    for event in store.query(BranchExplored):
        print(f"branched {event.parent_id} -> {event.child_id}")
    for event in store.query(ProblemPruned):
        print(f"pruned {event.problem_id} ({event.reason})")
    print()
    for problem in result.discovered_problems:
        print(f"  {problem.overall:4.1f}  {problem.current_formulation}")
    print()
    print(f"Oracle calls: {len(model.calls)}")
    print("Done.")


if __name__ == "__main__":
    main()
