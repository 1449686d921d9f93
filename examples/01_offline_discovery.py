#!/usr/bin/env python3
"""Example 01: Offline problem discovery with scripted agents.

Demonstrates:
- Registering explorer, simulator, evaluator and strategist agents
- Running the discovery pipeline without any language model
  (every semantic judgement uses its deterministic fallback)
- Recording run events with an EventBus and EventStore
- Inspecting the DiscoveryResult and exporting it as JSON

Run:
    PYTHONPATH=src python examples/01_offline_discovery.py
"""

from __future__ import annotations

import logging
from typing import Any

from problem_discovery import DiscoveryConfig, ProblemDiscoveryPipeline
from problem_discovery.infrastructure.event_bus import EventBus, EventStore
from problem_discovery.infrastructure.serialization import to_json
from problem_discovery.testing import (
    ScriptedEvaluator,
    ScriptedExplorer,
    ScriptedSimulator,
    ScriptedStrategist,
)

KEYWORD = "invoice reconciliation"


def simulate(request: dict[str, Any]) -> dict[str, Any]:
    """Pretend users validated every problem, a little more each round."""
    boost = min(2.0, request["iteration"] * 0.5)
    return {
        "validityScore": 6.5 + boost,
        "validation": {
            "userValidations": [
                {"urgencyScore": 6 + boost, "frequencyScore": 5},
                {"urgencyScore": 7 + boost, "frequencyScore": 6},
            ]
        },
        "targetAudience": ["freelancers", "small agencies"],
        "userJourney": {
            "searchSteps": [
                {"query": request["problem"]["currentFormulation"], "satisfaction": 0.3,
                 "painPoints": ["spreadsheets", "manual matching"]},
            ],
            "satisfactionReached": False,
            "painPoints": ["spreadsheets"],
        },
    }


def evaluate(request: dict[str, Any]) -> dict[str, Any]:
    """Report a large market gap for the first problem of each batch."""
    first = request["problems"][0]
    return {
        "problemGapAnalyses": [
            {
                "id": first["id"],
                "gapSeverity": 8,
                "solutionGapAnalysis": {
                    "marketGapAnalysis": {
                        "gapSeverity": 8,
                        "unmetNeeds": ["automatic partial-payment matching"],
                        "opportunitySize": "large",
                    },
                    "solutionEvaluations": [
                        {"title": "Generic ledger app", "overallScore": 5,
                         "weaknesses": ["no bank feed matching"]},
                    ],
                },
            }
        ],
    }


def strategize(request: dict[str, Any]) -> dict[str, Any]:
    """Prioritise the best problem and suggest follow-up keywords."""
    best = max(request["problems"], key=lambda p: p["qualityScore"]["overall"])
    return {
        "prioritizedOpportunities": [
            {
                "title": "Payment matcher",
                "keyProblemSolved": best["currentFormulation"],
                "marketPotential": 8,
                "implementationDifficulty": 4,
                "targetUsers": ["freelancers"],
            }
        ],
        "feedbackLoops": [
            {"description": "Adjacent searches", "newKeywords": ["partial payments", "bank feeds"]}
        ],
    }


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    bus = EventBus()
    store = EventStore()
    bus.subscribe_all(store.append)

    config = DiscoveryConfig(max_iterations=3, max_problems_to_track=6)
    pipeline = ProblemDiscoveryPipeline(config, event_bus=bus)
    pipeline.register_agent(
        ScriptedExplorer(
            [
                {"question": "How do freelancers match partial payments to invoices?",
                 "overallScore": 8, "originalQuery": "partial payment invoice"},
                {"question": "Why do bank feeds lose invoice references?", "overallScore": 7},
                {"question": "How do agencies reconcile retainers each month?", "overallScore": 6},
                {"question": "Which tools flag duplicate supplier invoices?", "overallScore": 5},
                {"question": "How to reconcile multi-currency payouts?", "overallScore": 6},
            ]
        )
    )
    pipeline.register_agent(ScriptedSimulator(simulate))
    pipeline.register_agent(ScriptedEvaluator(evaluate))
    pipeline.register_agent(ScriptedStrategist(strategize))

    print("=== Offline Problem Discovery ===")
    print(f"Keyword: {KEYWORD}")
    print()

    result = pipeline.discover(KEYWORD)

    print(f"Final state: {result.final_state.value}")
    print(f"Iterations: {result.metrics.total_iterations}")
    for metrics in result.iterations:
        print(
            f"  #{metrics.iteration_number}: {metrics.problem_count} problems, "
            f"avg quality {metrics.average_quality_score:.2f} ({metrics.strategy})"
        )
    print()
    print("Problems:")
    for problem in result.discovered_problems:
        status = problem.metadata.exploration_status.value
        print(f"  {problem.overall:4.1f}  [{status:<10}] {problem.current_formulation}")
    print()
    print(f"Suggested keywords: {', '.join(result.metrics.suggested_keywords) or 'none'}")
    print(f"Events: {store.counts()}")
    print()
    print(f"JSON export: {len(to_json(result))} characters")
    print("Done.")


if __name__ == "__main__":
    main()
