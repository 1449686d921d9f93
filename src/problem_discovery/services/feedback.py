"""Feedback processing: folding collaborator feedback into a problem.

``FeedbackProcessor.process`` appends new feedback to a copy of the problem
and asks the oracle to synthesise an updated formulation under the
configured incorporation strategy.  When the oracle is unavailable only the
feedback history changes.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, Field

from problem_discovery.domain.entities import Problem, ProblemBranch
from problem_discovery.domain.enums import EvolutionStage, FeedbackStrategy
from problem_discovery.domain.values import AgentFeedback
from problem_discovery.infrastructure.oracle import SemanticOracle

logger = logging.getLogger(__name__)

AGENT_NAME = "feedback_processor"

_STRATEGY_INSTRUCTIONS: Mapping[FeedbackStrategy, str] = {
    FeedbackStrategy.ACCEPT_ALL: (
        "Incorporate every suggestion that does not contradict another."
    ),
    FeedbackStrategy.MAJORITY_VOTE: (
        "Only apply a change when most feedback items agree with it."
    ),
    FeedbackStrategy.CONFIDENCE_WEIGHTED: (
        "Weigh each feedback item by its confidence score; low-confidence "
        "feedback should rarely override high-confidence feedback."
    ),
}


# -- Structured output schemas -----------------------------------------------


class BranchSuggestion(BaseModel):
    """An alternative formulation worth exploring separately."""

    formulation: str = Field(min_length=1)
    reason: str = Field(default="")
    quality_estimate: float = Field(default=5.0, ge=1.0, le=10.0)


class FeedbackSynthesisOutput(BaseModel):
    """Structured output schema for feedback synthesis."""

    current_formulation: str = Field(description="Updated problem formulation")
    domain: list[str] = Field(default_factory=list)
    target_audience: list[str] | None = Field(default=None)
    branch_suggestions: list[BranchSuggestion] = Field(default_factory=list)
    changes_made: list[str] = Field(default_factory=list)
    evolution_reasoning: str = Field(default="")


# -- Prompt ------------------------------------------------------------------

_SYNTHESIS_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You refine a user-problem statement using feedback from several "
            "analysis agents. Strategy: {strategy}. {strategy_instructions}\n\n"
            "Keep the statement about the user's need, not a solution. "
            "If some feedback points in a genuinely different direction, "
            "propose it as a branch instead of forcing it into the statement.",
        ),
        (
            "human",
            "## Problem\n{formulation}\n\n"
            "**Original formulation**: {original_formulation}\n"
            "**Domain**: {domain}\n"
            "**Target audience**: {audience}\n"
            "**Existing branches**: {branches}\n\n"
            "## Feedback\n{feedback}\n\n"
            "Produce the updated problem.",
        ),
    ]
)


def _format_feedback(items: Sequence[AgentFeedback]) -> str:
    rendered = []
    for fb in items:
        entry: dict[str, object] = {
            "agent": f"{fb.agent_type.value}:{fb.agent_id}",
            "type": fb.feedback_type.value,
            "confidence": fb.confidence_score,
        }
        if fb.validation_results is not None:
            entry["valid"] = fb.validation_results.is_valid
            entry["reasoning"] = fb.validation_results.validation_reasoning
            entry["suggestions"] = list(fb.validation_results.suggestions)
        if fb.suggested_changes:
            entry["changes"] = [
                {"field": c.field_name, "value": str(c.suggested_value), "why": c.change_reasoning}
                for c in fb.suggested_changes
            ]
        if fb.alternative_branches:
            entry["alternatives"] = [b.alternative_formulation for b in fb.alternative_branches]
        if fb.rejection_reason:
            entry["rejection"] = fb.rejection_reason
        rendered.append(entry)
    return json.dumps(rendered, indent=2)


# -- FeedbackProcessor -----------------------------------------------------


class FeedbackProcessor:
    """Aggregates feedback into an updated problem.

    Parameters
    ----------
    strategy:
        How conflicting feedback should be weighed.
    oracle:
        Semantic oracle; defaults to an unavailable one.
    timeout:
        Per-call oracle timeout in seconds.
    """

    def __init__(
        self,
        strategy: FeedbackStrategy = FeedbackStrategy.CONFIDENCE_WEIGHTED,
        oracle: SemanticOracle | None = None,
        timeout: float | None = None,
    ) -> None:
        self.strategy = strategy
        self._oracle = oracle or SemanticOracle()
        self._timeout = timeout

    @staticmethod
    def is_duplicate_branch(problem: Problem, candidate: str) -> bool:
        """Whether *candidate* repeats the formulation or an existing branch."""
        if candidate == problem.current_formulation:
            return True
        needle = candidate.strip().lower()
        for branch in problem.branches:
            existing = branch.formulation.strip().lower()
            if existing == needle or needle in existing or existing in needle:
                return True
        return False

    def process(self, problem: Problem, feedback_items: Sequence[AgentFeedback]) -> Problem:
        """Return an updated copy of *problem*; never raises.

        With no feedback the problem itself is returned unchanged.
        """
        if not feedback_items:
            return problem

        updated = problem.copy()
        appended = sum(1 for fb in feedback_items if updated.add_feedback(fb))
        updated.touch(AGENT_NAME)

        result = self._oracle.request(
            _SYNTHESIS_PROMPT,
            {
                "strategy": self.strategy.value,
                "strategy_instructions": _STRATEGY_INSTRUCTIONS[self.strategy],
                "formulation": problem.current_formulation,
                "original_formulation": problem.original_formulation,
                "domain": ", ".join(problem.domain),
                "audience": ", ".join(problem.target_audience) or "unspecified",
                "branches": "; ".join(b.formulation for b in problem.branches) or "none",
                "feedback": _format_feedback(feedback_items),
            },
            FeedbackSynthesisOutput,
            timeout=self._timeout,
        )
        if not result.is_ok:
            logger.warning(
                "FeedbackProcessor: synthesis failed for %s, recorded %d feedback item(s) only",
                problem.problem_id,
                appended,
            )
            return updated

        output = result.value
        domains = [d.strip() for d in output.domain if d.strip()]
        if domains:
            updated.domain = list(dict.fromkeys(domains))
        if output.target_audience:
            updated.target_audience = []
            updated.merge_audience(output.target_audience)

        formulation = output.current_formulation.strip()
        if formulation and formulation != problem.current_formulation:
            updated.reformulate(
                formulation,
                stage=EvolutionStage.REFINEMENT,
                agent=AGENT_NAME,
                reasoning=output.evolution_reasoning,
            )
            updated.metadata.iteration_count += 1

        added = 0
        for suggestion in output.branch_suggestions:
            candidate = suggestion.formulation.strip()
            if not candidate or self.is_duplicate_branch(updated, candidate):
                continue
            updated.add_branch(
                ProblemBranch(
                    formulation=candidate,
                    creation_reason=suggestion.reason,
                    quality_score=suggestion.quality_estimate,
                )
            )
            added += 1

        logger.debug(
            "FeedbackProcessor: %s processed %d item(s), %d change(s), %d new branch(es)",
            problem.problem_id,
            len(feedback_items),
            len(output.changes_made),
            added,
        )
        return updated

    def process_all(
        self,
        problems: Sequence[Problem],
        feedback_map: Mapping[str, Sequence[AgentFeedback]],
    ) -> list[Problem]:
        """``process`` every problem with its feedback, preserving order."""
        return [self.process(p, feedback_map.get(p.problem_id, ())) for p in problems]
