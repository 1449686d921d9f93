"""Similarity detection and merging of near-duplicate problems.

The oracle decides which problems describe the same need; without an
affirmative answer nothing is grouped.  Merging folds the evidence and
feedback of secondary problems into a primary one and asks the oracle for a
synthesised formulation; if that fails the primary keeps its formulation and
only the domains are unioned.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, Field

from problem_discovery.domain.entities import Problem
from problem_discovery.domain.enums import EvolutionStage, RelationshipType
from problem_discovery.domain.exceptions import InvariantViolationError
from problem_discovery.domain.values import MergeRecord
from problem_discovery.infrastructure.config import SimilarityDetectionSettings
from problem_discovery.infrastructure.oracle import SemanticOracle

logger = logging.getLogger(__name__)

AGENT_NAME = "similarity_detector"


# -- Structured output schemas -----------------------------------------------


class SimilarityGroup(BaseModel):
    """One group of problems that describe the same need."""

    primary_id: str = Field(description="Id of the problem the others merge into")
    secondary_ids: list[str] = Field(description="Ids of the problems to absorb")
    reasoning: str = Field(default="", description="Why these are duplicates")


class SimilarityGroupsOutput(BaseModel):
    """Structured output schema for similarity grouping."""

    groups: list[SimilarityGroup] = Field(default_factory=list)


class MergeOutput(BaseModel):
    """Structured output schema for merging a group into one problem."""

    id: str = Field(description="Id of the primary problem")
    current_formulation: str = Field(min_length=1, description="Synthesised formulation")
    domain: list[str] = Field(min_length=1, description="Domains of the merged problem")
    target_audience: list[str] | None = Field(default=None)
    merge_reasoning: str = Field(default="", description="What was combined and why")


# -- Prompts -----------------------------------------------------------------

_GROUPING_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You detect near-duplicate user problems. Group problems that "
            "describe the same underlying need. Use the {algorithm} similarity "
            "measure; only group problems whose similarity is at least "
            "{threshold}. Weigh the signals as follows: {weights}. "
            "Consider evidence overlap: {consider_evidence}.\n\n"
            "Each problem may appear in at most one group. Pick as primary the "
            "clearest, best-supported formulation. Return no groups if nothing "
            "is similar enough.",
        ),
        ("human", "## Problems\n{problems}"),
    ]
)

_MERGE_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You merge near-duplicate user problems into a single, sharper "
            "problem statement that keeps every distinct insight. Keep the "
            "primary problem's id. List every domain and audience that still "
            "applies.",
        ),
        (
            "human",
            "## Primary problem ({primary_id})\n{primary}\n\n"
            "## Problems to absorb\n{secondaries}\n\n"
            "Produce the merged problem.",
        ),
    ]
)


def _describe(problem: Problem) -> dict[str, object]:
    return {
        "id": problem.problem_id,
        "formulation": problem.current_formulation,
        "domain": problem.domain,
        "target_audience": problem.target_audience,
        "overall": problem.overall,
        "evidence": [e.content[:120] for e in problem.evidence[:5]],
    }


# -- SimilarityDetector ----------------------------------------------------


class SimilarityDetector:
    """Groups near-duplicate problems and merges each group.

    Parameters
    ----------
    settings:
        Similarity instructions and threshold.
    oracle:
        Semantic oracle; defaults to an unavailable one, under which no
        groups are ever detected.
    timeout:
        Per-call oracle timeout in seconds.
    """

    def __init__(
        self,
        settings: SimilarityDetectionSettings | None = None,
        oracle: SemanticOracle | None = None,
        timeout: float | None = None,
    ) -> None:
        self.settings = settings or SimilarityDetectionSettings()
        self._oracle = oracle or SemanticOracle()
        self._timeout = timeout

    # -- grouping -----------------------------------------------------------

    def detect_groups(self, problems: Sequence[Problem]) -> dict[str, list[str]]:
        """Map each primary id to the ids it should absorb.

        Records a symmetric ``similar`` relationship, scored with the
        configured threshold, on every grouped pair of *problems*.
        """
        if len(problems) < 2:
            return {}

        weights = self.settings.weight_factors
        result = self._oracle.request(
            _GROUPING_PROMPT,
            {
                "algorithm": self.settings.algorithm,
                "threshold": self.settings.threshold,
                "weights": (
                    json.dumps(
                        {
                            "formulation": weights.formulation,
                            "domain": weights.domain,
                            "audience": weights.audience,
                            "evidence": weights.evidence,
                        }
                    )
                    if self.settings.use_weighted_factors
                    else "equal weights"
                ),
                "consider_evidence": "yes" if self.settings.consider_evidence else "no",
                "problems": json.dumps([_describe(p) for p in problems], indent=2),
            },
            SimilarityGroupsOutput,
            timeout=self._timeout,
        )
        if not result.is_ok:
            logger.warning(
                "SimilarityDetector: grouping unavailable, skipping merges (%s)",
                result.error,
            )
            return {}

        by_id = {p.problem_id: p for p in problems}
        groups = self._sanitise(result.value, by_id)
        for primary_id, secondary_ids in groups.items():
            primary = by_id[primary_id]
            for secondary_id in secondary_ids:
                secondary = by_id[secondary_id]
                primary.add_relationship(
                    secondary_id, RelationshipType.SIMILAR, self.settings.threshold
                )
                secondary.add_relationship(
                    primary_id, RelationshipType.SIMILAR, self.settings.threshold
                )
        if groups:
            logger.info(
                "SimilarityDetector: %d group(s) covering %d problem(s)",
                len(groups),
                sum(len(v) + 1 for v in groups.values()),
            )
        return groups

    @staticmethod
    def _sanitise(
        output: SimilarityGroupsOutput, by_id: dict[str, Problem]
    ) -> dict[str, list[str]]:
        """Drop unknown ids, self references and ids claimed twice."""
        claimed: set[str] = set()
        groups: dict[str, list[str]] = {}
        for group in output.groups:
            primary_id = group.primary_id
            if primary_id not in by_id or primary_id in claimed:
                continue
            secondaries: list[str] = []
            for secondary_id in group.secondary_ids:
                if (
                    secondary_id in by_id
                    and secondary_id != primary_id
                    and secondary_id not in claimed
                    and secondary_id not in secondaries
                ):
                    secondaries.append(secondary_id)
            if secondaries:
                claimed.add(primary_id)
                claimed.update(secondaries)
                groups[primary_id] = secondaries
        return groups

    # -- merging ------------------------------------------------------------

    def merge(self, primary: Problem, secondaries: Sequence[Problem]) -> Problem:
        """Fold *secondaries* into a copy of *primary*; never raises."""
        if not secondaries:
            return primary.copy()

        result = self._oracle.request(
            _MERGE_PROMPT,
            {
                "primary_id": primary.problem_id,
                "primary": json.dumps(_describe(primary), indent=2),
                "secondaries": json.dumps([_describe(s) for s in secondaries], indent=2),
            },
            MergeOutput,
            timeout=self._timeout,
        )
        if result.is_ok:
            try:
                return self._apply_merge(primary, secondaries, result.value)
            except InvariantViolationError as exc:
                logger.warning(
                    "SimilarityDetector: merged %s rejected (%s), falling back",
                    primary.problem_id,
                    "; ".join(exc.issues),
                )

        merged = primary.copy()
        for secondary in secondaries:
            merged.merge_domains(secondary.domain)
        merged.touch(AGENT_NAME)
        logger.info(
            "SimilarityDetector: fallback merge of %s into %s (domains only)",
            [s.problem_id for s in secondaries],
            primary.problem_id,
        )
        return merged

    def _apply_merge(
        self,
        primary: Problem,
        secondaries: Sequence[Problem],
        output: MergeOutput,
    ) -> Problem:
        merged = primary.copy()
        for secondary in secondaries:
            merged.merge_domains(secondary.domain)
            merged.merge_audience(secondary.target_audience)
            for evidence in secondary.evidence:
                merged.add_evidence(evidence.with_origin(secondary.problem_id))
            for feedback in secondary.feedback_history:
                merged.add_feedback(feedback.reassigned(merged.problem_id))
        merged.merge_domains(output.domain)
        if output.target_audience:
            merged.merge_audience(output.target_audience)

        formulation = output.current_formulation.strip()
        absorbed = tuple(s.problem_id for s in secondaries)
        merged.reformulate(
            formulation,
            stage=EvolutionStage.MERGE,
            agent=AGENT_NAME,
            reasoning=output.merge_reasoning,
        )
        merged.metadata.merge_history.append(
            MergeRecord(merged_problem_ids=absorbed, merge_reasoning=output.merge_reasoning)
        )

        issues: list[str] = []
        if not formulation:
            issues.append("empty formulation")
        expected_evidence = len(primary.evidence) + sum(len(s.evidence) for s in secondaries)
        if len(merged.evidence) < expected_evidence:
            issues.append(
                f"evidence shrank to {len(merged.evidence)} (expected {expected_evidence})"
            )
        if not set(primary.domain) <= set(merged.domain):
            issues.append("primary domains lost")
        if issues:
            raise InvariantViolationError(
                "Merged problem is inconsistent",
                problem_id=primary.problem_id,
                issues=issues,
            )

        logger.info(
            "SimilarityDetector: merged %s into %s", list(absorbed), primary.problem_id
        )
        return merged
