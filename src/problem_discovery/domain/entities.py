"""Domain entities for the problem discovery engine.

Entities have *identity* (a unique id that persists across mutations) and a
mutable lifecycle.  ``Problem`` is the unit the pipeline refines; its audit
lists (evidence, evolution path, feedback history, merge history) are
append-only.  ``ProblemBranch`` is an alternative formulation waiting to be
explored.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field

from .enums import EvolutionStage, ExplorationStatus, RelationshipType
from .values import (
    AgentFeedback,
    Evidence,
    EvolutionRecord,
    MergeRecord,
    ProblemRelationship,
    QualityScore,
)

# ---------------------------------------------------------------------------
# ProblemBranch entity
# ---------------------------------------------------------------------------

class ProblemBranch:
    """An alternative formulation attached to a problem.

    ``is_explored`` starts ``False`` and flips to ``True`` exactly once, via
    ``mark_explored``; there is no way back.
    """

    __slots__ = ("branch_id", "formulation", "creation_reason", "quality_score", "_explored")

    def __init__(
        self,
        formulation: str,
        creation_reason: str = "",
        quality_score: float = 5.0,
        branch_id: str | None = None,
        is_explored: bool = False,
    ) -> None:
        self.branch_id = branch_id or f"branch-{uuid.uuid4().hex[:8]}"
        self.formulation = formulation
        self.creation_reason = creation_reason
        self.quality_score = quality_score
        self._explored = is_explored

    @property
    def is_explored(self) -> bool:
        return self._explored

    def mark_explored(self) -> None:
        self._explored = True

    def __repr__(self) -> str:
        return (
            f"ProblemBranch(branch_id={self.branch_id!r}, "
            f"formulation={self.formulation!r}, explored={self._explored})"
        )


# ---------------------------------------------------------------------------
# Problem entity
# ---------------------------------------------------------------------------

@dataclass
class ProblemMetadata:
    """Bookkeeping carried by every problem."""

    source_keyword: str = ""
    created_by: str = ""
    updated_by: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    iteration_count: int = 0
    exploration_status: ExplorationStatus = ExplorationStatus.INITIAL
    merge_history: list[MergeRecord] = field(default_factory=list)


@dataclass
class Problem:
    """A candidate unmet-need hypothesis refined across iterations.

    Identity is ``problem_id``.  ``quality_score`` is a frozen
    ``QualityScore`` whose ``overall`` is derived from its dimensions, so
    replacing the score is the only way to change it.
    """

    original_formulation: str
    domain: list[str]
    current_formulation: str = ""
    problem_id: str = field(default_factory=lambda: f"problem-{uuid.uuid4().hex[:12]}")
    target_audience: list[str] = field(default_factory=list)
    quality_score: QualityScore = field(default_factory=QualityScore)
    evidence: list[Evidence] = field(default_factory=list)
    evolution_path: list[EvolutionRecord] = field(default_factory=list)
    feedback_history: list[AgentFeedback] = field(default_factory=list)
    branches: list[ProblemBranch] = field(default_factory=list)
    related_problems: list[ProblemRelationship] = field(default_factory=list)
    metadata: ProblemMetadata = field(default_factory=ProblemMetadata)

    def __post_init__(self) -> None:
        self.domain = _unique(self.domain)
        if not self.domain:
            raise ValueError("Problem domain must contain at least one entry")
        if not self.current_formulation:
            self.current_formulation = self.original_formulation

    # -- derived views --------------------------------------------------------

    @property
    def overall(self) -> float:
        return self.quality_score.overall

    @property
    def is_finalized(self) -> bool:
        return self.metadata.exploration_status is ExplorationStatus.FINALIZED

    def unexplored_branches(self) -> list[ProblemBranch]:
        return [b for b in self.branches if not b.is_explored]

    def related_ids(self, relationship_type: RelationshipType | None = None) -> list[str]:
        return [
            r.problem_id
            for r in self.related_problems
            if relationship_type is None or r.relationship_type is relationship_type
        ]

    # -- mutation helpers -----------------------------------------------------

    def touch(self, by: str) -> None:
        self.metadata.updated_at = time.time()
        self.metadata.updated_by = by

    def add_evidence(self, evidence: Evidence) -> None:
        self.evidence.append(evidence)

    def add_feedback(self, feedback: AgentFeedback) -> bool:
        """Append *feedback* unless an item with the same dedup key exists.

        Returns ``True`` if it was appended.
        """
        key = feedback.dedup_key
        if any(existing.dedup_key == key for existing in self.feedback_history):
            return False
        self.feedback_history.append(feedback)
        return True

    def add_relationship(
        self,
        problem_id: str,
        relationship_type: RelationshipType,
        similarity_score: float | None = None,
    ) -> bool:
        """Link to *problem_id* unless the same link already exists."""
        if problem_id == self.problem_id:
            return False
        for rel in self.related_problems:
            if rel.problem_id == problem_id and rel.relationship_type is relationship_type:
                return False
        self.related_problems.append(
            ProblemRelationship(problem_id, relationship_type, similarity_score)
        )
        return True

    def add_branch(self, branch: ProblemBranch) -> None:
        self.branches.append(branch)

    def reformulate(
        self,
        formulation: str,
        stage: EvolutionStage,
        agent: str,
        reasoning: str = "",
        score_after: QualityScore | None = None,
    ) -> EvolutionRecord:
        """Set a new current formulation and log it on the evolution path."""
        record = EvolutionRecord(
            stage=stage,
            previous_formulation=self.current_formulation,
            current_formulation=formulation,
            agent=agent,
            reasoning=reasoning,
            quality_score_before=self.quality_score,
            quality_score_after=score_after or self.quality_score,
        )
        self.current_formulation = formulation
        self.evolution_path.append(record)
        self.touch(agent)
        return record

    def update_scores(self, **values: float) -> None:
        """Replace score fields, clamping them into range."""
        self.quality_score = self.quality_score.with_updates(**values)

    def merge_domains(self, domains: list[str]) -> None:
        self.domain = _unique([*self.domain, *domains])

    def merge_audience(self, audience: list[str]) -> None:
        self.target_audience = _unique([*self.target_audience, *audience])

    def copy(self) -> Problem:
        """Deep, independent copy; services work on copies, never in place."""
        return copy.deepcopy(self)


def _unique(items: list[str]) -> list[str]:
    """Order-preserving de-duplication, dropping blanks."""
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        text = item.strip() if isinstance(item, str) else str(item)
        if text and text not in seen:
            seen.add(text)
            result.append(text)
    return result
