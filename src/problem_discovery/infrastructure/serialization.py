"""Serialization utilities for the problem discovery engine.

Provides ``to_dict`` / ``from_dict`` conversion for problems and their
parts, plus ``to_dict`` for run results and configs.  Output uses
snake_case keys and enum values, and is always JSON-serializable.

``from_dict`` reconstructors accept permissive input (missing optional keys
fall back to defaults) and raise ``ValueError`` / ``KeyError`` for truly
unrecoverable data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any

from problem_discovery.domain.entities import Problem, ProblemBranch, ProblemMetadata
from problem_discovery.domain.enums import (
    AgentType,
    EvidenceType,
    EvolutionStage,
    ExplorationStatus,
    FeedbackType,
    RelationshipType,
)
from problem_discovery.domain.values import (
    SCORE_DIMENSIONS,
    AgentFeedback,
    AlternativeBranch,
    Evidence,
    EvolutionRecord,
    IterationMetrics,
    MergeRecord,
    ProblemRelationship,
    QualityScore,
    SuggestedChange,
    ValidationResult,
)
from problem_discovery.infrastructure.config import DiscoveryConfig

logger = logging.getLogger(__name__)


def _enum_val(v: Any) -> Any:
    """Return the ``.value`` if *v* is an enum member, else *v* unchanged."""
    if hasattr(v, "value"):
        return v.value
    return v


def _json_default(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    return str(v)


# =========================================================================== #
#  Value objects                                                               #
# =========================================================================== #

def quality_score_to_dict(qs: QualityScore) -> dict[str, Any]:
    return qs.to_dict()


def quality_score_from_dict(data: dict[str, Any]) -> QualityScore:
    """Rebuild a score; ``overall`` is ignored since it is derived."""
    values = {k: float(data[k]) for k in (*SCORE_DIMENSIONS, "confidence") if k in data}
    return QualityScore.clamped(**values)


def evidence_to_dict(e: Evidence) -> dict[str, Any]:
    return {
        "type": _enum_val(e.type),
        "source": e.source,
        "content": e.content,
        "relevance_score": e.relevance_score,
        "timestamp": e.timestamp,
        "metadata": dict(e.metadata) if e.metadata else {},
    }


def evidence_from_dict(data: dict[str, Any]) -> Evidence:
    kwargs: dict[str, Any] = {
        "type": EvidenceType(data["type"]),
        "source": str(data.get("source", "")),
        "content": str(data.get("content", "")),
        "relevance_score": float(data.get("relevance_score", 0.5)),
        "metadata": dict(data.get("metadata", {})),
    }
    if "timestamp" in data:
        kwargs["timestamp"] = float(data["timestamp"])
    return Evidence(**kwargs)


def evolution_record_to_dict(r: EvolutionRecord) -> dict[str, Any]:
    return {
        "stage": _enum_val(r.stage),
        "previous_formulation": r.previous_formulation,
        "current_formulation": r.current_formulation,
        "agent": r.agent,
        "reasoning": r.reasoning,
        "quality_score_before": (
            r.quality_score_before.to_dict() if r.quality_score_before else None
        ),
        "quality_score_after": (
            r.quality_score_after.to_dict() if r.quality_score_after else None
        ),
        "timestamp": r.timestamp,
    }


def evolution_record_from_dict(data: dict[str, Any]) -> EvolutionRecord:
    before = data.get("quality_score_before")
    after = data.get("quality_score_after")
    return EvolutionRecord(
        stage=EvolutionStage(data["stage"]),
        previous_formulation=str(data["previous_formulation"]),
        current_formulation=str(data["current_formulation"]),
        agent=str(data.get("agent", "")),
        reasoning=str(data.get("reasoning", "")),
        quality_score_before=quality_score_from_dict(before) if before else None,
        quality_score_after=quality_score_from_dict(after) if after else None,
        timestamp=float(data.get("timestamp", 0.0)),
    )


def feedback_to_dict(fb: AgentFeedback) -> dict[str, Any]:
    validation = fb.validation_results
    return {
        "feedback_id": fb.feedback_id,
        "agent_id": fb.agent_id,
        "agent_type": _enum_val(fb.agent_type),
        "problem_id": fb.problem_id,
        "feedback_type": _enum_val(fb.feedback_type),
        "confidence_score": fb.confidence_score,
        "validation_results": (
            {
                "is_valid": validation.is_valid,
                "validation_reasoning": validation.validation_reasoning,
                "suggestions": list(validation.suggestions),
            }
            if validation is not None
            else None
        ),
        "suggested_changes": [
            {
                "field_name": c.field_name,
                "suggested_value": c.suggested_value,
                "change_reasoning": c.change_reasoning,
            }
            for c in fb.suggested_changes
        ],
        "alternative_branches": [
            {
                "alternative_formulation": b.alternative_formulation,
                "branch_reasoning": b.branch_reasoning,
                "estimated_quality_score": b.estimated_quality_score,
            }
            for b in fb.alternative_branches
        ],
        "rejection_reason": fb.rejection_reason,
        "timestamp": fb.timestamp,
        "metadata": dict(fb.metadata) if fb.metadata else {},
    }


def feedback_from_dict(data: dict[str, Any]) -> AgentFeedback:
    validation = data.get("validation_results")
    kwargs: dict[str, Any] = {
        "agent_id": str(data["agent_id"]),
        "agent_type": AgentType(data["agent_type"]),
        "problem_id": str(data["problem_id"]),
        "feedback_type": FeedbackType(data["feedback_type"]),
        "confidence_score": float(data.get("confidence_score", 0.5)),
        "validation_results": (
            ValidationResult(
                is_valid=bool(validation.get("is_valid", False)),
                validation_reasoning=str(validation.get("validation_reasoning", "")),
                suggestions=tuple(validation.get("suggestions", ())),
            )
            if validation
            else None
        ),
        "suggested_changes": tuple(
            SuggestedChange(
                field_name=str(c["field_name"]),
                suggested_value=c.get("suggested_value"),
                change_reasoning=str(c.get("change_reasoning", "")),
            )
            for c in data.get("suggested_changes", [])
        ),
        "alternative_branches": tuple(
            AlternativeBranch(
                alternative_formulation=str(b["alternative_formulation"]),
                branch_reasoning=str(b.get("branch_reasoning", "")),
                estimated_quality_score=float(b.get("estimated_quality_score", 5.0)),
            )
            for b in data.get("alternative_branches", [])
        ),
        "rejection_reason": data.get("rejection_reason"),
        "metadata": dict(data.get("metadata", {})),
    }
    if "timestamp" in data:
        kwargs["timestamp"] = float(data["timestamp"])
    if "feedback_id" in data:
        kwargs["feedback_id"] = str(data["feedback_id"])
    return AgentFeedback(**kwargs)


def iteration_metrics_to_dict(m: IterationMetrics) -> dict[str, Any]:
    return asdict(m)


# =========================================================================== #
#  Entities                                                                    #
# =========================================================================== #

def branch_to_dict(b: ProblemBranch) -> dict[str, Any]:
    return {
        "branch_id": b.branch_id,
        "formulation": b.formulation,
        "creation_reason": b.creation_reason,
        "quality_score": b.quality_score,
        "is_explored": b.is_explored,
    }


def branch_from_dict(data: dict[str, Any]) -> ProblemBranch:
    return ProblemBranch(
        formulation=str(data["formulation"]),
        creation_reason=str(data.get("creation_reason", "")),
        quality_score=float(data.get("quality_score", 5.0)),
        branch_id=data.get("branch_id"),
        is_explored=bool(data.get("is_explored", False)),
    )


def problem_to_dict(p: Problem) -> dict[str, Any]:
    meta = p.metadata
    return {
        "problem_id": p.problem_id,
        "original_formulation": p.original_formulation,
        "current_formulation": p.current_formulation,
        "domain": list(p.domain),
        "target_audience": list(p.target_audience),
        "quality_score": p.quality_score.to_dict(),
        "evidence": [evidence_to_dict(e) for e in p.evidence],
        "evolution_path": [evolution_record_to_dict(r) for r in p.evolution_path],
        "feedback_history": [feedback_to_dict(fb) for fb in p.feedback_history],
        "branches": [branch_to_dict(b) for b in p.branches],
        "related_problems": [
            {
                "problem_id": r.problem_id,
                "relationship_type": _enum_val(r.relationship_type),
                "similarity_score": r.similarity_score,
            }
            for r in p.related_problems
        ],
        "metadata": {
            "source_keyword": meta.source_keyword,
            "created_by": meta.created_by,
            "updated_by": meta.updated_by,
            "created_at": meta.created_at,
            "updated_at": meta.updated_at,
            "iteration_count": meta.iteration_count,
            "exploration_status": _enum_val(meta.exploration_status),
            "merge_history": [
                {
                    "merged_problem_ids": list(m.merged_problem_ids),
                    "merge_reasoning": m.merge_reasoning,
                    "timestamp": m.timestamp,
                }
                for m in meta.merge_history
            ],
        },
    }


def problem_from_dict(data: dict[str, Any]) -> Problem:
    meta = data.get("metadata", {})
    metadata = ProblemMetadata(
        source_keyword=str(meta.get("source_keyword", "")),
        created_by=str(meta.get("created_by", "")),
        updated_by=str(meta.get("updated_by", "")),
        iteration_count=int(meta.get("iteration_count", 0)),
        exploration_status=ExplorationStatus(meta.get("exploration_status", "initial")),
        merge_history=[
            MergeRecord(
                merged_problem_ids=tuple(m.get("merged_problem_ids", ())),
                merge_reasoning=str(m.get("merge_reasoning", "")),
                timestamp=float(m.get("timestamp", 0.0)),
            )
            for m in meta.get("merge_history", [])
        ],
    )
    if "created_at" in meta:
        metadata.created_at = float(meta["created_at"])
    if "updated_at" in meta:
        metadata.updated_at = float(meta["updated_at"])

    return Problem(
        problem_id=str(data["problem_id"]),
        original_formulation=str(data["original_formulation"]),
        current_formulation=str(data.get("current_formulation", "")),
        domain=list(data.get("domain", [])),
        target_audience=list(data.get("target_audience", [])),
        quality_score=quality_score_from_dict(data.get("quality_score", {})),
        evidence=[evidence_from_dict(e) for e in data.get("evidence", [])],
        evolution_path=[evolution_record_from_dict(r) for r in data.get("evolution_path", [])],
        feedback_history=[feedback_from_dict(fb) for fb in data.get("feedback_history", [])],
        branches=[branch_from_dict(b) for b in data.get("branches", [])],
        related_problems=[
            ProblemRelationship(
                problem_id=str(r["problem_id"]),
                relationship_type=RelationshipType(r["relationship_type"]),
                similarity_score=r.get("similarity_score"),
            )
            for r in data.get("related_problems", [])
        ],
        metadata=metadata,
    )


# =========================================================================== #
#  Run results                                                                 #
# =========================================================================== #

def result_to_dict(result: Any) -> dict[str, Any]:
    """Serialize a ``DiscoveryResult``."""
    return {
        "source_keyword": result.source_keyword,
        "final_state": _enum_val(result.final_state),
        "discovered_problems": [problem_to_dict(p) for p in result.discovered_problems],
        "iterations": [iteration_metrics_to_dict(m) for m in result.iterations],
        "metrics": asdict(result.metrics),
    }


def config_to_dict(cfg: DiscoveryConfig) -> dict[str, Any]:
    return cfg.to_dict()


# =========================================================================== #
#  Unified serializer                                                          #
# =========================================================================== #

# Maps type -> (to_dict_fn, from_dict_fn)
_SERIALIZERS: dict[type, tuple[Any, Any]] = {
    QualityScore: (quality_score_to_dict, quality_score_from_dict),
    Evidence: (evidence_to_dict, evidence_from_dict),
    EvolutionRecord: (evolution_record_to_dict, evolution_record_from_dict),
    AgentFeedback: (feedback_to_dict, feedback_from_dict),
    ProblemBranch: (branch_to_dict, branch_from_dict),
    Problem: (problem_to_dict, problem_from_dict),
    IterationMetrics: (iteration_metrics_to_dict, None),
    DiscoveryConfig: (config_to_dict, DiscoveryConfig.from_dict),
}


def serialize(obj: Any) -> dict[str, Any]:
    """Serialize a known domain/infrastructure object to a dict.

    Unregistered dataclasses (``DiscoveryResult``, metrics) are handled too;
    anything else raises ``TypeError``.
    """
    ser = _SERIALIZERS.get(type(obj))
    if ser is not None:
        to_fn, _ = ser
        return to_fn(obj)
    if hasattr(obj, "discovered_problems"):
        return result_to_dict(obj)
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def deserialize(data: dict[str, Any], target_type: type) -> Any:
    """Deserialize a dict into *target_type*."""
    ser = _SERIALIZERS.get(target_type)
    if ser is not None and ser[1] is not None:
        return ser[1](data)
    raise TypeError(f"No deserializer registered for {target_type.__name__}")


# =========================================================================== #
#  JSON helpers                                                                #
# =========================================================================== #

def to_json(obj: Any, *, indent: int | None = 2) -> str:
    """Serialize a domain/infra object to a JSON string."""
    d = serialize(obj)
    return json.dumps(d, indent=indent, default=_json_default)


def from_json(json_str: str, target_type: type) -> Any:
    """Deserialize a JSON string into *target_type*."""
    data = json.loads(json_str)
    return deserialize(data, target_type)
