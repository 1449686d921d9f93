"""Configuration dataclasses for the problem discovery engine.

Each config is a frozen ``dataclass`` with a ``validate()`` method that raises
``ConfigurationError`` (a ``ValueError``) on invalid combinations, plus
``to_dict``/``from_dict`` helpers for JSON round-trips.  The pipeline
validates its config once, at construction.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from problem_discovery.domain.enums import FeedbackStrategy, SimilarityAlgorithm
from problem_discovery.domain.exceptions import ConfigurationError
from problem_discovery.domain.values import QualityThresholds, ThresholdAdjustmentFactors


def _filtered(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    valid_keys = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_keys}


# ===================================================================== #
#  Similarity Detection                                                  #
# ===================================================================== #

@dataclass(frozen=True)
class SimilarityWeights:
    """Relative weight of each signal when judging two problems similar."""

    formulation: float = 0.6
    domain: float = 0.15
    audience: float = 0.15
    evidence: float = 0.1

    def validate(self) -> None:
        for name in ("formulation", "domain", "audience", "evidence"):
            value = getattr(self, name)
            if value < 0.0:
                raise ConfigurationError(
                    f"weight_factors.{name} must be >= 0, got {value}",
                    field_name=f"weight_factors.{name}",
                )
        if self.formulation + self.domain + self.audience + self.evidence <= 0.0:
            raise ConfigurationError(
                "weight_factors must not all be zero", field_name="weight_factors"
            )


_VALID_ALGORITHMS = frozenset(a.value for a in SimilarityAlgorithm)


@dataclass(frozen=True)
class SimilarityDetectionSettings:
    """Instructions handed to the oracle when grouping near-duplicates.

    Attributes
    ----------
    algorithm:
        Similarity measure the oracle is asked to apply.
    threshold:
        Minimum similarity for two problems to be grouped; also the score
        recorded on the resulting ``similar`` relationships.
    consider_evidence:
        Whether evidence overlap counts towards similarity.
    use_weighted_factors:
        Whether ``weight_factors`` are passed to the oracle.
    weight_factors:
        Per-signal weights.
    """

    algorithm: str = "hybrid"
    threshold: float = 0.7
    consider_evidence: bool = True
    use_weighted_factors: bool = True
    weight_factors: SimilarityWeights = field(default_factory=SimilarityWeights)

    def __post_init__(self) -> None:
        if isinstance(self.weight_factors, dict):
            object.__setattr__(
                self,
                "weight_factors",
                SimilarityWeights(**_filtered(SimilarityWeights, self.weight_factors)),
            )

    def validate(self) -> None:
        if self.algorithm not in _VALID_ALGORITHMS:
            raise ConfigurationError(
                f"algorithm must be one of {sorted(_VALID_ALGORITHMS)}, "
                f"got '{self.algorithm}'",
                field_name="algorithm",
            )
        if not (0.0 <= self.threshold <= 1.0):
            raise ConfigurationError(
                f"threshold must be in [0, 1], got {self.threshold}",
                field_name="threshold",
            )
        self.weight_factors.validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimilarityDetectionSettings:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Discovery Configuration                                               #
# ===================================================================== #

_VALID_STRATEGIES = frozenset(s.value for s in FeedbackStrategy)


def _thresholds_from(data: Any) -> QualityThresholds:
    if isinstance(data, QualityThresholds):
        return data
    data = dict(data)
    factors = data.get("adjustment_factors")
    if isinstance(factors, dict):
        data["adjustment_factors"] = ThresholdAdjustmentFactors(
            **_filtered(ThresholdAdjustmentFactors, factors)
        )
    return QualityThresholds(**_filtered(QualityThresholds, data))


@dataclass(frozen=True)
class DiscoveryConfig:
    """Parameters governing a problem discovery run.

    Attributes
    ----------
    max_iterations:
        Hard upper limit on refinement iterations.
    max_problems_to_track:
        Capacity of the active set, enforced at the end of every iteration.
    initial_quality_threshold:
        Starting global pass threshold on the overall score.
    adaptive_quality_thresholds:
        Enables adaptive thresholds, threshold learning and the strategy
        bandit.
    similarity_detection:
        Settings for the similarity detector.
    enable_branching:
        Whether unexplored branches are materialised into child problems.
    max_branches_per_problem:
        Branches explored per problem per iteration.
    max_branches_per_iteration:
        Branches explored across the whole set per iteration.
    feedback_incorporation_strategy:
        Strategy name handed to the feedback processor.
    domain_thresholds:
        Per-domain pass thresholds; the first matching domain wins.
    adjustment_factors:
        Default adaptive-threshold factors for domains without their own.
    evaluation_top_n / evaluation_batch_size / strategy_top_n:
        How many problems (by quality) the evaluator and strategist see, and
        in what batch size the evaluator sees them.
    oracle_timeout:
        Seconds before an oracle call is abandoned in favour of its fallback.
    max_concurrency:
        Worker threads used for per-problem fan-out inside a stage.
    """

    max_iterations: int = 3
    max_problems_to_track: int = 20
    initial_quality_threshold: float = 6.0
    adaptive_quality_thresholds: bool = True
    similarity_detection: SimilarityDetectionSettings = field(
        default_factory=SimilarityDetectionSettings
    )
    enable_branching: bool = True
    max_branches_per_problem: int = 3
    max_branches_per_iteration: int = 5
    feedback_incorporation_strategy: str = "confidence_weighted"
    domain_thresholds: tuple[QualityThresholds, ...] = ()
    adjustment_factors: ThresholdAdjustmentFactors = field(
        default_factory=ThresholdAdjustmentFactors
    )
    evaluation_top_n: int = 10
    evaluation_batch_size: int = 3
    strategy_top_n: int = 10
    oracle_timeout: float = 60.0
    max_concurrency: int = 4

    def __post_init__(self) -> None:
        # Coerce nested sections coming from JSON / plain dicts.
        if isinstance(self.similarity_detection, dict):
            object.__setattr__(
                self,
                "similarity_detection",
                SimilarityDetectionSettings(
                    **_filtered(SimilarityDetectionSettings, self.similarity_detection)
                ),
            )
        if isinstance(self.adjustment_factors, dict):
            object.__setattr__(
                self,
                "adjustment_factors",
                ThresholdAdjustmentFactors(
                    **_filtered(ThresholdAdjustmentFactors, self.adjustment_factors)
                ),
            )
        if self.domain_thresholds is None:
            object.__setattr__(self, "domain_thresholds", ())
        else:
            object.__setattr__(
                self,
                "domain_thresholds",
                tuple(_thresholds_from(t) for t in self.domain_thresholds),
            )
        if isinstance(self.feedback_incorporation_strategy, FeedbackStrategy):
            object.__setattr__(
                self,
                "feedback_incorporation_strategy",
                self.feedback_incorporation_strategy.value,
            )

    @property
    def feedback_strategy(self) -> FeedbackStrategy:
        return FeedbackStrategy(self.feedback_incorporation_strategy)

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if any field is out of valid range."""
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be >= 1, got {self.max_iterations}",
                field_name="max_iterations",
            )
        if self.max_problems_to_track < 1:
            raise ConfigurationError(
                f"max_problems_to_track must be >= 1, got {self.max_problems_to_track}",
                field_name="max_problems_to_track",
            )
        if not (1.0 <= self.initial_quality_threshold <= 10.0):
            raise ConfigurationError(
                "initial_quality_threshold must be in [1, 10], "
                f"got {self.initial_quality_threshold}",
                field_name="initial_quality_threshold",
            )
        if self.max_branches_per_problem < 0:
            raise ConfigurationError(
                f"max_branches_per_problem must be >= 0, got {self.max_branches_per_problem}",
                field_name="max_branches_per_problem",
            )
        if self.max_branches_per_iteration < 0:
            raise ConfigurationError(
                "max_branches_per_iteration must be >= 0, "
                f"got {self.max_branches_per_iteration}",
                field_name="max_branches_per_iteration",
            )
        if self.feedback_incorporation_strategy not in _VALID_STRATEGIES:
            raise ConfigurationError(
                f"feedback_incorporation_strategy must be one of {sorted(_VALID_STRATEGIES)}, "
                f"got '{self.feedback_incorporation_strategy}'",
                field_name="feedback_incorporation_strategy",
            )
        for name in ("evaluation_top_n", "evaluation_batch_size", "strategy_top_n"):
            if getattr(self, name) < 1:
                raise ConfigurationError(
                    f"{name} must be >= 1, got {getattr(self, name)}", field_name=name
                )
        if self.oracle_timeout <= 0.0:
            raise ConfigurationError(
                f"oracle_timeout must be > 0, got {self.oracle_timeout}",
                field_name="oracle_timeout",
            )
        if self.max_concurrency < 1:
            raise ConfigurationError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}",
                field_name="max_concurrency",
            )
        seen: set[str] = set()
        for thresholds in self.domain_thresholds:
            if not thresholds.domain:
                raise ConfigurationError(
                    "domain_thresholds entries must name a domain",
                    field_name="domain_thresholds",
                )
            if thresholds.domain in seen:
                raise ConfigurationError(
                    f"duplicate domain threshold for '{thresholds.domain}'",
                    field_name="domain_thresholds",
                )
            seen.add(thresholds.domain)
        self.similarity_detection.validate()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["domain_thresholds"] = [asdict(t) for t in self.domain_thresholds]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveryConfig:
        cfg = cls(**_filtered(cls, data))
        cfg.validate()
        return cfg


# ===================================================================== #
#  Unified config loader                                                 #
# ===================================================================== #

_CONFIG_MAP: dict[str, type] = {
    "discovery": DiscoveryConfig,
    "similarity": SimilarityDetectionSettings,
}


def load_config_from_json(json_str: str) -> dict[str, Any]:
    """Parse a JSON string into a dict of typed config objects.

    The JSON is expected to be an object whose top-level keys correspond to
    config section names (``discovery``, ``similarity``).  Unknown sections
    are preserved as raw dicts.

    Raises
    ------
    ConfigurationError
        If the JSON is malformed, not an object, or a known section fails
        validation.
    """
    try:
        raw = json.loads(json_str)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid configuration JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError("Top-level JSON must be an object")
    result: dict[str, Any] = {}
    for section, data in raw.items():
        cls = _CONFIG_MAP.get(section)
        if cls is not None and isinstance(data, dict):
            try:
                result[section] = cls.from_dict(data)
            except ConfigurationError:
                raise
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"Invalid '{section}' section: {exc}", field_name=section
                ) from exc
        else:
            result[section] = data
    return result
