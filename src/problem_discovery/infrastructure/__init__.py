"""Infrastructure layer for the problem discovery engine.

Re-exports the public API surface for convenience::

    from problem_discovery.infrastructure import (
        EventBus, EventStore, SemanticOracle,
        DiscoveryConfig, SimilarityDetectionSettings,
    )
"""

from problem_discovery.infrastructure.config import (
    DiscoveryConfig,
    SimilarityDetectionSettings,
    SimilarityWeights,
    load_config_from_json,
)
from problem_discovery.infrastructure.event_bus import EventBus, EventStore
from problem_discovery.infrastructure.oracle import (
    Assessment,
    OracleResult,
    SemanticOracle,
)
from problem_discovery.infrastructure.serialization import (
    deserialize,
    from_json,
    problem_from_dict,
    problem_to_dict,
    result_to_dict,
    serialize,
    to_json,
)

__all__ = [
    # Event bus
    "EventBus",
    "EventStore",
    # Oracle
    "Assessment",
    "OracleResult",
    "SemanticOracle",
    # Configuration
    "DiscoveryConfig",
    "SimilarityDetectionSettings",
    "SimilarityWeights",
    "load_config_from_json",
    # Serialization
    "serialize",
    "deserialize",
    "to_json",
    "from_json",
    "problem_to_dict",
    "problem_from_dict",
    "result_to_dict",
]
