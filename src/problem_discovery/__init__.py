"""Problem Discovery.

Iterative refinement engine that turns a keyword into a ranked set of
validated user problems, using LangChain chat models for semantic judgement
with a deterministic fallback for every call.
"""

__version__ = "0.1.0"

from problem_discovery.infrastructure.config import DiscoveryConfig
from problem_discovery.services.pipeline import (
    DiscoveryResult,
    ProblemDiscoveryPipeline,
)

__all__ = [
    "DiscoveryConfig",
    "DiscoveryResult",
    "ProblemDiscoveryPipeline",
]
