"""Public testing utilities for the problem discovery engine.

Provides mock chat models and scripted collaborators for writing
self-contained examples and tests without requiring API keys.
"""

from problem_discovery.testing.agents import (
    FailingAgent,
    ScriptedEvaluator,
    ScriptedExplorer,
    ScriptedSimulator,
    ScriptedStrategist,
    make_feedback,
)
from problem_discovery.testing.mock_llm import (
    FailingChatModel,
    MockStructuredChatModel,
    SchemaRoutedChatModel,
)

__all__ = [
    "FailingAgent",
    "FailingChatModel",
    "MockStructuredChatModel",
    "SchemaRoutedChatModel",
    "ScriptedEvaluator",
    "ScriptedExplorer",
    "ScriptedSimulator",
    "ScriptedStrategist",
    "make_feedback",
]
