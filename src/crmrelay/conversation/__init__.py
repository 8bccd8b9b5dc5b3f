"""Conversation package for the CRM relay.

This package holds the per-turn pipeline (history-driven streaming
completion, tool-call assembly, follow-up narration) behind a narrow
completion-client interface, so providers and test doubles are swappable.
"""

from .completions import (
    CompletionClient,
    CompletionDelta,
    OpenAICompletionClient,
    ToolCallFragment,
)
from .engine import ConversationEngine, ToolCallAccumulator
from .follow_up import FollowUpSynthesizer
from .tools import get_tool_definitions, load_tool_catalog

__all__ = [
    "CompletionClient",
    "CompletionDelta",
    "ConversationEngine",
    "FollowUpSynthesizer",
    "OpenAICompletionClient",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "get_tool_definitions",
    "load_tool_catalog",
]
