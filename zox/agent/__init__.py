"""Agent core -- parsing, memory and the orchestration loop.

Public API (import the loop itself from zox.agent.loop):
    StreamingParser   - Incremental tool/text parser
    ConversationMemory - Token-budgeted turn sequence
    Turn, Role        - Memory units
    ToolCall          - Parsed tool invocation
"""

from zox.agent.memory import ConversationMemory, Role, Turn
from zox.agent.parser import (
    ParsedResponse,
    ParsedText,
    ParsedTextThenTools,
    ParsedToolCalls,
    StreamingParser,
    TextChunk,
    ToolCall,
    ToolCallComplete,
)

__all__ = [
    "ConversationMemory",
    "ParsedResponse",
    "ParsedText",
    "ParsedTextThenTools",
    "ParsedToolCalls",
    "Role",
    "StreamingParser",
    "TextChunk",
    "ToolCall",
    "ToolCallComplete",
    "Turn",
]
