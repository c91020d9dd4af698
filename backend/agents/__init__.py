"""Agent roles, tool protocol and the turn orchestration graph.

This module exports the key components needed for a FlowCoder turn:
- Tool-call wire protocol (parse/format)
- Tool definitions and the execution router
- Agent registry binding roles to engines and prompt templates
- Batch approval, the human presentation port, and verification
- The TurnOrchestrator LangGraph
"""

from agents.approval import (
    ApprovalMode,
    CommandQueue,
    parse_approval_answer,
    request_batch_approval,
)
from agents.human import EventBusHumanInterface, HumanInterface, NoPendingRequestError
from agents.protocol import (
    Message,
    ToolCall,
    ToolCallParseError,
    format_tool_result,
    parse_tool_calls,
    strip_tool_result,
)
from agents.registry import (
    AgentDescriptor,
    AgentRegistry,
    AgentRole,
    DelegateRole,
    create_agent_registry,
    parse_delegate_tag,
)
from agents.tools import (
    PAUSE_SENTINEL,
    TOOL_DEFINITIONS,
    ToolExecutor,
    ToolResult,
    get_tool_definitions,
)
from agents.turn_graph import TurnInterrupted, TurnOrchestrator, TurnResult
from agents.verification import (
    VerificationLoop,
    VerificationOutcome,
    VerificationReport,
    Verifier,
)

__all__ = [
    # Protocol
    "Message",
    "ToolCall",
    "ToolCallParseError",
    "format_tool_result",
    "parse_tool_calls",
    "strip_tool_result",
    # Tools
    "PAUSE_SENTINEL",
    "TOOL_DEFINITIONS",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions",
    # Registry
    "AgentDescriptor",
    "AgentRegistry",
    "AgentRole",
    "DelegateRole",
    "create_agent_registry",
    "parse_delegate_tag",
    # Approval & human port
    "ApprovalMode",
    "CommandQueue",
    "EventBusHumanInterface",
    "HumanInterface",
    "NoPendingRequestError",
    "parse_approval_answer",
    "request_batch_approval",
    # Verification
    "VerificationLoop",
    "VerificationOutcome",
    "VerificationReport",
    "Verifier",
    # Turn graph
    "TurnInterrupted",
    "TurnOrchestrator",
    "TurnResult",
]
