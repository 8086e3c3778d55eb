"""Response orchestration engine.

Public API:
    ResponseEngine      - one user turn: generate, parse, tools, dispatch
    ModelGateway        - resilient upstream call with credential rotation
    GeminiProvider      - Gemini REST chat sessions over httpx
    CredentialPool      - round-robin API keys with quarantine
    ToolInvocationLoop  - depth-bounded tool execution and re-prompting
    ActionDispatcher    - applies an ActionSet to a MessagingChannel
    ToolRegistry        - tool catalogue with a never-raising execute()
    MessageStore        - recent sent/received messages per thread
    parse               - raw model text -> ActionSet

Schemas:
    ActionSet, Reaction, Sticker, TextMessage, Undo, CardShare, ToolCall,
    ToolResult, MediaPart, Emotion
"""

from zbot.engine.channel import MessagingChannel
from zbot.engine.credentials import CredentialPool
from zbot.engine.dispatcher import ActionDispatcher
from zbot.engine.gateway import GatewayResult, ModelGateway
from zbot.engine.message_store import MessageHandle, MessageStore
from zbot.engine.orchestrator import ResponseEngine
from zbot.engine.parser import parse
from zbot.engine.provider import GeminiProvider, HistoryTurn
from zbot.engine.schemas import (
    ActionSet,
    CardShare,
    Emotion,
    MediaKind,
    MediaPart,
    Reaction,
    Sticker,
    TextMessage,
    ToolCall,
    ToolResult,
    Undo,
    default_action_set,
)
from zbot.engine.tool_loop import ToolInvocationLoop
from zbot.engine.tools import FunctionTool, Tool, ToolContext, ToolParam, ToolRegistry

__all__ = [
    "ActionDispatcher",
    "CredentialPool",
    "GatewayResult",
    "GeminiProvider",
    "HistoryTurn",
    "MessageHandle",
    "MessageStore",
    "MessagingChannel",
    "ModelGateway",
    "ResponseEngine",
    "ToolInvocationLoop",
    "parse",
    "ActionSet",
    "CardShare",
    "Emotion",
    "MediaKind",
    "MediaPart",
    "Reaction",
    "Sticker",
    "TextMessage",
    "ToolCall",
    "ToolResult",
    "Undo",
    "default_action_set",
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolParam",
    "ToolRegistry",
]
