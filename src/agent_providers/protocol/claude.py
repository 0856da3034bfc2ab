"""Converts Claude Agent SDK messages into canonical messages.

The SDK already speaks the canonical vocabulary (system/init, partial
stream events, assistant messages, results); this adapter flattens its
dataclasses into dicts and lifts tool results out of user messages.
"""

from dataclasses import asdict, is_dataclass
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import StreamEvent
from structlog import get_logger

from . import messages as m


logger = get_logger(__name__)


def _block_to_dict(block: Any) -> dict[str, Any] | None:
    if isinstance(block, TextBlock):
        return m.text_block(block.text)
    if isinstance(block, ThinkingBlock):
        return {
            "type": "thinking",
            "thinking": block.thinking,
            "signature": block.signature,
        }
    if isinstance(block, ToolUseBlock):
        return m.tool_use_block(block.id, block.name, block.input)
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    if is_dataclass(block) and not isinstance(block, type):
        return asdict(block)
    return None


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for entry in content:
        if isinstance(entry, dict) and entry.get("type") == "text":
            parts.append(str(entry.get("text", "")))
    return "\n".join(parts)


class ClaudeMessageAdapter:
    """Stateful only in that it remembers the session id for later messages."""

    def __init__(self) -> None:
        self.session_id: str | None = None

    def to_canonical(self, message: Any) -> list[m.CanonicalMessage]:
        if isinstance(message, StreamEvent):
            self.session_id = message.session_id or self.session_id
            canonical = m.stream_event(message.event, self.session_id)
            if message.parent_tool_use_id:
                canonical["parent_tool_use_id"] = message.parent_tool_use_id
            return [canonical]

        if isinstance(message, SystemMessage):
            data = dict(message.data or {})
            if message.subtype == "init":
                self.session_id = data.get("session_id") or self.session_id
                return [
                    m.system_init(
                        self.session_id,
                        data.get("model"),
                        **{
                            k: v
                            for k, v in data.items()
                            if k not in ("type", "subtype", "session_id", "model")
                        },
                    )
                ]
            return [{"type": "system", "subtype": message.subtype, **data}]

        if isinstance(message, AssistantMessage):
            content = [
                block
                for block in (_block_to_dict(b) for b in message.content)
                if block is not None
            ]
            canonical = m.assistant_message(content, self.session_id, message.model)
            if message.parent_tool_use_id:
                canonical["parent_tool_use_id"] = message.parent_tool_use_id
            return [canonical]

        if isinstance(message, UserMessage):
            if isinstance(message.content, str):
                return []
            return [
                m.tool_result(
                    block.tool_use_id,
                    _tool_result_text(block.content),
                    bool(block.is_error),
                    self.session_id,
                )
                for block in message.content
                if isinstance(block, ToolResultBlock)
            ]

        if isinstance(message, ResultMessage):
            self.session_id = message.session_id or self.session_id
            return [
                m.result_message(
                    message.result or "",
                    self.session_id,
                    message.usage,
                    is_error=message.is_error,
                    total_cost_usd=message.total_cost_usd,
                    duration_ms=message.duration_ms,
                    num_turns=message.num_turns,
                )
            ]

        logger.debug("claude_message_ignored", message_type=type(message).__name__)
        return []
