"""Canonical message protocol shared by every backend.

Messages are plain dicts so they can be forwarded to any consumer
(UI, persistence, notifications) without a schema dependency. The
builders below are the only place their shapes are defined.
"""

from typing import Any

from pydantic import BaseModel, Field


CanonicalMessage = dict[str, Any]

RESULT_SUCCESS = "success"
RESULT_ERROR = "error_during_execution"
RESULT_TOOL = "tool_result"


class Usage(BaseModel):
    """Token usage and cost for one run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    total_cost_usd: float | None = None


class QueryResult(BaseModel):
    """Final summary of a query, returned once the stream is drained."""

    result_text: str = ""
    session_id: str | None = None
    usage: Usage = Field(default_factory=Usage)
    is_error: bool = False


# ============================================================================
# Builders
# ============================================================================


def system_init(session_id: str | None, model: str | None, **extra: Any) -> CanonicalMessage:
    return {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "model": model,
        **extra,
    }


def stream_event(event: dict[str, Any], session_id: str | None = None) -> CanonicalMessage:
    message: CanonicalMessage = {"type": "stream_event", "event": event}
    if session_id is not None:
        message["session_id"] = session_id
    return message


def content_block_start(
    index: int, block: dict[str, Any], session_id: str | None = None
) -> CanonicalMessage:
    return stream_event(
        {"type": "content_block_start", "index": index, "content_block": block},
        session_id,
    )


def content_block_delta(
    index: int, delta: dict[str, Any], session_id: str | None = None
) -> CanonicalMessage:
    return stream_event(
        {"type": "content_block_delta", "index": index, "delta": delta}, session_id
    )


def content_block_stop(index: int, session_id: str | None = None) -> CanonicalMessage:
    return stream_event({"type": "content_block_stop", "index": index}, session_id)


def text_block(text: str = "") -> dict[str, Any]:
    return {"type": "text", "text": text}


def thinking_block(thinking: str = "") -> dict[str, Any]:
    return {"type": "thinking", "thinking": thinking}


def tool_use_block(tool_id: str, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def assistant_message(
    content: list[dict[str, Any]],
    session_id: str | None = None,
    model: str | None = None,
) -> CanonicalMessage:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if model:
        message["model"] = model
    return {"type": "assistant", "message": message, "session_id": session_id}


def tool_result(
    tool_use_id: str, text: str, is_error: bool = False, session_id: str | None = None
) -> CanonicalMessage:
    return {
        "type": "result",
        "subtype": RESULT_TOOL,
        "tool_use_id": tool_use_id,
        "content": [{"type": "text", "text": text}],
        "is_error": is_error,
        "session_id": session_id,
    }


def result_message(
    text: str,
    session_id: str | None,
    usage: dict[str, Any] | None = None,
    *,
    is_error: bool = False,
    total_cost_usd: float | None = None,
    **extra: Any,
) -> CanonicalMessage:
    return {
        "type": "result",
        "subtype": RESULT_ERROR if is_error else RESULT_SUCCESS,
        "result": text,
        "session_id": session_id,
        "usage": usage or {},
        "total_cost_usd": total_cost_usd,
        "is_error": is_error,
        **extra,
    }


def error_message(text: str, session_id: str | None = None) -> CanonicalMessage:
    return {"type": "error", "error": text, "session_id": session_id}


def is_terminal_result(message: CanonicalMessage) -> bool:
    """True for a per-turn result, as opposed to a tool result."""
    return message.get("type") == "result" and message.get("subtype") != RESULT_TOOL


# ============================================================================
# Bookkeeping
# ============================================================================


class ResultTracker:
    """Accumulates what the final QueryResult needs from a canonical stream."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        self.last_text = ""
        self.result_text: str | None = None
        self.usage = Usage()
        self.is_error = False

    def observe(self, message: CanonicalMessage) -> None:
        session_id = message.get("session_id")
        if session_id:
            self.session_id = session_id

        kind = message.get("type")
        if kind == "assistant":
            texts = [
                block.get("text", "")
                for block in message.get("message", {}).get("content", [])
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            if texts and any(texts):
                self.last_text = "".join(texts)
        elif is_terminal_result(message):
            result = message.get("result")
            if isinstance(result, str) and result:
                self.result_text = result
            self.is_error = bool(message.get("is_error"))
            self._add_usage(message.get("usage") or {}, message.get("total_cost_usd"))

    def _add_usage(self, usage: dict[str, Any], cost: float | None) -> None:
        self.usage = Usage(
            input_tokens=self.usage.input_tokens + int(usage.get("input_tokens") or 0),
            output_tokens=self.usage.output_tokens
            + int(usage.get("output_tokens") or 0),
            cached_input_tokens=self.usage.cached_input_tokens
            + int(
                usage.get("cached_input_tokens")
                or usage.get("cache_read_input_tokens")
                or 0
            ),
            total_cost_usd=cost if cost is not None else self.usage.total_cost_usd,
        )

    def result(self) -> QueryResult:
        return QueryResult(
            result_text=self.result_text if self.result_text is not None else self.last_text,
            session_id=self.session_id,
            usage=self.usage,
            is_error=self.is_error,
        )
