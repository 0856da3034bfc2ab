"""Normalizes Codex thread/turn/item events into canonical messages.

Codex reports whole items (`item.started/updated/completed`) whose text
grows between updates. Text-like items become a streamed content block;
tool-like items are framed as a degenerate start/delta/stop triplet
followed by an assistant tool_use message and a tool_result.
"""

from dataclasses import dataclass
from typing import Any

import orjson
from structlog import get_logger

from . import messages as m


logger = get_logger(__name__)

MAX_TOOL_OUTPUT_CHARS = 8000
DEFAULT_MODEL_LABEL = "codex-default"

_ITEM_EVENTS = frozenset({"item.started", "item.updated", "item.completed"})


@dataclass
class _OpenBlock:
    item_id: str
    index: int


class CodexEventNormalizer:
    """Stateful translator for one Codex session.

    Guarantees, for the messages it returns:
    - a block is stopped before the next block starts
    - a tool_result is only emitted for a tool_use id already emitted
    """

    def __init__(self, model: str | None = None, session_id: str | None = None):
        self.model = model
        self.session_id = session_id
        self.last_agent_message = ""
        self._next_index = 0
        self._open: _OpenBlock | None = None
        self._emitted_text: dict[str, str] = {}
        self._announced_tools: set[str] = set()
        self._init_sent = False

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def normalize(self, event: dict[str, Any]) -> list[m.CanonicalMessage]:
        """Translate one Codex event into zero or more canonical messages."""
        event_type = event.get("type")
        if event_type == "thread.started":
            return self._thread_started(event)
        if event_type == "turn.started":
            self.last_agent_message = ""
            return []
        if event_type == "turn.completed":
            return self._turn_completed(event)
        if event_type == "turn.failed":
            error = event.get("error") or {}
            return self._turn_failed(error.get("message") or "Turn failed")
        if event_type == "error":
            return self._stream_error(str(event.get("message") or ""))
        if event_type in _ITEM_EVENTS:
            item = event.get("item")
            if isinstance(item, dict):
                return self._item(event_type, item)
            return []
        logger.debug("codex_event_ignored", event_type=event_type)
        return []

    def finish(self) -> list[m.CanonicalMessage]:
        """Close any block left open when the stream ends early."""
        return self._close_open()

    def fail(self, message: str) -> list[m.CanonicalMessage]:
        """Terminal error result for a stream that broke mid-turn."""
        return self._turn_failed(message)

    def interrupted(self) -> list[m.CanonicalMessage]:
        """Result for a turn the caller stopped before it completed."""
        out = self._close_open()
        out.append(m.result_message(self.last_agent_message, self.session_id, is_error=True))
        return out

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    def _thread_started(self, event: dict[str, Any]) -> list[m.CanonicalMessage]:
        self.session_id = event.get("thread_id") or self.session_id
        if self._init_sent:
            return []
        self._init_sent = True
        return [m.system_init(self.session_id, self.model or DEFAULT_MODEL_LABEL)]

    def _turn_completed(self, event: dict[str, Any]) -> list[m.CanonicalMessage]:
        out = self._close_open()
        usage = event.get("usage") or {}
        out.append(
            m.result_message(
                self.last_agent_message,
                self.session_id,
                {
                    "input_tokens": int(usage.get("input_tokens") or 0),
                    "cached_input_tokens": int(usage.get("cached_input_tokens") or 0),
                    "output_tokens": int(usage.get("output_tokens") or 0),
                },
                total_cost_usd=0.0,
            )
        )
        return out

    def _turn_failed(self, message: str) -> list[m.CanonicalMessage]:
        logger.warning("codex_turn_failed", error=message, session_id=self.session_id)
        out = self._close_open()
        out.append(
            m.result_message(
                self.last_agent_message or f"Codex error: {message}",
                self.session_id,
                is_error=True,
            )
        )
        return out

    def _stream_error(self, message: str) -> list[m.CanonicalMessage]:
        if "Reconnecting" in message:
            logger.info("codex_reconnecting", message=message)
            return []
        logger.error("codex_stream_error", error=message)
        return [m.error_message(message or "Codex error", self.session_id)]

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _item(self, event_type: str, item: dict[str, Any]) -> list[m.CanonicalMessage]:
        kind = item.get("type")
        completed = event_type == "item.completed"
        item_id = str(item.get("id", ""))

        if kind == "agent_message":
            return self._text_item(item_id, item.get("text") or "", completed, "text")
        if kind == "reasoning":
            return self._text_item(item_id, item.get("text") or "", completed, "thinking")
        if kind == "command_execution":
            return self._command(item_id, item, completed)
        if kind == "file_change":
            return self._file_change(item_id, item) if completed else []
        if kind == "mcp_tool_call":
            return self._mcp_tool_call(item_id, item, completed)
        if kind == "web_search":
            return self._web_search(item_id, item, completed)
        if kind == "todo_list":
            return self._todo_list(item_id, item) if completed else []
        if kind == "error":
            message = str(item.get("message") or "Codex item error")
            logger.error("codex_item_error", error=message)
            return [*self._close_open(), m.error_message(message, self.session_id)]
        logger.debug("codex_item_ignored", kind=kind)
        return []

    def _text_item(
        self, item_id: str, text: str, completed: bool, block_kind: str
    ) -> list[m.CanonicalMessage]:
        out: list[m.CanonicalMessage] = []
        previous = self._emitted_text.get(item_id, "")
        rewritten = bool(previous) and not text.startswith(previous)
        suffix = text if rewritten else text[len(previous):]
        is_open = self._open is not None and self._open.item_id == item_id

        # Deltas only append, so rewritten text goes into a fresh block
        if rewritten and is_open:
            out.extend(self._close_open())
            is_open = False

        if not text and completed and not is_open:
            self._emitted_text.pop(item_id, None)
            return out

        if not is_open and (suffix or not completed):
            out.extend(self._close_open())
            block = m.text_block() if block_kind == "text" else m.thinking_block()
            out.append(self._start(item_id, block))
            is_open = True

        if suffix and self._open is not None:
            if block_kind == "text":
                delta = {"type": "text_delta", "text": suffix}
            else:
                delta = {"type": "thinking_delta", "thinking": suffix}
            out.append(m.content_block_delta(self._open.index, delta, self.session_id))
            self._emitted_text[item_id] = text

        if completed:
            if is_open:
                out.extend(self._close_open())
            self._emitted_text.pop(item_id, None)
            if block_kind == "text":
                self.last_agent_message = text
                content = [m.text_block(text)]
            else:
                content = [m.thinking_block(text)]
            out.append(m.assistant_message(content, self.session_id, self.model))
        return out

    def _announce_tool(
        self, tool_id: str, name: str, tool_input: dict[str, Any]
    ) -> list[m.CanonicalMessage]:
        if tool_id in self._announced_tools:
            return []
        out = self._close_open()
        index = self._take_index()
        out.append(
            m.content_block_start(
                index, {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
                self.session_id,
            )
        )
        out.append(
            m.content_block_delta(
                index,
                {
                    "type": "input_json_delta",
                    "partial_json": orjson.dumps(tool_input).decode(),
                },
                self.session_id,
            )
        )
        out.append(m.content_block_stop(index, self.session_id))
        out.append(
            m.assistant_message(
                [m.tool_use_block(tool_id, name, tool_input)], self.session_id, self.model
            )
        )
        self._announced_tools.add(tool_id)
        return out

    def _tool_result(
        self, tool_id: str, text: str, is_error: bool = False
    ) -> list[m.CanonicalMessage]:
        if tool_id not in self._announced_tools:
            logger.warning("codex_tool_result_without_tool_use", tool_id=tool_id)
            return []
        return [m.tool_result(tool_id, text, is_error, self.session_id)]

    def _command(
        self, item_id: str, item: dict[str, Any], completed: bool
    ) -> list[m.CanonicalMessage]:
        tool_id = f"codex-{item_id}"
        out = self._announce_tool(tool_id, "Bash", {"command": item.get("command", "")})
        if completed:
            output = item.get("aggregated_output") or "(no output)"
            if len(output) > MAX_TOOL_OUTPUT_CHARS:
                output = output[:MAX_TOOL_OUTPUT_CHARS] + "\n... (truncated)"
            exit_code = item.get("exit_code")
            is_error = item.get("status") == "failed" or (
                isinstance(exit_code, int) and exit_code != 0
            )
            out.extend(self._tool_result(tool_id, output, is_error))
        return out

    def _file_change(self, item_id: str, item: dict[str, Any]) -> list[m.CanonicalMessage]:
        changes = [c for c in item.get("changes") or [] if isinstance(c, dict)]
        description = (
            "\n".join(f"{c.get('kind')}: {c.get('path')}" for c in changes)
            or "Files modified"
        )
        is_create = len(changes) == 1 and changes[0].get("kind") == "add"
        tool_id = f"codex-{item_id}"
        tool_input = {
            "file_path": changes[0].get("path", "") if changes else "",
            "description": description,
        }
        out = self._announce_tool(tool_id, "Write" if is_create else "Edit", tool_input)
        out.extend(
            self._tool_result(tool_id, description, item.get("status") == "failed")
        )
        return out

    def _mcp_tool_call(
        self, item_id: str, item: dict[str, Any], completed: bool
    ) -> list[m.CanonicalMessage]:
        tool_id = f"codex-{item_id}"
        server = item.get("server")
        tool = item.get("tool") or "unknown"
        name = f"mcp__{server}__{tool}" if server else tool
        arguments = item.get("arguments")
        out = self._announce_tool(
            tool_id, name, arguments if isinstance(arguments, dict) else {}
        )
        if completed:
            error = item.get("error") or {}
            result = item.get("result") or {}
            text = error.get("message") or "\n".join(
                block.get("text", "")
                for block in result.get("content") or []
                if isinstance(block, dict)
            )
            out.extend(
                self._tool_result(
                    tool_id, text or "(no result)", item.get("status") == "failed"
                )
            )
        return out

    def _web_search(
        self, item_id: str, item: dict[str, Any], completed: bool
    ) -> list[m.CanonicalMessage]:
        tool_id = f"codex-{item_id}"
        query = item.get("query", "")
        out = self._announce_tool(tool_id, "WebSearch", {"query": query})
        if completed:
            out.extend(self._tool_result(tool_id, f"Searched: {query}"))
        return out

    def _todo_list(self, item_id: str, item: dict[str, Any]) -> list[m.CanonicalMessage]:
        tool_id = f"codex-{item_id}"
        todos = [
            {
                "content": entry.get("text", ""),
                "status": "completed" if entry.get("completed") else "in_progress",
                "activeForm": entry.get("text", ""),
            }
            for entry in item.get("items") or []
            if isinstance(entry, dict)
        ]
        out = self._announce_tool(tool_id, "TodoWrite", {"todos": todos})
        out.extend(self._tool_result(tool_id, "Plan updated"))
        return out

    # ------------------------------------------------------------------
    # Block bookkeeping
    # ------------------------------------------------------------------

    def _take_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def _start(self, item_id: str, block: dict[str, Any]) -> m.CanonicalMessage:
        index = self._take_index()
        self._open = _OpenBlock(item_id=item_id, index=index)
        return m.content_block_start(index, block, self.session_id)

    def _close_open(self) -> list[m.CanonicalMessage]:
        if self._open is None:
            return []
        index = self._open.index
        self._open = None
        return [m.content_block_stop(index, self.session_id)]
