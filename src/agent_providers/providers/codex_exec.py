"""Runs one Codex turn as a `codex exec --experimental-json` subprocess."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson
from structlog import get_logger

from agent_providers.exceptions import BackendProtocolError, BackendSpawnError


logger = get_logger(__name__)

# Codex has no "max"; its top level is "xhigh"
EFFORT_MAP: dict[str, str] = {
    "minimal": "minimal",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "max": "xhigh",
}

TERMINATE_GRACE_SECONDS = 3.0
STDERR_TAIL_LINES = 20
# JSONL lines can carry whole command outputs
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class CodexExecOptions:
    """Thread options for a single exec invocation."""

    binary: str = "codex"
    model: str | None = None
    sandbox_mode: str = "danger-full-access"
    approval_policy: str = "never"
    network_access: bool = True
    web_search: bool = False
    reasoning_effort: str | None = None
    cwd: str | None = None
    images: list[Path] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def build_exec_args(options: CodexExecOptions, thread_id: str | None = None) -> list[str]:
    """Command line for one turn; resumes `thread_id` when given."""
    args = [options.binary, "exec", "--experimental-json"]
    if options.model:
        args += ["--model", options.model]
    args += ["--sandbox", options.sandbox_mode]
    if options.cwd:
        args += ["--cd", options.cwd]
    args.append("--skip-git-repo-check")
    if options.reasoning_effort:
        effort = EFFORT_MAP.get(options.reasoning_effort, options.reasoning_effort)
        args += ["--config", f'model_reasoning_effort="{effort}"']
    network = "true" if options.network_access else "false"
    args += ["--config", f"sandbox_workspace_write.network_access={network}"]
    if options.web_search:
        args += ["--config", "features.web_search_request=true"]
    args += ["--config", f'approval_policy="{options.approval_policy}"']
    for image in options.images:
        args += ["--image", str(image)]
    if thread_id:
        args += ["resume", thread_id]
    return args


class CodexExecTurn:
    """A single running `codex exec` process.

    Iterate `events()` to receive parsed JSONL events. `terminate()` stops
    the process early; the event stream then simply ends.
    """

    def __init__(self, options: CodexExecOptions, thread_id: str | None = None):
        self.options = options
        self.thread_id = thread_id
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_tail: list[str] = []
        self._stderr_task: asyncio.Task[None] | None = None
        self.terminated = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, prompt: str) -> None:
        """Spawn the process and write the prompt to its stdin.

        Raises:
            BackendSpawnError: If the binary cannot be executed
        """
        args = build_exec_args(self.options, self.thread_id)
        logger.info(
            "codex_exec_starting",
            model=self.options.model,
            resume=self.thread_id is not None,
            cwd=self.options.cwd,
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.options.env or None,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise BackendSpawnError(
                f"Could not start codex ({self.options.binary}): {e}. "
                "Install with: npm i -g @openai/codex"
            ) from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        assert self._process.stdin is not None
        try:
            self._process.stdin.write(prompt.encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("codex_stdin_write_failed", error=str(e))
        finally:
            self._process.stdin.close()

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for raw in self._process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.debug("codex_stderr", line=line)
            self._stderr_tail.append(line)
            del self._stderr_tail[:-STDERR_TAIL_LINES]

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Parsed JSONL events from stdout, in order.

        Raises:
            BackendProtocolError: On a line that is not a JSON object, or
                when the process exits non-zero without being terminated
        """
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("start() must be called before events()")
        async for raw in self._process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = orjson.loads(line)
            except orjson.JSONDecodeError as e:
                raise BackendProtocolError(
                    f"Malformed event from codex: {e}", line=line
                ) from e
            if not isinstance(event, dict):
                raise BackendProtocolError("Codex event is not an object", line=line)
            if event.get("type") == "thread.started" and event.get("thread_id"):
                self.thread_id = event["thread_id"]
            yield event

        returncode = await self._process.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        if returncode != 0 and not self.terminated:
            detail = self._stderr_tail[-1] if self._stderr_tail else "no output"
            raise BackendProtocolError(f"codex exited with code {returncode}: {detail}")

    async def terminate(self) -> None:
        """Stop the process: SIGTERM, then SIGKILL after a grace period."""
        self.terminated = True
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.info("codex_exec_terminating", pid=process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def close(self) -> None:
        await self.terminate()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
