"""Live control object for one backend session."""

import inspect
from typing import Any

from structlog import get_logger

from .attachments import ImageAttachment, guard_images
from .channel import MessageChannel, TurnPayload


logger = get_logger(__name__)


class RunHandle:
    """Injectable, closable handle over a running session.

    The handle exists before the backend does: callers receive it first,
    may inject or close immediately, and live controls issued before the
    backend object is bound are no-ops.
    """

    def __init__(self, provider: str, channel: MessageChannel | None = None):
        self.provider = provider
        self.channel = channel or MessageChannel()
        self.session_id: str | None = None
        self._backend: Any = None

    @property
    def active(self) -> bool:
        return not self.channel.closed

    @property
    def backend(self) -> Any:
        return self._backend

    def bind_backend(self, backend: Any) -> None:
        self._backend = backend

    def unbind_backend(self) -> None:
        self._backend = None

    def inject(self, text: str, images: list[ImageAttachment] | None = None) -> bool:
        """Queue a user turn.

        Returns:
            False if the handle is already closed
        """
        accepted, warnings = guard_images(images)
        if warnings:
            text = f"{text}\n\n[{'; '.join(warnings)}]"
        delivered = self.channel.put(TurnPayload(text=text, images=accepted))
        if delivered:
            logger.debug(
                "turn_injected",
                provider=self.provider,
                session_id=self.session_id,
                images=len(accepted),
            )
        else:
            logger.debug("turn_rejected_handle_closed", provider=self.provider)
        return delivered

    def close(self) -> None:
        if self.channel.closed:
            return
        self.channel.close()
        logger.debug("run_handle_closed", provider=self.provider, session_id=self.session_id)

    # Best-effort passthroughs to the backend's live controls

    async def _call(self, method_name: str, *args: Any) -> Any:
        backend = self._backend
        if backend is None or not self.active:
            logger.debug(
                "live_control_skipped", provider=self.provider, control=method_name
            )
            return None
        method = getattr(backend, method_name, None)
        if method is None:
            logger.debug(
                "live_control_unsupported", provider=self.provider, control=method_name
            )
            return None
        result = method(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def interrupt(self) -> None:
        await self._call("interrupt")

    async def set_model(self, model: str | None) -> None:
        await self._call("set_model", model)

    async def set_permission_mode(self, mode: str) -> None:
        await self._call("set_permission_mode", mode)

    async def stop_task(self, task_id: str) -> None:
        await self._call("stop_task", task_id)

    async def mcp_server_status(self) -> Any:
        return await self._call("get_mcp_status")

    async def reconnect_mcp_server(self, name: str) -> None:
        await self._call("reconnect_mcp_server", name)

    async def toggle_mcp_server(self, name: str, enabled: bool) -> None:
        await self._call("toggle_mcp_server", name, enabled)
