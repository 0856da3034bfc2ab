"""Tests for RunHandle injection and live control passthrough."""

import base64
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agent_providers.session import ImageAttachment, RunHandle, TurnPayload
from agent_providers.session.attachments import MAX_IMAGE_BYTES, guard_images


def png(size: int = 16, name: str = "shot.png") -> ImageAttachment:
    return ImageAttachment(
        media_type="image/png",
        data=base64.b64encode(b"\x89" * size).decode("ascii"),
        name=name,
    )


class TestInjection:
    """Turns pushed through the handle."""

    @pytest.mark.asyncio
    async def test_inject_reaches_channel(self) -> None:
        """Test that an injected turn is what the backend reads next."""
        handle = RunHandle("claude")

        assert handle.inject("follow-up", [png()])

        payload = await handle.channel.get()
        assert payload is not None
        assert payload.text == "follow-up"
        assert len(payload.images) == 1

    @pytest.mark.asyncio
    async def test_inject_after_close(self) -> None:
        """Test that a closed handle reports the turn as not delivered."""
        handle = RunHandle("codex")
        handle.close()

        assert not handle.active
        assert handle.inject("too late") is False

    @pytest.mark.asyncio
    async def test_dropped_images_are_noted_in_text(self) -> None:
        """Test that rejected attachments are dropped with a visible note."""
        handle = RunHandle("claude")
        gif_ok = ImageAttachment(media_type="image/gif", data="R0lG", name="ok.gif")
        pdf = ImageAttachment(media_type="application/pdf", data="JVBE", name="doc.pdf")

        handle.inject("look", [gif_ok, pdf])

        payload = await handle.channel.get()
        assert payload == TurnPayload(
            text="look\n\n[doc.pdf skipped: unsupported type application/pdf]",
            images=[gif_ok],
        )


class TestLiveControls:
    """Best-effort passthrough to the backend control object."""

    @pytest.mark.asyncio
    async def test_controls_before_bind_are_noops(self) -> None:
        """Test that controls issued before the backend exists do nothing."""
        handle = RunHandle("claude")

        await handle.interrupt()
        await handle.set_model("other")
        await handle.set_permission_mode("plan")
        assert await handle.mcp_server_status() is None

    @pytest.mark.asyncio
    async def test_async_controls_are_awaited(self) -> None:
        """Test that coroutine controls on the backend are awaited."""
        handle = RunHandle("claude")
        backend = AsyncMock()
        backend.get_mcp_status.return_value = {"servers": []}
        handle.bind_backend(backend)

        await handle.interrupt()
        await handle.set_model("claude-opus-4-1")
        await handle.set_permission_mode("acceptEdits")
        await handle.toggle_mcp_server("github", False)

        backend.interrupt.assert_awaited_once()
        backend.set_model.assert_awaited_once_with("claude-opus-4-1")
        backend.set_permission_mode.assert_awaited_once_with("acceptEdits")
        backend.toggle_mcp_server.assert_awaited_once_with("github", False)
        assert await handle.mcp_server_status() == {"servers": []}

    @pytest.mark.asyncio
    async def test_sync_controls_and_missing_methods(self) -> None:
        """Test that plain methods are called and absent ones are skipped."""
        models: list[str | None] = []

        class Controls:
            def set_model(self, model: str | None) -> None:
                models.append(model)

        handle = RunHandle("codex")
        handle.bind_backend(Controls())

        await handle.set_model("gpt-5")
        await handle.reconnect_mcp_server("github")

        assert models == ["gpt-5"]

    @pytest.mark.asyncio
    async def test_controls_after_close_are_noops(self) -> None:
        """Test that a closed handle no longer reaches the backend."""
        handle = RunHandle("claude")
        backend = AsyncMock()
        handle.bind_backend(backend)
        handle.close()

        await handle.interrupt()

        backend.interrupt.assert_not_awaited()

    def test_unbind(self) -> None:
        """Test that unbinding forgets the backend object."""
        handle = RunHandle("claude")
        handle.bind_backend(object())
        handle.unbind_backend()

        assert handle.backend is None


class TestAttachments:
    """Image attachment helpers."""

    def test_size_is_computed_from_base64(self) -> None:
        """Test that the decoded size accounts for padding."""
        assert png(size=16).size_bytes == 16
        assert png(size=17).size_bytes == 17

    def test_oversized_image_is_dropped(self) -> None:
        """Test that images over the limit are refused with a warning."""
        big = png(size=MAX_IMAGE_BYTES + 3, name="huge.png")

        accepted, warnings = guard_images([big, png()])

        assert len(accepted) == 1
        assert warnings[0].startswith("huge.png skipped:")

    def test_from_path(self, tmp_path: Path) -> None:
        """Test that an image file is loaded with its guessed media type."""
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"\xff\xd8\xff")

        image = ImageAttachment.from_path(path)

        assert image.media_type == "image/jpeg"
        assert image.name == "photo.jpg"
        assert image.to_content_block() == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/jpeg", "data": "/9j/"},
        }
