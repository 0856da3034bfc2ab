"""Image attachments carried by user turns."""

import base64
import mimetypes
from pathlib import Path

from pydantic import BaseModel
from structlog import get_logger


logger = get_logger(__name__)

SUPPORTED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
MAX_IMAGE_BYTES = 5 * 1024 * 1024


class ImageAttachment(BaseModel):
    media_type: str
    data: str  # base64
    name: str | None = None

    @property
    def size_bytes(self) -> int:
        # Decoded size without decoding
        padding = self.data.count("=", max(len(self.data) - 2, 0))
        return len(self.data) * 3 // 4 - padding

    @classmethod
    def from_path(cls, path: Path | str) -> "ImageAttachment":
        path = Path(path)
        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(
            media_type=media_type,
            data=base64.b64encode(path.read_bytes()).decode("ascii"),
            name=path.name,
        )

    def to_content_block(self) -> dict[str, object]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


def guard_images(
    images: list[ImageAttachment] | None,
) -> tuple[list[ImageAttachment], list[str]]:
    """Drop attachments a backend would reject.

    Returns:
        Accepted attachments and one warning per dropped attachment
    """
    accepted: list[ImageAttachment] = []
    warnings: list[str] = []
    for image in images or []:
        label = image.name or "image"
        if image.media_type not in SUPPORTED_IMAGE_TYPES:
            warnings.append(f"{label} skipped: unsupported type {image.media_type}")
        elif image.size_bytes > MAX_IMAGE_BYTES:
            warnings.append(
                f"{label} skipped: {image.size_bytes // 1024} KiB exceeds "
                f"{MAX_IMAGE_BYTES // (1024 * 1024)} MiB limit"
            )
        else:
            accepted.append(image)
    if warnings:
        logger.warning("attachments_dropped", count=len(warnings))
    return accepted, warnings
