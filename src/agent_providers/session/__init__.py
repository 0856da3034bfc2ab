"""Run handles and the turn channel behind them."""

from .attachments import ImageAttachment, guard_images
from .channel import MessageChannel, TurnPayload
from .handle import RunHandle


__all__ = [
    "ImageAttachment",
    "MessageChannel",
    "RunHandle",
    "TurnPayload",
    "guard_images",
]
