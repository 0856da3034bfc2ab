"""Pull-based sequence of user turns feeding a long-lived backend session."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .attachments import ImageAttachment


@dataclass(frozen=True)
class TurnPayload:
    text: str
    images: list[ImageAttachment] = field(default_factory=list)


class MessageChannel:
    """Queue plus a single pending waiter.

    `put` hands a turn directly to a blocked consumer or queues it;
    `get` takes a queued turn or parks as the one waiter. Neither awaits
    between checking and updating state, which makes the handoff atomic
    on the event loop and rules out lost wakeups. `close` resolves a parked
    consumer with None so its loop can exit.
    """

    def __init__(self) -> None:
        self._queue: deque[TurnPayload] = deque()
        self._waiter: asyncio.Future[TurnPayload | None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._queue)

    def put(self, payload: TurnPayload) -> bool:
        if self._closed:
            return False
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            waiter.set_result(payload)
        else:
            self._queue.append(payload)
        return True

    async def get(self) -> TurnPayload | None:
        """Next turn, or None once the channel is closed.

        Turns still queued when the channel closes are dropped.
        """
        if self._closed:
            return None
        if self._queue:
            return self._queue.popleft()
        if self._waiter is not None and not self._waiter.done():
            raise RuntimeError("MessageChannel supports a single consumer")
        waiter: asyncio.Future[TurnPayload | None] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiter = waiter
        try:
            return await waiter
        except asyncio.CancelledError:
            # A turn handed over just before cancellation goes back in line
            if waiter.done() and not waiter.cancelled():
                payload = waiter.result()
                if payload is not None:
                    self._queue.appendleft(payload)
            raise
        finally:
            if self._waiter is waiter:
                self._waiter = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        waiter = self._waiter
        self._waiter = None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def __aiter__(self) -> AsyncIterator[TurnPayload]:
        while True:
            payload = await self.get()
            if payload is None:
                return
            yield payload
