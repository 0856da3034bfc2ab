"""Async utilities for agent-providers."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import TypeVar


T = TypeVar("T")


async def iterate_until(
    source: AsyncIterator[T], stop: asyncio.Event | None
) -> AsyncIterator[T]:
    """Yield items from `source` until it is exhausted or `stop` is set.

    Each step races the next item against the stop event, so a source that
    is blocked waiting on a subprocess is abandoned as soon as the event
    fires. The pending step is cancelled in that case.

    Args:
        source: Async iterator to drain
        stop: Event that ends iteration early, or None to drain fully

    Yields:
        Items from the source, in order
    """
    if stop is None:
        async for item in source:
            yield item
        return

    stop_waiter = asyncio.ensure_future(stop.wait())
    try:
        while not stop.is_set():
            step = asyncio.ensure_future(anext(source))
            await asyncio.wait(
                {step, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if not step.done():
                step.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await step
                return
            try:
                item = step.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        stop_waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_waiter
