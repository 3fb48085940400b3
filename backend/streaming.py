"""
Stall and timeout detection for streamed model output.

with_stall_timeout wraps any async chunk stream and enforces two independent
limits: an overall wall-clock ceiling and an inactivity window between chunks.
Cancellation of the consuming task propagates into the wrapped stream, which is
always closed on exit so in-flight model calls are abandoned.
"""

import asyncio
import time
from typing import AsyncIterator, TypeVar

T = TypeVar("T")


class GenerationTimeout(Exception):
    """The stream exceeded its overall time limit."""

    def __init__(self, limit: float):
        self.limit = limit
        super().__init__(f"Generation timed out after {limit:.0f} seconds")


class GenerationStalled(Exception):
    """No new output arrived within the inactivity window."""

    def __init__(self, inactivity_limit: float):
        self.inactivity_limit = inactivity_limit
        super().__init__(f"Generation stalled - no progress in {inactivity_limit:.0f} seconds")


async def with_stall_timeout(
    stream: AsyncIterator[T],
    inactivity_limit: float,
    overall_limit: float,
) -> AsyncIterator[T]:
    """
    Re-yield chunks from `stream`, raising GenerationStalled or GenerationTimeout.

    Whichever limit is closer bounds each wait. When both would expire together
    the overall limit wins, so a slow-but-steady stream reports a timeout.
    """
    if inactivity_limit >= overall_limit:
        raise ValueError("inactivity_limit must be shorter than overall_limit")

    iterator = stream.__aiter__()
    deadline = time.monotonic() + overall_limit
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GenerationTimeout(overall_limit)
            bounded_by_deadline = remaining <= inactivity_limit
            wait = min(inactivity_limit, remaining)
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=wait)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                if bounded_by_deadline:
                    raise GenerationTimeout(overall_limit) from None
                raise GenerationStalled(inactivity_limit) from None
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError:
                # Generator still running (cancelled mid-__anext__); nothing left to close
                pass
