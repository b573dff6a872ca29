"""
Server-Sent Events transport for AI reply streams and the widget's conversation feed.

The event source runs in its own task and feeds a queue the HTTP response
drains. When the client goes away the response generator is closed, the
cancellation token is set, and the source task still runs to completion so
the reply is persisted exactly once.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Set

from inbox.ai import CancellationToken

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END = object()

# Strong references so detached producers are not garbage collected mid-run
_background_tasks: Set[asyncio.Task] = set()


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def _produce(events: AsyncIterator[dict], queue: asyncio.Queue, fallback: str) -> None:
    terminal_sent = False
    try:
        async for event in events:
            if event.get("type") in ("done", "error"):
                terminal_sent = True
            await queue.put(event)
    except Exception:
        logger.exception("Event source failed")
        if not terminal_sent:
            await queue.put({"type": "error", "fallback": fallback})
    finally:
        await queue.put(_END)


async def sse_stream(
    events: AsyncIterator[dict], cancel_token: CancellationToken, fallback: str
) -> AsyncIterator[str]:
    """
    Encode `events` as SSE frames.

    Args:
        events: Source of stream events (start, chunk, done, error)
        cancel_token: Cancelled when the client disconnects before the source ends
        fallback: Text of the error frame sent if the source raises before its terminal event
    """
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(_produce(events, queue, fallback))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    try:
        while True:
            event = await queue.get()
            if event is _END:
                break
            yield format_sse(event)
    finally:
        if not task.done():
            logger.info("Stream client disconnected, cancelling model stream")
            cancel_token.cancel()
