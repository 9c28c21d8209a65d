"""
Streaming routes: bulk refresh and OPML import with live progress.

Progress is sent as text/event-stream, one JSON event per frame, with a
keepalive comment whenever the stream has been quiet for a while. When
the client goes away the operation stops before its next batch.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..auth import verify_api_key
from ..config import config, state
from ..events import KEEPALIVE_FRAME, RefreshEvent, format_sse
from ..schemas import OPMLImportRequest
from ..services import FeedServiceDep

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/feeds",
    tags=["feeds"],
    dependencies=[Depends(verify_api_key)]
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

Operation = Callable[[Callable[[RefreshEvent], None], Callable[[], bool]], Awaitable[object]]

# Operations outlive a disconnected client until their current batch ends
_running_operations: set[asyncio.Task] = set()


async def _next_frame(
    request: Request,
    queue: "asyncio.Queue[RefreshEvent | None]",
) -> tuple[bool, str | None]:
    """
    Wait for the next event.

    Returns (done, frame): a keepalive frame on timeout, (True, None) when
    the stream has ended or the client disconnected.
    """
    try:
        event = await asyncio.wait_for(queue.get(), timeout=config.SSE_KEEPALIVE_SECONDS)
    except asyncio.TimeoutError:
        if await request.is_disconnected():
            return True, None
        return False, KEEPALIVE_FRAME
    if event is None:
        return True, None
    return False, format_sse(event)


def _operation_stream(request: Request, operation: Operation) -> AsyncIterator[str]:
    """Run an operation in the background and stream the events it emits."""
    queue: asyncio.Queue[RefreshEvent | None] = asyncio.Queue()
    cancelled = False

    def is_cancelled() -> bool:
        return cancelled

    async def produce():
        try:
            await operation(queue.put_nowait, is_cancelled)
        except Exception:
            logger.exception("Streaming operation failed")
        finally:
            queue.put_nowait(None)

    async def stream() -> AsyncIterator[str]:
        nonlocal cancelled
        task = asyncio.create_task(produce())
        _running_operations.add(task)
        task.add_done_callback(_running_operations.discard)
        try:
            while True:
                done, frame = await _next_frame(request, queue)
                if done:
                    break
                yield frame
        finally:
            if not task.done():
                logger.info("Client disconnected, cancelling remaining batches")
                cancelled = True

    return stream()


# ─────────────────────────────────────────────────────────────
# Bulk refresh
# ─────────────────────────────────────────────────────────────

@router.get("/refresh-multiple")
async def refresh_multiple(
    request: Request,
    service: FeedServiceDep,
    ids: str | None = None
) -> StreamingResponse:
    """
    Refresh several feeds (all eligible feeds when ids is omitted).

    ids is a comma separated list; entries that are not integers are ignored.
    """
    feed_ids: list[int] = []
    if ids:
        for part in ids.split(","):
            part = part.strip()
            if part.lstrip("-").isdigit():
                feed_ids.append(int(part))
    refresh_all = not feed_ids

    feeds = service.feeds_to_refresh(feed_ids or None)

    async def operation(emit, is_cancelled):
        return await service.refresh_many(feeds, emit, is_cancelled, refresh_all=refresh_all)

    return StreamingResponse(
        _operation_stream(request, operation),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/refresh-events")
async def refresh_events(request: Request) -> StreamingResponse:
    """Live events from background refresh cycles."""
    if not state.events:
        raise HTTPException(status_code=500, detail="Event bus not initialized")

    queue: asyncio.Queue[RefreshEvent | None] = asyncio.Queue()
    unsubscribe = state.events.subscribe(queue.put_nowait)

    async def stream() -> AsyncIterator[str]:
        try:
            while True:
                done, frame = await _next_frame(request, queue)
                if done:
                    break
                yield frame
        finally:
            unsubscribe()

    return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)


# ─────────────────────────────────────────────────────────────
# OPML import
# ─────────────────────────────────────────────────────────────

@router.post("/import-opml/stream")
async def import_opml_stream(
    body: OPMLImportRequest,
    request: Request,
    service: FeedServiceDep
) -> StreamingResponse:
    """Import feeds from OPML, then refresh each newly created feed."""
    doc = service.parse_import(body.opml_content)

    async def operation(emit, is_cancelled):
        return await service.import_opml(doc, emit, is_cancelled)

    return StreamingResponse(
        _operation_stream(request, operation),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
