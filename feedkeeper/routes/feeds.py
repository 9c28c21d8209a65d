"""
Feed routes: management, manual refresh, OPML export.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..auth import verify_api_key
from ..exceptions import RefreshFailedError, refresh_failed_response
from ..schemas import (
    AddFeedRequest,
    ArticleResponse,
    FeedResponse,
    OPMLExportResponse,
    RefreshFeedResponse,
    UpdateFeedRequest,
)
from ..services import FeedServiceDep

router = APIRouter(
    prefix="/feeds",
    tags=["feeds"],
    dependencies=[Depends(verify_api_key)]
)


def _feed_response(service, feed) -> FeedResponse:
    folders = service.folder_names()
    return FeedResponse.from_db(feed, folders.get(feed.folder_id) if feed.folder_id else None)


# ─────────────────────────────────────────────────────────────
# Feed Management
# ─────────────────────────────────────────────────────────────

@router.get("")
async def list_feeds(service: FeedServiceDep) -> list[FeedResponse]:
    """List all subscribed feeds."""
    folders = service.folder_names()
    return [
        FeedResponse.from_db(f, folders.get(f.folder_id) if f.folder_id else None)
        for f in service.list_feeds()
    ]


@router.post("")
async def add_feed(
    request: AddFeedRequest,
    service: FeedServiceDep,
    background_tasks: BackgroundTasks
) -> FeedResponse:
    """Subscribe to a new feed. Articles arrive with the first refresh."""
    feed = await service.subscribe(
        request.url,
        background_tasks,
        title=request.title,
        folder=request.folder,
    )
    return _feed_response(service, feed)


@router.get("/export-opml")
async def export_opml(service: FeedServiceDep) -> OPMLExportResponse:
    """Export all feeds as OPML."""
    return OPMLExportResponse(**service.export_opml())


@router.get("/{feed_id}")
async def get_feed(feed_id: int, service: FeedServiceDep) -> FeedResponse:
    return _feed_response(service, service.get_feed(feed_id))


@router.put("/{feed_id}")
async def update_feed(
    feed_id: int,
    request: UpdateFeedRequest,
    service: FeedServiceDep
) -> FeedResponse:
    """Update a feed's title, folder or refresh interval."""
    feed = service.update_feed(
        feed_id,
        title=request.title,
        folder=request.folder,
        refresh_interval_minutes=request.refresh_interval_minutes,
    )
    return _feed_response(service, feed)


@router.delete("/{feed_id}")
async def remove_feed(feed_id: int, service: FeedServiceDep) -> dict:
    """Unsubscribe from a feed."""
    service.unsubscribe(feed_id)
    return {"success": True}


@router.post("/{feed_id}/pause")
async def pause_feed(feed_id: int, service: FeedServiceDep) -> FeedResponse:
    return _feed_response(service, service.pause_feed(feed_id))


@router.post("/{feed_id}/resume")
async def resume_feed(feed_id: int, service: FeedServiceDep) -> FeedResponse:
    return _feed_response(service, service.resume_feed(feed_id))


@router.get("/{feed_id}/articles")
async def list_feed_articles(
    feed_id: int,
    service: FeedServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0)
) -> list[ArticleResponse]:
    """Articles of one feed, newest first."""
    return [ArticleResponse.from_db(a) for a in service.list_articles(feed_id, limit, offset)]


# ─────────────────────────────────────────────────────────────
# Refresh
# ─────────────────────────────────────────────────────────────

@router.post("/{feed_id}/refresh")
async def refresh_feed(feed_id: int, service: FeedServiceDep) -> RefreshFeedResponse:
    """Refresh one feed now and report the outcome."""
    try:
        result = await service.refresh_feed(feed_id)
    except RefreshFailedError as e:
        return refresh_failed_response(e)

    return RefreshFeedResponse(
        success=True,
        new_articles=result.new_articles,
        next_fetch_at=result.next_fetch_at.isoformat() if result.next_fetch_at else None,
    )
