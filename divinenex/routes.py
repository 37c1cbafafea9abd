"""
HTTP routes for the DivineNex API.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from starlette.concurrency import run_in_threadpool

from divinenex.config import Settings, get_settings
from divinenex.dependencies import get_guest_registry, get_lifecycle_manager
from divinenex.errors import AttachmentError
from divinenex.guests import GuestRegistry
from divinenex.lifecycle import PostLifecycleManager
from divinenex.models import AttachmentUpload
from divinenex.news import NewsFeedError, fetch_articles
from divinenex.schemas import (
    AddFriendRequest,
    ErrorResponse,
    GuestProfileRequest,
    GuestProfileResponse,
    GuestResponse,
    GuestSearchResponse,
    ListPostsResponse,
    PostResponse,
    PublishResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_CHUNK_BYTES = 1024 * 1024

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


async def read_capped(file: UploadFile, limit: int) -> bytes:
    """Read an upload in chunks, giving up as soon as it exceeds ``limit`` bytes."""
    chunks = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise AttachmentError(
                f"attachment exceeds the {limit} byte limit",
                reason="attachment_too_large",
            )
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/guest", response_model=GuestProfileResponse, responses=ERROR_RESPONSES)
def submit_guest_profile(
    payload: GuestProfileRequest,
    registry: GuestRegistry = Depends(get_guest_registry),
):
    guest_id = registry.submit_profile(payload.name, payload.email, payload.phone)
    return GuestProfileResponse(guestId=guest_id)


@router.post(
    "/guest/{guest_id}/friends", response_model=GuestResponse, responses=ERROR_RESPONSES
)
def add_friend(
    guest_id: str,
    payload: AddFriendRequest,
    registry: GuestRegistry = Depends(get_guest_registry),
):
    guest = registry.add_friend(guest_id, payload.friendId)
    if guest is None:
        raise HTTPException(status_code=404, detail="Guest not found")
    return GuestResponse.from_guest(guest)


@router.get("/guests/search", response_model=GuestSearchResponse, responses=ERROR_RESPONSES)
def search_guests(
    q: str = Query(..., min_length=1, max_length=128),
    limit: int = Query(50, ge=1, le=100),
    registry: GuestRegistry = Depends(get_guest_registry),
):
    guests = registry.search(q, limit=limit)
    return GuestSearchResponse(guests=[GuestResponse.from_guest(g) for g in guests])


@router.post("/upload", response_model=PublishResponse, responses=ERROR_RESPONSES)
async def publish_post(
    guestId: str = Form(""),
    title: str = Form(""),
    text: str | None = Form(None),
    description: str | None = Form(None),
    file: UploadFile | None = File(None),
    manager: PostLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Publish a post with an optional attachment. ``description`` is accepted
    as a legacy name for ``text``.
    """
    attachment = None
    if file is not None and file.filename:
        content = await read_capped(file, manager.config.max_attachment_bytes)
        attachment = AttachmentUpload(
            name=file.filename,
            mime_type=file.content_type or "application/octet-stream",
            content=content,
        )
    body = text if text is not None else description
    # Store calls block; keep them off the event loop.
    result = await run_in_threadpool(
        manager.publish, guestId, title, body, attachment
    )
    return PublishResponse(postId=result.post_id, post=PostResponse.from_post(result.post))


@router.get("/posts", response_model=ListPostsResponse)
def list_posts(
    limit: int | None = Query(None, ge=1),
    manager: PostLifecycleManager = Depends(get_lifecycle_manager),
):
    posts = manager.list_recent_posts(limit)
    return ListPostsResponse(posts=[PostResponse.from_post(p) for p in posts])


@router.get("/news")
def live_news(settings: Settings = Depends(get_settings)):
    try:
        return fetch_articles(settings.news_feed_url)
    except NewsFeedError as exc:
        raise HTTPException(status_code=502, detail=f"News feed unavailable: {exc}")
