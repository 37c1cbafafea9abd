"""
Pydantic schemas for the DivineNex HTTP API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from divinenex.models import Guest, Post


class GuestProfileRequest(BaseModel):
    name: str = Field(..., max_length=256)
    email: str = Field(..., max_length=320)
    phone: str = Field(..., max_length=64)


class GuestProfileResponse(BaseModel):
    guestId: str


class AddFriendRequest(BaseModel):
    friendId: str = Field(..., min_length=1, max_length=320)


class GuestResponse(BaseModel):
    guestId: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    friends: list[str] = []
    updatedAt: Optional[int] = None

    @classmethod
    def from_guest(cls, guest: Guest) -> "GuestResponse":
        return cls(
            guestId=guest.guest_id,
            name=guest.name,
            email=guest.email,
            phone=guest.phone,
            friends=list(guest.friends),
            updatedAt=guest.updated_at,
        )


class GuestSearchResponse(BaseModel):
    guests: list[GuestResponse]


class AttachmentResponse(BaseModel):
    blobId: str
    url: str
    name: str


class PostResponse(BaseModel):
    id: str
    guestId: str
    title: str
    text: Optional[str] = None
    attachment: Optional[AttachmentResponse] = None
    createdAt: int
    expiresAt: int

    @classmethod
    def from_post(cls, post: Post) -> "PostResponse":
        attachment = None
        if post.attachment:
            attachment = AttachmentResponse(
                blobId=post.attachment.blob_id,
                url=post.attachment.url,
                name=post.attachment.name,
            )
        return cls(
            id=post.id,
            guestId=post.guest_id,
            title=post.title,
            text=post.text,
            attachment=attachment,
            createdAt=post.created_at,
            expiresAt=post.expires_at,
        )


class PublishResponse(BaseModel):
    postId: str
    post: PostResponse


class ListPostsResponse(BaseModel):
    posts: list[PostResponse]


class ErrorBody(BaseModel):
    kind: str
    reason: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody
