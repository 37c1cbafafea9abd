"""
Domain records for posts and guests.
"""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field
from typing import Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class PostState(enum.Enum):
    PENDING = "PENDING"
    LIVE = "LIVE"
    EXPIRED = "EXPIRED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class Attachment:
    """Reference to an uploaded blob stored on a post."""

    blob_id: str
    url: str
    name: str

    def as_dict(self) -> dict:
        return {"blob_id": self.blob_id, "url": self.url, "name": self.name}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Attachment"]:
        if not data:
            return None
        return cls(blob_id=data["blob_id"], url=data["url"], name=data.get("name", ""))


@dataclass(frozen=True)
class AttachmentUpload:
    """A file submitted with a publish request, before it reaches the blob store."""

    name: str
    mime_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class Post:
    guest_id: str
    title: str
    created_at: int
    expires_at: int
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    id: Optional[str] = None
    delete_attempts: int = 0

    def state(self, now: int) -> PostState:
        if self.id is None:
            return PostState.PENDING
        return PostState.EXPIRED if self.expires_at <= now else PostState.LIVE

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "guest_id": self.guest_id,
            "title": self.title,
            "text": self.text,
            "attachment": self.attachment.as_dict() if self.attachment else None,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "delete_attempts": self.delete_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Post":
        return cls(
            id=data.get("id"),
            guest_id=data["guest_id"],
            title=data["title"],
            text=data.get("text"),
            attachment=Attachment.from_dict(data.get("attachment")),
            created_at=int(data["created_at"]),
            expires_at=int(data["expires_at"]),
            delete_attempts=int(data.get("delete_attempts") or 0),
        )


# Fields stored as sets on guest records; merges union them instead of overwriting.
GUEST_SET_FIELDS = frozenset({"friends"})

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_guest_id(email: str) -> str:
    """Derive the stable guest key from a contact email."""
    return _NON_ALNUM.sub("_", email.strip().lower())


@dataclass
class Guest:
    guest_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    friends: list[str] = field(default_factory=list)
    updated_at: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "guest_id": self.guest_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "friends": list(self.friends),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, guest_id: str, data: dict) -> "Guest":
        return cls(
            guest_id=guest_id,
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            friends=sorted(data.get("friends") or []),
            updated_at=data.get("updated_at"),
        )
