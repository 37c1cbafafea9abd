"""
Metadata store abstraction for SQL databases and an in-memory test implementation.

Posts and guests are kept as loosely-typed documents: the indexed columns
needed for listing and expiry queries, plus JSON payloads for everything else.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Dict, Iterator, Optional, Protocol

from sqlalchemy import JSON, BigInteger, Column, Integer, String, Text, create_engine, delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from divinenex.errors import StoreError
from divinenex.models import GUEST_SET_FIELDS, Guest, Post


class MetadataStore(Protocol):
    """Interface for post and guest metadata access."""

    def upsert_guest(self, guest_id: str, fields: dict, merge: bool = True) -> None:
        ...

    def get_guest(self, guest_id: str) -> Optional[Guest]:
        ...

    def search_guests(self, term: str, limit: int = 50) -> list[Guest]:
        ...

    def create_post(self, post: Post) -> str:
        ...

    def get_post(self, post_id: str) -> Optional[Post]:
        ...

    def list_recent_posts(self, limit: int) -> Iterator[Post]:
        ...

    def find_expired(self, now: int) -> list[Post]:
        ...

    def delete_post(self, post_id: str) -> None:
        ...

    def record_delete_attempt(self, post_id: str) -> int:
        ...

    def referenced_blob_ids(self) -> set[str]:
        ...


def merge_guest_fields(existing: dict, fields: dict, merge: bool = True) -> dict:
    """Apply an upsert to a guest document; set-typed fields grow by union."""
    if not merge:
        merged = dict(fields)
    else:
        merged = dict(existing)
        for key, value in fields.items():
            if key in GUEST_SET_FIELDS:
                continue
            merged[key] = value
    for key in GUEST_SET_FIELDS:
        incoming = fields.get(key) or []
        base = (existing.get(key) or []) if merge else []
        if incoming or base or key in merged:
            merged[key] = sorted(set(base) | set(incoming))
    return merged


class InMemoryMetadataStore:
    """Simple in-memory metadata store for development and tests."""

    def __init__(self):
        self.posts: Dict[str, dict] = {}
        self.guests: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.posts.clear()
            self.guests.clear()

    def upsert_guest(self, guest_id: str, fields: dict, merge: bool = True) -> None:
        with self._lock:
            existing = self.guests.get(guest_id, {})
            self.guests[guest_id] = merge_guest_fields(existing, fields, merge)

    def get_guest(self, guest_id: str) -> Optional[Guest]:
        with self._lock:
            data = self.guests.get(guest_id)
            return Guest.from_dict(guest_id, data) if data is not None else None

    def search_guests(self, term: str, limit: int = 50) -> list[Guest]:
        needle = term.lower()
        with self._lock:
            matches = [
                Guest.from_dict(guest_id, data)
                for guest_id, data in sorted(self.guests.items())
                if needle in (data.get("name") or "").lower()
                or needle in (data.get("email") or "").lower()
            ]
        return matches[:limit]

    def create_post(self, post: Post) -> str:
        post_id = post.id or uuid.uuid4().hex
        record = post.as_dict()
        record["id"] = post_id
        with self._lock:
            if post_id in self.posts:
                raise StoreError(f"post {post_id} already exists", reason="duplicate_id")
            self.posts[post_id] = record
        return post_id

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._lock:
            data = self.posts.get(post_id)
            return Post.from_dict(copy.deepcopy(data)) if data else None

    def list_recent_posts(self, limit: int) -> Iterator[Post]:
        with self._lock:
            snapshot = sorted(
                self.posts.values(), key=lambda p: p["created_at"], reverse=True
            )[:limit]
            snapshot = copy.deepcopy(snapshot)
        return (Post.from_dict(item) for item in snapshot)

    def find_expired(self, now: int) -> list[Post]:
        with self._lock:
            return [
                Post.from_dict(copy.deepcopy(data))
                for data in self.posts.values()
                if data["expires_at"] <= now
            ]

    def delete_post(self, post_id: str) -> None:
        with self._lock:
            self.posts.pop(post_id, None)

    def record_delete_attempt(self, post_id: str) -> int:
        with self._lock:
            data = self.posts.get(post_id)
            if data is None:
                return 0
            data["delete_attempts"] = int(data.get("delete_attempts") or 0) + 1
            return data["delete_attempts"]

    def referenced_blob_ids(self) -> set[str]:
        with self._lock:
            return {
                data["attachment"]["blob_id"]
                for data in self.posts.values()
                if data.get("attachment")
            }


class SqlMetadataStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, timeout_seconds: float = 10.0):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlMetadataStore")
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        # Pool wait, connect and statement together stay within timeout_seconds.
        leg = timeout_seconds / 3
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": timeout_seconds,
            }
            if ":memory:" in database_url or database_url.endswith("://"):
                # A single shared connection, so every thread sees the same database.
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_recycle"] = 1800
            engine_kwargs["pool_timeout"] = leg
            if database_url.startswith("postgresql"):
                engine_kwargs["connect_args"] = {
                    "connect_timeout": max(1, int(leg)),
                    "options": f"-c statement_timeout={int(leg * 1000)}",
                }
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_post(self, row: "PostRow") -> Post:
        attachment = None
        if row.blob_id:
            attachment = {
                "blob_id": row.blob_id,
                "url": row.attachment_url,
                "name": row.attachment_name or "",
            }
        return Post.from_dict(
            {
                "id": row.id,
                "guest_id": row.guest_id,
                "title": row.title,
                "text": row.text,
                "attachment": attachment,
                "created_at": row.created_at,
                "expires_at": row.expires_at,
                "delete_attempts": row.delete_attempts,
            }
        )

    def upsert_guest(self, guest_id: str, fields: dict, merge: bool = True) -> None:
        try:
            with self.Session() as session:
                row = session.get(GuestRow, guest_id, with_for_update=True)
                existing = row.data if row and row.data else {}
                merged = merge_guest_fields(existing, fields, merge)
                if not row:
                    row = GuestRow(guest_id=guest_id)
                    session.add(row)
                row.data = merged
                row.name_lower = (merged.get("name") or "").lower() or None
                row.email_lower = (merged.get("email") or "").lower() or None
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert of guest {guest_id} failed: {exc}") from exc

    def get_guest(self, guest_id: str) -> Optional[Guest]:
        try:
            with self.Session() as session:
                row = session.get(GuestRow, guest_id)
                return Guest.from_dict(guest_id, row.data or {}) if row else None
        except SQLAlchemyError as exc:
            raise StoreError(f"read of guest {guest_id} failed: {exc}") from exc

    def search_guests(self, term: str, limit: int = 50) -> list[Guest]:
        pattern = f"%{term.lower()}%"
        try:
            with self.Session() as session:
                stmt = (
                    select(GuestRow)
                    .where(
                        or_(
                            GuestRow.name_lower.like(pattern),
                            GuestRow.email_lower.like(pattern),
                        )
                    )
                    .order_by(GuestRow.guest_id.asc())
                    .limit(limit)
                )
                rows = session.execute(stmt).scalars().all()
                return [Guest.from_dict(row.guest_id, row.data or {}) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"guest search failed: {exc}") from exc

    def create_post(self, post: Post) -> str:
        post_id = post.id or uuid.uuid4().hex
        attachment = post.attachment
        row = PostRow(
            id=post_id,
            guest_id=post.guest_id,
            title=post.title,
            text=post.text,
            blob_id=attachment.blob_id if attachment else None,
            attachment_url=attachment.url if attachment else None,
            attachment_name=attachment.name if attachment else None,
            created_at=post.created_at,
            expires_at=post.expires_at,
            delete_attempts=0,
        )
        try:
            with self.Session() as session:
                session.add(row)
                session.commit()
        except IntegrityError as exc:
            raise StoreError(f"post {post_id} already exists", reason="duplicate_id") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"create of post {post_id} failed: {exc}") from exc
        return post_id

    def get_post(self, post_id: str) -> Optional[Post]:
        try:
            with self.Session() as session:
                row = session.get(PostRow, post_id)
                return self._to_post(row) if row else None
        except SQLAlchemyError as exc:
            raise StoreError(f"read of post {post_id} failed: {exc}") from exc

    def list_recent_posts(self, limit: int) -> Iterator[Post]:
        try:
            with self.Session() as session:
                stmt = select(PostRow).order_by(PostRow.created_at.desc()).limit(limit)
                rows = session.execute(stmt).scalars().all()
                snapshot = [self._to_post(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"listing posts failed: {exc}") from exc
        return iter(snapshot)

    def find_expired(self, now: int) -> list[Post]:
        try:
            with self.Session() as session:
                stmt = select(PostRow).where(PostRow.expires_at <= now)
                return [self._to_post(row) for row in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise StoreError(f"expiry query failed: {exc}") from exc

    def delete_post(self, post_id: str) -> None:
        try:
            with self.Session() as session:
                session.execute(delete(PostRow).where(PostRow.id == post_id))
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"delete of post {post_id} failed: {exc}") from exc

    def record_delete_attempt(self, post_id: str) -> int:
        try:
            with self.Session() as session:
                row = session.get(PostRow, post_id, with_for_update=True)
                if not row:
                    return 0
                row.delete_attempts = (row.delete_attempts or 0) + 1
                session.commit()
                return row.delete_attempts
        except SQLAlchemyError as exc:
            raise StoreError(f"update of post {post_id} failed: {exc}") from exc

    def referenced_blob_ids(self) -> set[str]:
        try:
            with self.Session() as session:
                stmt = select(PostRow.blob_id).where(PostRow.blob_id.is_not(None))
                return set(session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StoreError(f"blob reference query failed: {exc}") from exc


Base = declarative_base()


class PostRow(Base):
    __tablename__ = "posts"

    id = Column(String, primary_key=True)
    guest_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    blob_id = Column(String, nullable=True, index=True)
    attachment_url = Column(String, nullable=True)
    attachment_name = Column(String, nullable=True)
    created_at = Column(BigInteger, nullable=False, index=True)
    expires_at = Column(BigInteger, nullable=False, index=True)
    delete_attempts = Column(Integer, nullable=False, default=0)


class GuestRow(Base):
    __tablename__ = "guests"

    guest_id = Column(String, primary_key=True)
    name_lower = Column(String, nullable=True, index=True)
    email_lower = Column(String, nullable=True, index=True)
    data = Column(JSON, nullable=False, default=dict)
