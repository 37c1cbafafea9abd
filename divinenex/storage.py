"""
Blob storage abstraction for S3-compatible object hosting and in-memory testing.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from divinenex.errors import DeleteFailure, PermissionGrantFailure, UploadError
from divinenex.models import now_ms

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class BlobRef:
    id: str
    url: str
    name: str


@dataclass(frozen=True)
class BlobListing:
    id: str
    created_at: int


class BlobStoreClient(Protocol):
    """Defines the operations the lifecycle manager needs from blob hosting."""

    def upload(self, name: str, mime_type: str, content: bytes) -> BlobRef:
        ...

    def make_public(self, blob_id: str) -> None:
        ...

    def delete(self, blob_id: str) -> None:
        ...

    def list_blobs(self) -> Iterator[BlobListing]:
        ...


def public_url(template: str, blob_id: str) -> str:
    """Build the unauthenticated fetch link for a blob id."""
    return template.format(blob_id=blob_id)


@dataclass
class InMemoryBlobStore:
    """Test double for blob storage interactions."""

    url_template: str = "https://example.test/blobs/{blob_id}"
    max_bytes: int = 20 * 1024 * 1024
    objects: dict = field(default_factory=dict)
    public_ids: set = field(default_factory=set)

    def __post_init__(self):
        self._lock = threading.Lock()

    def upload(self, name: str, mime_type: str, content: bytes) -> BlobRef:
        if len(content) > self.max_bytes:
            raise UploadError(
                f"payload of {len(content)} bytes exceeds {self.max_bytes}",
                reason="attachment_too_large",
            )
        blob_id = uuid.uuid4().hex
        with self._lock:
            self.objects[blob_id] = {
                "name": name,
                "mime_type": mime_type,
                "content": bytes(content),
                "created_at": now_ms(),
            }
        return BlobRef(id=blob_id, url=public_url(self.url_template, blob_id), name=name)

    def make_public(self, blob_id: str) -> None:
        with self._lock:
            if blob_id not in self.objects:
                raise PermissionGrantFailure(f"blob {blob_id} does not exist")
            self.public_ids.add(blob_id)

    def delete(self, blob_id: str) -> None:
        with self._lock:
            self.objects.pop(blob_id, None)
            self.public_ids.discard(blob_id)

    def list_blobs(self) -> Iterator[BlobListing]:
        with self._lock:
            snapshot = [
                BlobListing(id=blob_id, created_at=obj["created_at"])
                for blob_id, obj in self.objects.items()
            ]
        return iter(snapshot)


@dataclass
class S3BlobStore:
    """
    Blob store backed by any S3-compatible service (AWS S3, Tencent COS, MinIO).

    Objects live under ``{folder}/{blob_id}`` in a single bucket.
    """

    bucket: str
    folder: str
    url_template: str
    region: Optional[str] = None
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    max_bytes: int = 20 * 1024 * 1024
    timeout_seconds: float = 10.0

    def __post_init__(self):
        # timeout_seconds bounds a whole call: one attempt, split across connect and read.
        config = Config(
            signature_version="s3v4",
            connect_timeout=self.timeout_seconds / 2,
            read_timeout=self.timeout_seconds / 2,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def _key(self, blob_id: str) -> str:
        folder = self.folder.strip("/")
        return f"{folder}/{blob_id}" if folder else blob_id

    def upload(self, name: str, mime_type: str, content: bytes) -> BlobRef:
        if len(content) > self.max_bytes:
            raise UploadError(
                f"payload of {len(content)} bytes exceeds {self.max_bytes}",
                reason="attachment_too_large",
            )
        blob_id = uuid.uuid4().hex
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self._key(blob_id),
                Body=content,
                ContentType=mime_type or "application/octet-stream",
                ContentDisposition=f"inline; filename*=UTF-8''{quote(name)}",
            )
        except (ClientError, BotoCoreError) as exc:
            raise UploadError(f"upload of {name!r} failed: {exc}") from exc
        return BlobRef(id=blob_id, url=public_url(self.url_template, blob_id), name=name)

    def make_public(self, blob_id: str) -> None:
        try:
            self._client.put_object_acl(
                Bucket=self.bucket, Key=self._key(blob_id), ACL="public-read"
            )
        except (ClientError, BotoCoreError) as exc:
            raise PermissionGrantFailure(
                f"public-read grant on {blob_id} failed: {exc}"
            ) from exc

    def delete(self, blob_id: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self._key(blob_id))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return
            raise DeleteFailure(f"delete of {blob_id} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise DeleteFailure(f"delete of {blob_id} failed: {exc}") from exc

    def list_blobs(self) -> Iterator[BlobListing]:
        folder = self.folder.strip("/")
        prefix = f"{folder}/" if folder else ""
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                blob_id = obj["Key"][len(prefix):]
                if not blob_id or "/" in blob_id:
                    continue
                yield BlobListing(
                    id=blob_id,
                    created_at=int(obj["LastModified"].timestamp() * 1000),
                )
