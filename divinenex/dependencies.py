"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from divinenex.config import LifecycleConfig, get_settings
from divinenex.db import InMemoryMetadataStore, MetadataStore, SqlMetadataStore
from divinenex.guests import GuestRegistry
from divinenex.lifecycle import PostLifecycleManager
from divinenex.locks import InMemorySweepLock, RedisSweepLock, SweepLock
from divinenex.storage import BlobStoreClient, InMemoryBlobStore, S3BlobStore

_metadata_store: MetadataStore | None = None
_blob_store: BlobStoreClient | None = None
_sweep_lock: SweepLock | None = None
_lifecycle_manager: PostLifecycleManager | None = None
_guest_registry: GuestRegistry | None = None


def get_metadata_store() -> MetadataStore:
    """
    Return a singleton metadata store so state persists across requests.
    """
    global _metadata_store
    if _metadata_store:
        return _metadata_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _metadata_store = InMemoryMetadataStore()
    else:
        _metadata_store = SqlMetadataStore(
            settings.database_url, timeout_seconds=settings.driver_timeout_seconds
        )
    return _metadata_store


def get_blob_store() -> BlobStoreClient:
    global _blob_store
    if _blob_store:
        return _blob_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _blob_store = InMemoryBlobStore(
            url_template=settings.blob_public_url_template,
            max_bytes=settings.max_attachment_bytes,
        )
    else:
        _blob_store = S3BlobStore(
            bucket=settings.s3_bucket,
            folder=settings.blob_folder,
            url_template=settings.blob_public_url_template,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            max_bytes=settings.max_attachment_bytes,
            timeout_seconds=settings.driver_timeout_seconds,
        )
    return _blob_store


def get_sweep_lock() -> SweepLock:
    global _sweep_lock
    if _sweep_lock:
        return _sweep_lock

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _sweep_lock = RedisSweepLock(
            url=settings.redis_url,
            prefix=settings.redis_lock_prefix,
            timeout_seconds=settings.driver_timeout_seconds,
        )
    else:
        _sweep_lock = InMemorySweepLock()
    return _sweep_lock


def get_lifecycle_manager() -> PostLifecycleManager:
    global _lifecycle_manager
    if _lifecycle_manager:
        return _lifecycle_manager

    _lifecycle_manager = PostLifecycleManager(
        LifecycleConfig.from_settings(get_settings()),
        metadata=get_metadata_store(),
        blobs=get_blob_store(),
    )
    return _lifecycle_manager


def get_guest_registry() -> GuestRegistry:
    global _guest_registry
    if _guest_registry:
        return _guest_registry

    _guest_registry = GuestRegistry(get_metadata_store())
    return _guest_registry


def reset_dependencies() -> None:
    """Drop all singletons (used on shutdown and in tests)."""
    global _metadata_store, _blob_store, _sweep_lock, _lifecycle_manager, _guest_registry
    if _lifecycle_manager is not None:
        _lifecycle_manager.close()
    _metadata_store = None
    _blob_store = None
    _sweep_lock = None
    _lifecycle_manager = None
    _guest_registry = None
