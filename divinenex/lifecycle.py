"""
Post lifecycle manager.

Owns a post from publish to deletion across two independent stores:

    PENDING -> LIVE -> EXPIRED -> DELETED

Publishing uploads the attachment first and writes metadata second, so a post
never references a blob that does not exist. The periodic sweep deletes
expired posts and their blobs; ``reconcile_orphans`` removes blobs that no
post references (uploads whose metadata write failed, or blobs abandoned after
the delete budget ran out).
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional

from divinenex.config import LifecycleConfig
from divinenex.db import MetadataStore
from divinenex.errors import AttachmentError, DivineNexError, StoreError, ValidationError
from divinenex.models import Attachment, AttachmentUpload, Post, PostState, now_ms
from divinenex.storage import BlobStoreClient

logger = logging.getLogger(__name__)


class CallPolicy(enum.Enum):
    FATAL = "fatal"
    LOG_AND_IGNORE = "log_and_ignore"
    RETRY_NEXT_CYCLE = "retry_next_cycle"


# What happens when each external call fails or times out.
CALL_POLICIES: dict[str, CallPolicy] = {
    "blob.upload": CallPolicy.FATAL,
    "blob.make_public": CallPolicy.LOG_AND_IGNORE,
    "metadata.create_post": CallPolicy.FATAL,
    "metadata.list_recent_posts": CallPolicy.LOG_AND_IGNORE,
    "metadata.find_expired": CallPolicy.RETRY_NEXT_CYCLE,
    "blob.delete": CallPolicy.RETRY_NEXT_CYCLE,
    "metadata.record_delete_attempt": CallPolicy.RETRY_NEXT_CYCLE,
    "metadata.delete_post": CallPolicy.RETRY_NEXT_CYCLE,
    "blob.list": CallPolicy.RETRY_NEXT_CYCLE,
    "metadata.referenced_blob_ids": CallPolicy.RETRY_NEXT_CYCLE,
}

# Error raised to the caller when a FATAL call fails.
FATAL_ERRORS: dict[str, type[DivineNexError]] = {
    "blob.upload": AttachmentError,
    "metadata.create_post": StoreError,
}


@dataclass(frozen=True)
class CallOutcome:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class PublishResult:
    post_id: str
    post: Post


@dataclass
class SweepReport:
    expired: int = 0
    deleted: int = 0
    blob_failures: int = 0
    post_failures: int = 0
    abandoned_blobs: int = 0

    def as_dict(self) -> dict:
        return {
            "expired": self.expired,
            "deleted": self.deleted,
            "blob_failures": self.blob_failures,
            "post_failures": self.post_failures,
            "abandoned_blobs": self.abandoned_blobs,
        }


class PostLifecycleManager:
    def __init__(
        self,
        config: LifecycleConfig,
        metadata: MetadataStore,
        blobs: BlobStoreClient,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.metadata = metadata
        self.blobs = blobs
        self.clock = clock
        self._io_pool = ThreadPoolExecutor(
            max_workers=max(4, config.sweep_concurrency * 2),
            thread_name_prefix="divinenex-io",
        )
        self._sweep_pool = ThreadPoolExecutor(
            max_workers=config.sweep_concurrency,
            thread_name_prefix="divinenex-sweep",
        )

    def close(self) -> None:
        self._sweep_pool.shutdown(wait=True)
        self._io_pool.shutdown(wait=False, cancel_futures=True)

    def _compensations(self) -> dict[str, Callable[[Any], Any]]:
        """Undo actions for FATAL calls that finish after the caller gave up."""
        return {
            "blob.upload": lambda ref: self.blobs.delete(ref.id),
            "metadata.create_post": self.metadata.delete_post,
        }

    def _undo_late_success(self, call: str, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        undo = self._compensations().get(call)
        if undo is None:
            return
        try:
            undo(future.result())
            logger.warning("%s finished after its timeout and was rolled back", call)
        except Exception:
            logger.exception("Could not roll back late %s", call)

    def _invoke(self, call: str, func: Callable[..., Any], *args, **kwargs) -> CallOutcome:
        """Run one external call with the configured timeout and failure policy."""
        policy = CALL_POLICIES[call]
        timeout = self.config.call_timeout_seconds
        future = self._io_pool.submit(func, *args, **kwargs)
        try:
            return CallOutcome(ok=True, value=future.result(timeout=timeout))
        except FutureTimeoutError as exc:
            error: BaseException = TimeoutError(f"{call} timed out after {timeout}s")
            error.__cause__ = exc
            # Queued calls never start; running ones are undone if they succeed.
            if not future.cancel() and policy is CallPolicy.FATAL:
                future.add_done_callback(lambda done: self._undo_late_success(call, done))
        except Exception as exc:
            error = exc

        if policy is CallPolicy.FATAL:
            logger.error("%s failed: %s", call, error, exc_info=error)
            error_cls = FATAL_ERRORS[call]
            if isinstance(error, DivineNexError) and isinstance(error, error_cls):
                raise error
            reason = getattr(error, "reason", None) if isinstance(error, DivineNexError) else None
            raise error_cls(f"{call} failed: {error}", reason=reason) from error
        if policy is CallPolicy.RETRY_NEXT_CYCLE:
            logger.warning("%s failed, will retry next cycle: %s", call, error)
        else:
            logger.warning("%s failed, ignoring: %s", call, error)
        return CallOutcome(ok=False, error=error)

    # ------------------------------------------------------------------
    # Publish

    def _validate(self, guest_id: str, title: str, text: Optional[str]) -> None:
        if not guest_id or not guest_id.strip():
            raise ValidationError("guestId is required", reason="missing_guest_id")
        if not title or not title.strip():
            raise ValidationError("title is required", reason="missing_title")
        if text:
            words = len(text.split())
            if words > self.config.max_text_words:
                raise ValidationError(
                    f"text has {words} words, limit is {self.config.max_text_words}",
                    reason="text_too_long",
                )

    def _validate_attachment(self, attachment: AttachmentUpload) -> None:
        if attachment.size == 0:
            raise AttachmentError("attachment is empty", reason="empty_attachment")
        if attachment.size > self.config.max_attachment_bytes:
            raise AttachmentError(
                f"attachment is {attachment.size} bytes, limit is "
                f"{self.config.max_attachment_bytes}",
                reason="attachment_too_large",
            )
        allowed = self.config.allowed_mime_types
        if allowed and not any(
            attachment.mime_type == t or (t.endswith("/") and attachment.mime_type.startswith(t))
            for t in allowed
        ):
            raise AttachmentError(
                f"attachment type {attachment.mime_type!r} is not allowed",
                reason="unsupported_type",
            )

    def publish(
        self,
        guest_id: str,
        title: str,
        text: Optional[str] = None,
        attachment: Optional[AttachmentUpload] = None,
    ) -> PublishResult:
        self._validate(guest_id, title, text)
        if attachment is not None:
            self._validate_attachment(attachment)
        guest_id = guest_id.strip()
        title = title.strip()

        stored_attachment = None
        if attachment is not None:
            logger.info(
                "[%s] %s: uploading %s (%d bytes)",
                guest_id, PostState.PENDING.value, attachment.name, attachment.size,
            )
            ref = self._invoke(
                "blob.upload",
                self.blobs.upload,
                attachment.name,
                attachment.mime_type,
                attachment.content,
            ).value
            self._invoke("blob.make_public", self.blobs.make_public, ref.id)
            stored_attachment = Attachment(blob_id=ref.id, url=ref.url, name=ref.name)

        created_at = self.clock()
        post = Post(
            guest_id=guest_id,
            title=title,
            text=text,
            attachment=stored_attachment,
            created_at=created_at,
            expires_at=created_at + self.config.ttl_ms,
        )
        if self.config.post_id_scheme == "derived":
            post.id = f"{guest_id}_{created_at}"

        post.id = self._invoke("metadata.create_post", self.metadata.create_post, post).value
        logger.info("[%s] %s: post %s expires at %d", guest_id, PostState.LIVE.value, post.id, post.expires_at)
        return PublishResult(post_id=post.id, post=post)

    # ------------------------------------------------------------------
    # Listing

    def list_recent_posts(self, limit: Optional[int] = None) -> list[Post]:
        """Newest posts first; degrades to an empty list when the store fails."""
        cap = self.config.listing_limit
        limit = cap if limit is None else max(1, min(limit, cap))
        outcome = self._invoke(
            "metadata.list_recent_posts",
            lambda: list(self.metadata.list_recent_posts(limit)),
        )
        return outcome.value if outcome.ok else []

    # ------------------------------------------------------------------
    # Sweep

    def _expire_one(self, post: Post) -> tuple[bool, bool, bool]:
        """Returns (deleted, blob_failed, blob_abandoned) for one expired post."""
        blob_failed = False
        abandoned = False
        if post.attachment is not None:
            if not self._invoke("blob.delete", self.blobs.delete, post.attachment.blob_id).ok:
                blob_failed = True
                attempts = self._invoke(
                    "metadata.record_delete_attempt",
                    self.metadata.record_delete_attempt,
                    post.id,
                )
                count = attempts.value if attempts.ok else post.delete_attempts + 1
                if count < self.config.max_delete_attempts:
                    # Keep the record so the next sweep retries the blob.
                    return False, True, False
                logger.warning(
                    "Abandoning blob %s of post %s after %d attempts",
                    post.attachment.blob_id, post.id, count,
                )
                abandoned = True

        deleted = self._invoke("metadata.delete_post", self.metadata.delete_post, post.id).ok
        if deleted:
            logger.info("Post %s %s", post.id, PostState.DELETED.value)
        return deleted, blob_failed, abandoned

    def sweep(self, now: Optional[int] = None) -> SweepReport:
        now = self.clock() if now is None else now
        report = SweepReport()
        outcome = self._invoke("metadata.find_expired", self.metadata.find_expired, now)
        if not outcome.ok:
            return report
        expired: list[Post] = outcome.value
        report.expired = len(expired)
        if not expired:
            return report

        for deleted, blob_failed, abandoned in self._sweep_pool.map(self._expire_one, expired):
            if deleted:
                report.deleted += 1
            elif not blob_failed or abandoned:
                report.post_failures += 1
            if blob_failed:
                report.blob_failures += 1
            if abandoned:
                report.abandoned_blobs += 1
        logger.info("Sweep complete: %s", report.as_dict())
        return report

    # ------------------------------------------------------------------
    # Reconciliation

    def reconcile_orphans(self, now: Optional[int] = None) -> int:
        """Delete blobs that no post references and that are past the grace window."""
        now = self.clock() if now is None else now
        listing = self._invoke("blob.list", lambda: list(self.blobs.list_blobs()))
        if not listing.ok:
            return 0
        referenced = self._invoke(
            "metadata.referenced_blob_ids", self.metadata.referenced_blob_ids
        )
        if not referenced.ok:
            return 0

        cutoff = now - self.config.reconcile_grace_ms
        orphans = [
            blob.id
            for blob in listing.value
            if blob.id not in referenced.value and blob.created_at <= cutoff
        ]
        removed = 0
        for blob_id in orphans:
            if self._invoke("blob.delete", self.blobs.delete, blob_id).ok:
                removed += 1
        if orphans:
            logger.info("Reconciled %d of %d orphaned blobs", removed, len(orphans))
        return removed
