"""
Error taxonomy for the post lifecycle.

Every error carries a machine-readable ``kind`` (the class name) and a
``reason`` code so the HTTP layer can return structured failures.
"""

from __future__ import annotations

from typing import Any, Dict


class DivineNexError(Exception):
    """Base class for all errors raised by the backend."""

    default_reason = "error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason or self.default_reason

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "message": str(self)}


class ValidationError(DivineNexError):
    """Bad or missing input. Raised before any store is touched."""

    default_reason = "invalid_input"


class AttachmentError(DivineNexError):
    """Attachment rejected or blob upload failed; no post was created."""

    default_reason = "upload_failed"


class StoreError(DivineNexError):
    """Metadata store read or write failed."""

    default_reason = "store_unavailable"


class UploadError(DivineNexError):
    """Raised by blob store clients when an upload cannot complete."""

    default_reason = "upload_failed"


class PermissionGrantFailure(DivineNexError):
    """Public-read grant failed. Never fatal to a publish."""

    default_reason = "grant_failed"


class DeleteFailure(DivineNexError):
    """Blob or metadata deletion failed; retried on the next sweep."""

    default_reason = "delete_failed"
