"""
Guest profiles and the friend graph.

Guests are keyed by a normalized form of their email and are only ever
upserted; there is no separate create path and no deletion.
"""

from __future__ import annotations

import logging
from typing import Optional

from divinenex.db import MetadataStore
from divinenex.errors import ValidationError
from divinenex.models import Guest, normalize_guest_id, now_ms

logger = logging.getLogger(__name__)


class GuestRegistry:
    def __init__(self, metadata: MetadataStore):
        self.metadata = metadata

    def submit_profile(self, name: str, email: str, phone: str) -> str:
        missing = [
            field
            for field, value in (("name", name), ("email", email), ("phone", phone))
            if not value or not value.strip()
        ]
        if missing:
            raise ValidationError(
                f"missing fields: {', '.join(missing)}", reason="missing_fields"
            )
        guest_id = normalize_guest_id(email)
        self.metadata.upsert_guest(
            guest_id,
            {
                "name": name.strip(),
                "email": email.strip(),
                "phone": phone.strip(),
                "guest_id": guest_id,
                "updated_at": now_ms(),
            },
            merge=True,
        )
        logger.info("Upserted guest %s", guest_id)
        return guest_id

    def add_friend(self, guest_id: str, friend_id: str) -> Optional[Guest]:
        if not guest_id or not friend_id:
            raise ValidationError("guestId and friendId are required", reason="missing_fields")
        if guest_id == friend_id:
            raise ValidationError("a guest cannot befriend themselves", reason="self_friend")
        if self.metadata.get_guest(guest_id) is None:
            return None
        self.metadata.upsert_guest(
            guest_id, {"friends": [friend_id], "updated_at": now_ms()}, merge=True
        )
        return self.metadata.get_guest(guest_id)

    def search(self, term: str, limit: int = 50) -> list[Guest]:
        term = (term or "").strip()
        if not term:
            raise ValidationError("search term is required", reason="missing_query")
        return self.metadata.search_guests(term, limit=limit)
