"""
Pass-through proxy for the live news feed.
"""

from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class NewsFeedError(Exception):
    pass


def fetch_articles(url: str, timeout: float = REQUEST_TIMEOUT) -> list[dict]:
    """Fetch the article list from a GDELT-style JSON endpoint."""
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("News feed request failed: %s", exc)
        raise NewsFeedError(str(exc)) from exc
    return payload.get("articles") or []
