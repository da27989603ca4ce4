# FinShadow Intel - Feed Fetcher
#
# Retrieves one raw JSON payload per feed source over HTTP.
#
# A failure of any kind (timeout, transport error, HTTP status >= 400,
# non-JSON body) raises FetchError.  There is no retry inside a cycle:
# the orchestrator skips the source and the next scheduled poll is the
# retry.
#
# OTX pulse listings are paginated through a ``next`` URL; pages are
# merged into a single ``{"results": [...]}`` payload.

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from .models import FormatTag
from .sources import FeedSource

logger = logging.getLogger(__name__)

USER_AGENT = "FinShadow/0.1"
REQUEST_TIMEOUT_SEC = 30
DEFAULT_MAX_PAGES = 10


class FeedFetcher:
    """HTTP fetcher for feed sources.

    Usage::

        fetcher = FeedFetcher(timeout_seconds=30)
        payload = fetcher.fetch(source)
    """

    def __init__(
        self,
        timeout_seconds: float = REQUEST_TIMEOUT_SEC,
        max_pages: int = DEFAULT_MAX_PAGES,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_pages = max_pages

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, source: FeedSource) -> Any:
        """Fetch the current payload for ``source``.

        Raises:
            FetchError: On timeout, transport error, HTTP error status or
                an undecodable body.
        """
        if source.format_tag == FormatTag.OTX_PULSE:
            return self._fetch_paginated(source)
        return self._get_json(source, source.endpoint)

    def health_check(self, source: FeedSource) -> bool:
        """Return True when the source endpoint answers with a JSON body."""
        try:
            self._get_json(source, source.endpoint)
            return True
        except FetchError as exc:
            logger.warning("Health check failed for %s: %s", source.source_id, exc)
            return False

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self, source: FeedSource) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if source.api_key_env and source.api_key_header:
            key = os.environ.get(source.api_key_env)
            if key:
                headers[source.api_key_header] = key
        return headers

    def _get_json(
        self,
        source: FeedSource,
        url: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            resp = httpx.request(
                "GET",
                url,
                headers=self._headers(source),
                params=params,
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise FetchError(
                source.source_id, f"timed out after {self.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(source.source_id, f"request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise FetchError(source.source_id, f"HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(source.source_id, "response body is not JSON") from exc

    def _fetch_paginated(self, source: FeedSource) -> Dict[str, List[Any]]:
        """Follow OTX ``next`` links up to ``max_pages`` pages."""
        results: List[Any] = []
        url: Optional[str] = source.endpoint
        page = 0

        while url and page < self.max_pages:
            data = self._get_json(source, url, params={"limit": "50"} if page == 0 else None)
            if not isinstance(data, dict):
                raise FetchError(source.source_id, "expected a JSON object of pulses")
            page_results = data.get("results") or []
            if not isinstance(page_results, list):
                raise FetchError(source.source_id, "'results' is not a list of pulses")
            results.extend(page_results)
            url = data.get("next")
            page += 1

        if url:
            logger.info(
                "%s: stopped after %d pages (more available)", source.source_id, page
            )
        logger.debug("%s: fetched %d pulses", source.source_id, len(results))
        return {"results": results}


class FetchError(Exception):
    """Raised when a feed cannot be retrieved for this cycle."""

    def __init__(self, source_id: str, reason: str):
        super().__init__(f"{source_id}: {reason}")
        self.source_id = source_id
        self.reason = reason
