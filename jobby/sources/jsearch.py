"""JSearch API client with a rotating credential pool."""
from __future__ import annotations

import threading
from typing import Any

import requests

from jobby.config import DEFAULT_API_BASE
from jobby.errors import QuotaExceededError, SearchError
from jobby.log import get_logger
from jobby.models import QueryDescriptor
from jobby.sources.base import SearchClient

log = get_logger(__name__)

_QUOTA_MARKERS = ("quota", "exceeded", "rate limit", "too many requests")


class KeyPool:
    """Round-robin credential pool shared by every caller of one client.

    ``rotate`` only advances when the caller's key is still the current one,
    so two callers failing on the same key move the pool forward once.
    """

    def __init__(self, keys: list[str]) -> None:
        keys = [k for k in keys if k]
        if not keys:
            raise ValueError("KeyPool needs at least one credential")
        self._keys = keys
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> tuple[int, str]:
        with self._lock:
            return self._index, self._keys[self._index]

    def rotate(self, failed_index: int) -> int:
        with self._lock:
            if self._index == failed_index:
                self._index = (self._index + 1) % len(self._keys)
            return self._index


def _is_quota_response(r: requests.Response) -> bool:
    if r.status_code == 429:
        return True
    if r.status_code in (402, 403):
        body = (r.text or "").lower()
        return any(m in body for m in _QUOTA_MARKERS)
    return False


class JSearchClient(SearchClient):
    def __init__(self, pool: KeyPool, base_url: str = DEFAULT_API_BASE, timeout: float = 20) -> None:
        self.pool = pool
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, query: QueryDescriptor, api_key: str) -> requests.Response:
        try:
            return requests.get(
                f"{self.base_url}/search",
                params=query.to_params(),
                headers={"x-api-key": api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SearchError(f"JSearch request failed: {exc}") from exc

    def search(self, query: QueryDescriptor) -> list[dict[str, Any]]:
        last_status: int | None = None
        for _ in range(len(self.pool)):
            index, key = self.pool.current()
            r = self._get(query, key)
            if _is_quota_response(r):
                last_status = r.status_code
                nxt = self.pool.rotate(index)
                log.warning(
                    "JSearch key #%d quota exhausted (%d) — rotating to key #%d",
                    index + 1, r.status_code, nxt + 1,
                )
                continue
            if not r.ok:
                raise SearchError(
                    f"JSearch API error {r.status_code}: {(r.text or '')[:200]}",
                    status_code=r.status_code,
                )
            try:
                data = r.json()
            except ValueError as exc:
                raise SearchError(f"JSearch returned invalid JSON: {exc}", status_code=r.status_code) from exc
            hits = data.get("data") if isinstance(data, dict) else None
            if not isinstance(hits, list):
                hits = []
            log.debug("JSearch query=%r returned %d listings", query.query, len(hits))
            return [h for h in hits if isinstance(h, dict)]

        raise QuotaExceededError(
            f"JSearch API error {last_status}: all {len(self.pool)} API key(s) exceeded quota",
            status_code=last_status,
        )
