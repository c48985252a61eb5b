"""Read-side views over persisted recommendations."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jobby.log import get_logger
from jobby.models import RUN_COMPLETED, RUN_FAILED, Listing, Weights

log = get_logger(__name__)

MAX_PAGE_SIZE = 50


@dataclass
class RecommendedJob:
    listing: Listing
    score: float
    rank: int


def recommended_jobs(store, *, page: int = 1, limit: int = 20) -> dict[str, Any]:
    """Matches of the latest completed run, best first, ignored listings hidden."""
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))
    latest = store.latest_run(RUN_COMPLETED)
    if latest is None:
        return {"jobs": [], "total": 0, "page": page, "total_pages": 0}

    matches = store.matches_for_run(latest.id)
    listings = {item.id: item for item in store.get_listings(m.listing_id for m in matches)}
    visible = [
        RecommendedJob(listing=listings[m.listing_id], score=m.score, rank=m.rank or 0)
        for m in matches
        if m.listing_id in listings and not listings[m.listing_id].ignored
    ]
    visible.sort(key=lambda r: (r.rank or math.inf, -r.score))
    offset = (page - 1) * limit
    return {
        "jobs": visible[offset:offset + limit],
        "total": len(visible),
        "page": page,
        "total_pages": math.ceil(len(visible) / limit),
    }


def top_recommendations(
    store, weights: Weights | None = None, *, limit: int = 5, now: datetime | None = None
) -> list[RecommendedJob]:
    """Best score per listing across completed runs, inside the expiry window."""
    weights = weights or Weights()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=weights.expiry_days)
    best = store.best_matches(posted_since=cutoff)[:limit]
    listings = {item.id: item for item in store.get_listings(m.listing_id for m in best)}
    return [
        RecommendedJob(listing=listings[m.listing_id], score=m.score, rank=i)
        for i, m in enumerate(best, start=1)
        if m.listing_id in listings
    ]


def quota_alert(store) -> bool:
    """True when the newest failed run died on quota and nothing has succeeded since."""
    failed = store.latest_run(RUN_FAILED)
    if failed is None or not failed.error_message:
        return False
    msg = failed.error_message.lower()
    if "429" not in msg and "exceeded" not in msg:
        return False
    completed = store.latest_run(RUN_COMPLETED)
    return completed is None or (failed.run_at, failed.id) > (completed.run_at, completed.id)


def ignore_listing(store, listing_id: int, ignored: bool = True, *, purge_matches: bool = False) -> bool:
    changed = store.set_listing_ignored(listing_id, ignored)
    if changed and ignored and purge_matches:
        removed = store.delete_matches_for_listings([listing_id])
        log.info("Ignored listing %d and removed %d match(es)", listing_id, removed)
    return changed
