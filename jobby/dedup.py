"""Identity resolution for fetched listings.

A raw JSearch hit is matched against the store in three tiers, first hit wins:

1. ``(source, source_job_id)`` when the upstream supplied an id
2. canonical apply URL (tracking parameters stripped, query sorted)
3. content fingerprint over employer, title, location and posted date

Only when all three miss is a new listing inserted.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jobby.errors import DuplicateListingError
from jobby.log import get_logger
from jobby.models import Listing, to_number

log = get_logger(__name__)

SOURCE = "jsearch"

TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref", "source"})


@dataclass
class ResolveResult:
    listing_id: int
    is_new: bool


def _is_tracking_param(name: str) -> bool:
    low = name.lower()
    return low.startswith("utm_") or low in TRACKING_PARAMS


def canonicalize_url(url: Any) -> str | None:
    """Apply URL without tracking parameters and with the rest sorted.

    Returns None for anything that is not an absolute http(s)-style URL.
    """
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.netloc:
            return None
        query = parse_qsl(parts.query, keep_blank_values=True)
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    kept = sorted((k, v) for k, v in query if not _is_tracking_param(k))
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", urlencode(kept), parts.fragment)
    )


def compute_fingerprint(
    company: Any, title: Any, location: Any, posted_at: Any
) -> str:
    raw = "|".join(
        ("" if v is None else str(v)).lower().strip()
        for v in (company, title, location, posted_at)
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _parse_posted_at(raw: dict[str, Any]) -> datetime | None:
    value = raw.get("job_posted_at_datetime_utc")
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    ts = raw.get("job_posted_at_timestamp")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _opt_text(value: Any) -> str | None:
    return None if value is None or value == "" else str(value)


def build_listing(raw: dict[str, Any]) -> Listing:
    """Map a raw JSearch hit to an unsaved Listing; tolerant of missing or
    mistyped fields."""
    highlights = raw.get("job_highlights")
    if not isinstance(highlights, dict):
        highlights = {}
    highlights = {
        str(k): [str(item) for item in v] for k, v in highlights.items() if isinstance(v, list)
    }
    benefits = raw.get("job_benefits")
    apply_url = _text(raw.get("job_apply_link"))
    return Listing(
        source=SOURCE,
        source_job_id=_opt_text(raw.get("job_id")),
        title=_text(raw.get("job_title")),
        company=_text(raw.get("employer_name")),
        company_logo=_opt_text(raw.get("employer_logo")),
        location=_text(raw.get("job_location")),
        city=_opt_text(raw.get("job_city")),
        state=_opt_text(raw.get("job_state")),
        country=_opt_text(raw.get("job_country")),
        is_remote=bool(raw.get("job_is_remote") or False),
        description=_text(raw.get("job_description")),
        highlights=highlights,
        benefits=[str(b) for b in benefits] if isinstance(benefits, list) else [],
        salary_min=to_number(raw.get("job_min_salary")),
        salary_max=to_number(raw.get("job_max_salary")),
        salary_period=_opt_text(raw.get("job_salary_period")),
        employment_type=_opt_text(raw.get("job_employment_type")),
        apply_url=apply_url,
        canonical_url=canonicalize_url(apply_url),
        fingerprint=compute_fingerprint(
            raw.get("employer_name"),
            raw.get("job_title"),
            raw.get("job_location"),
            raw.get("job_posted_at_datetime_utc"),
        ),
        posted_at=_parse_posted_at(raw),
        discovered_at=datetime.now(timezone.utc),
    )


def _find_existing(listing: Listing, store) -> int | None:
    if listing.source_job_id:
        found = store.find_listing_by_source_id(listing.source, listing.source_job_id)
        if found is not None:
            return found.id
    if listing.canonical_url:
        found = store.find_listing_by_canonical_url(listing.canonical_url)
        if found is not None:
            return found.id
    found = store.find_listing_by_fingerprint(listing.fingerprint)
    if found is not None:
        return found.id
    return None


def resolve_listing(raw: dict[str, Any], store) -> ResolveResult:
    """Return the stored listing id for *raw*, inserting it when unseen.

    Store failures propagate as StoreError.
    """
    if not isinstance(raw, dict):
        raw = {}
    listing = build_listing(raw)

    existing = _find_existing(listing, store)
    if existing is not None:
        return ResolveResult(listing_id=existing, is_new=False)

    try:
        listing_id = store.create_listing(listing)
    except DuplicateListingError:
        # another run inserted the same posting between lookup and insert
        existing = _find_existing(listing, store)
        if existing is None:
            raise
        return ResolveResult(listing_id=existing, is_new=False)

    log.debug("NEW listing id=%d — %r at %s", listing_id, listing.title, listing.company)
    return ResolveResult(listing_id=listing_id, is_new=True)
