#!/usr/bin/env python3
"""Run one recommended-jobs pull and log the summary.

Usage:
  python run_agent.py          # synchronous pull
  python run_agent.py --top    # log current top recommendations, no pull
"""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from jobby.config import PROFILE_PATH, ensure_dirs, get_db_path, load_weights
from jobby.errors import ConfigurationError
from jobby.log import get_logger
from jobby.store import SQLiteStore

log = get_logger(__name__)


def _check_setup() -> bool:
    """Return True if first-run setup is needed."""
    if not PROFILE_PATH.exists():
        log.error("No profile found at %s — copy config/profile.example.yaml and edit it", PROFILE_PATH)
        return True
    return False


def _log_top(store: SQLiteStore) -> None:
    from jobby.recommended import quota_alert, top_recommendations

    if quota_alert(store):
        log.warning("Latest run failed on API quota — add or rotate JSEARCH_API_KEYS")
    for rec in top_recommendations(store, load_weights()):
        log.info("  #%d  %5.1f  %s @ %s", rec.rank, rec.score, rec.listing.title, rec.listing.company)


if __name__ == "__main__":
    ensure_dirs()
    with SQLiteStore(get_db_path()) as store:
        if "--top" in sys.argv:
            _log_top(store)
            sys.exit(0)

        if _check_setup():
            sys.exit(1)

        from jobby.runner import RecommendedRunner
        from jobby.sources import get_search_client

        try:
            runner = RecommendedRunner(store, get_search_client())
            summary = runner.run()
        except ConfigurationError as exc:
            log.error("%s", exc)
            sys.exit(2)
        runner.shutdown()

        log.info("Run %d %s.", summary.run_id, summary.status)
        log.info("  Fetched: %d", summary.total_fetched)
        log.info("  New: %d  Duplicates: %d", summary.new_jobs, summary.duplicates)
        log.info("  Matches: %d", summary.matches)
        if summary.error_message:
            log.info("  Last error: %s", summary.error_message)
        _log_top(store)
        sys.exit(0 if summary.status != "failed" else 1)
