"""
Recommended-jobs run orchestrator.

One run: plan queries → for each query: search → resolve identity → rescore
everything seen so far → persist matches. Runs execute either synchronously
(``run``) or in a background worker (``start``); both go through
``execute_run``.
"""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from jobby.config import load_profile, load_weights
from jobby.dedup import resolve_listing
from jobby.errors import SearchError, StoreError
from jobby.log import get_logger, get_run_logger
from jobby.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    PreferenceProfile,
    QueryDescriptor,
    Run,
    RunSummary,
    Weights,
)
from jobby.planner import plan_queries
from jobby.scorer import Scorer, build_scorer
from jobby.sources.base import SearchClient

log = get_logger(__name__)


class CancelToken:
    """Cooperative cancellation for one run.

    Set in-process through ``cancel()``, or durably through the store's
    ``cancel_requested`` marker so any holder of the run id can stop it.
    """

    def __init__(self, run_id: int | None = None, store=None) -> None:
        self.run_id = run_id
        self._store = store
        self._event = threading.Event()

    def bind(self, run_id: int, store) -> None:
        self.run_id = run_id
        self._store = store

    def cancel(self) -> None:
        self._event.set()
        if self._store is not None and self.run_id is not None:
            self._store.request_cancel(self.run_id)

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        if self._store is not None and self.run_id is not None:
            if self._store.cancel_requested(self.run_id):
                self._event.set()
                return True
        return False


@dataclass
class RunHandle:
    run_id: int
    token: CancelToken
    future: Future

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> RunSummary:
        return self.future.result(timeout=timeout)


def _params_snapshot(profile: PreferenceProfile, queries: list[QueryDescriptor]) -> dict:
    return {
        "target_titles": profile.target_titles,
        "locations": profile.preferred_locations,
        "remote": profile.wants_remote(),
        "queries": [q.query for q in queries],
    }


class RecommendedRunner:
    def __init__(
        self,
        store,
        client: SearchClient,
        *,
        profile_loader: Callable[[], PreferenceProfile] = load_profile,
        weights_loader: Callable[[], Weights] = load_weights,
        scorer: Scorer | None = None,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 2,
    ) -> None:
        self.store = store
        self.client = client
        self.profile_loader = profile_loader
        self.weights_loader = weights_loader
        self.scorer = scorer
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="jobby-run")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # -- entry points -------------------------------------------------------

    def _prepare(self) -> tuple[Run, PreferenceProfile, Weights, list[QueryDescriptor]]:
        profile = self.profile_loader()
        weights = self.weights_loader() or Weights()
        # raises ProfileNotConfiguredError before any run exists
        queries = plan_queries(profile, weights)
        run = self.store.create_run(RUN_RUNNING, _params_snapshot(profile, queries))
        get_run_logger(__name__, run.id).info("Started — %d queries planned", len(queries))
        return run, profile, weights, queries

    def run(self, token: CancelToken | None = None) -> RunSummary:
        """Block until the run reaches a terminal state."""
        run, profile, weights, queries = self._prepare()
        token = token or CancelToken()
        token.bind(run.id, self.store)
        return self.execute_run(run, profile, weights, token, queries=queries)

    def start(self) -> RunHandle:
        """Create the run and execute it in the background; returns at once."""
        run, profile, weights, queries = self._prepare()
        token = CancelToken(run.id, self.store)
        future = self._executor.submit(
            self.execute_run, run, profile, weights, token, queries=queries
        )
        future.add_done_callback(self._log_background_failure)
        return RunHandle(run_id=run.id, token=token, future=future)

    def cancel(self, run_id: int) -> bool:
        """Request cancellation; honoured at the next query checkpoint."""
        ok = self.store.request_cancel(run_id)
        if ok:
            log.info("Cancellation requested for run %d", run_id)
        return ok

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            log.error("Background run failed: %s", exc)

    # -- execution ----------------------------------------------------------

    def execute_run(
        self,
        run: Run,
        profile: PreferenceProfile,
        weights: Weights,
        token: CancelToken,
        queries: list[QueryDescriptor] | None = None,
    ) -> RunSummary:
        rlog = get_run_logger(__name__, run.id)
        scorer = self.scorer or build_scorer(weights)
        # every scoring pass of a run sees the same clock
        now = self.clock()

        total_fetched = 0
        new_jobs = 0
        duplicates = 0
        attempted = 0
        failed = 0
        last_error: str | None = None
        listing_ids: list[int] = []
        seen_ids: set[int] = set()
        cancelled = False

        try:
            if queries is None:
                queries = plan_queries(profile, weights)

            for i, q in enumerate(queries, start=1):
                if token.is_set():
                    cancelled = True
                    rlog.info("Cancelled before query %d/%d", i, len(queries))
                    break

                attempted += 1
                try:
                    hits = self.client.search(q)
                except SearchError as exc:
                    failed += 1
                    last_error = str(exc)
                    rlog.error("Query %r failed: %s", q.query, exc)
                    continue

                fresh = dupes = 0
                for raw in hits:
                    total_fetched += 1
                    try:
                        result = resolve_listing(raw, self.store)
                    except StoreError as exc:
                        rlog.warning("Could not store listing: %s", exc)
                        continue
                    if result.is_new:
                        fresh += 1
                    else:
                        dupes += 1
                    if result.listing_id not in seen_ids:
                        seen_ids.add(result.listing_id)
                        listing_ids.append(result.listing_id)
                new_jobs += fresh
                duplicates += dupes
                rlog.info(
                    "Query %d/%d %r — fetched=%d new=%d duplicates=%d",
                    i, len(queries), q.query, len(hits), fresh, dupes,
                )

                self._persist_matches(run.id, listing_ids, profile, weights, scorer, now)
                self._update_progress(run.id, total_fetched, new_jobs, duplicates)

            cancelled = cancelled or token.is_set()
            matches = self._persist_matches(run.id, listing_ids, profile, weights, scorer, now)

            if cancelled:
                status = RUN_CANCELLED
            elif attempted and failed == attempted and total_fetched == 0:
                status = RUN_FAILED
            else:
                status = RUN_COMPLETED

            self.store.update_run(
                run.id,
                status=status,
                total_fetched=total_fetched,
                new_jobs=new_jobs,
                duplicates=duplicates,
                error_message=last_error,
            )
        except Exception as exc:
            rlog.exception("Run failed")
            try:
                self.store.update_run(
                    run.id,
                    status=RUN_FAILED,
                    total_fetched=total_fetched,
                    new_jobs=new_jobs,
                    duplicates=duplicates,
                    error_message=str(exc),
                )
            except StoreError as store_exc:
                rlog.error("Could not record failure: %s", store_exc)
            raise

        rlog.info(
            "Run %s — fetched=%d, new=%d, duplicates=%d, matches=%d, failed queries=%d",
            status, total_fetched, new_jobs, duplicates, matches, failed,
        )
        return RunSummary(
            run_id=run.id,
            status=status,
            total_fetched=total_fetched,
            new_jobs=new_jobs,
            duplicates=duplicates,
            queries_planned=len(queries),
            queries_failed=failed,
            matches=matches,
            error_message=last_error,
        )

    def _update_progress(self, run_id: int, total_fetched: int, new_jobs: int, duplicates: int) -> None:
        try:
            self.store.update_run(
                run_id, total_fetched=total_fetched, new_jobs=new_jobs, duplicates=duplicates
            )
        except StoreError as exc:
            get_run_logger(__name__, run_id).warning("Could not record progress: %s", exc)

    def _persist_matches(
        self,
        run_id: int,
        listing_ids: list[int],
        profile: PreferenceProfile,
        weights: Weights,
        scorer: Scorer,
        now: datetime,
    ) -> int:
        """Rescore every listing seen in this run and upsert the ones that clear
        ``min_score``; listings that no longer clear it lose their match.
        Returns how many matches the run now has."""
        if not listing_ids:
            return 0
        scored: list[tuple[float, int]] = []
        dropped: list[int] = []
        for listing in self.store.get_listings(listing_ids):
            result = scorer.score(listing, profile, weights, now=now)
            if result.disqualified or result.score < weights.min_score:
                dropped.append(listing.id)
                continue
            scored.append((result.score, listing.id))

        rlog = get_run_logger(__name__, run_id)
        if dropped:
            try:
                self.store.delete_run_matches(run_id, dropped)
            except StoreError as exc:
                rlog.warning("Could not drop stale matches: %s", exc)

        scored.sort(key=lambda s: (-s[0], s[1]))
        written = 0
        for rank, (score, listing_id) in enumerate(scored, start=1):
            try:
                self.store.upsert_match(run_id, listing_id, score, rank)
                written += 1
            except StoreError as exc:
                rlog.warning("Could not store match for listing %d: %s", listing_id, exc)
        return written
