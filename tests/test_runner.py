from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from jobby.errors import ProfileNotConfiguredError, SearchError, StoreError
from jobby.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    PreferenceProfile,
    ScoringRule,
    Weights,
)
from jobby.recommended import quota_alert, recommended_jobs
from jobby.runner import CancelToken, RecommendedRunner
from jobby.sources.jsearch import JSearchClient, KeyPool


def _runner(store, client, profile: PreferenceProfile, weights: Weights | None = None) -> RecommendedRunner:
    weights = weights or Weights(min_score=0)
    return RecommendedRunner(
        store,
        client,
        profile_loader=lambda: profile,
        weights_loader=lambda: weights,
    )


@pytest.fixture
def remote_profile() -> PreferenceProfile:
    return PreferenceProfile(target_titles=["Backend Engineer"], remote_preferred=True)


def test_repeated_hits_are_counted_as_duplicates(store, fake_client, make_hit, remote_profile) -> None:
    hits = [make_hit(i) for i in range(10)]
    client = fake_client([hits])
    runner = _runner(store, client, remote_profile)

    summary = runner.run()
    runner.shutdown()

    assert len(client.calls) == 2
    assert summary.status == RUN_COMPLETED
    assert (summary.total_fetched, summary.new_jobs, summary.duplicates) == (20, 10, 10)
    assert store.count_listings() == 10
    run = store.get_run(summary.run_id)
    assert (run.total_fetched, run.new_jobs, run.duplicates) == (20, 10, 10)
    assert len(store.matches_for_run(summary.run_id)) == 10 == summary.matches


def test_matches_are_ranked_by_score(store, fake_client, make_hit) -> None:
    profile = PreferenceProfile(target_titles=["Backend Engineer"], skills=["python"])
    hits = [
        make_hit(1, job_description="No match here."),
        make_hit(2, job_description="python python python"),
        make_hit(3, job_description="python"),
    ]
    client = fake_client([hits, []])
    runner = _runner(store, client, profile)

    summary = runner.run()
    runner.shutdown()

    matches = store.matches_for_run(summary.run_id)
    assert [m.rank for m in matches] == [1, 2, 3]
    assert [m.score for m in matches] == sorted((m.score for m in matches), reverse=True)
    top = store.get_listing(matches[0].listing_id)
    assert top.source_job_id == "job-2"


def test_min_score_filters_matches(store, fake_client, make_hit, remote_profile) -> None:
    client = fake_client([[make_hit(1, job_is_remote=False), make_hit(2)]])
    runner = _runner(store, client, remote_profile, Weights(min_score=20))
    summary = runner.run()
    runner.shutdown()

    matches = store.matches_for_run(summary.run_id)
    assert [store.get_listing(m.listing_id).source_job_id for m in matches] == ["job-2"]


def test_quota_exhaustion_fails_run_but_keeps_previous_recommendations(
    store, fake_client, make_hit, remote_profile, monkeypatch: pytest.MonkeyPatch
) -> None:
    first = _runner(store, fake_client([[make_hit(1), make_hit(2)]]), remote_profile)
    previous = first.run()
    first.shutdown()
    assert previous.status == RUN_COMPLETED

    class QuotaResponse:
        status_code = 429
        text = "Too Many Requests"
        ok = False

    keys_used: list[str] = []

    def fake_get(url: str, params=None, headers=None, timeout=None) -> QuotaResponse:
        keys_used.append(headers["x-api-key"])
        return QuotaResponse()

    monkeypatch.setattr("jobby.sources.jsearch.requests.get", fake_get)
    client = JSearchClient(KeyPool(["k1", "k2"]), base_url="https://api.test/jsearch")
    runner = _runner(store, client, remote_profile)

    summary = runner.run()
    runner.shutdown()

    assert summary.status == RUN_FAILED
    assert summary.total_fetched == 0
    assert summary.queries_failed == 2
    assert "exceeded quota" in store.get_run(summary.run_id).error_message
    assert keys_used == ["k1", "k2", "k1", "k2"]

    page = recommended_jobs(store)
    assert page["total"] == 2
    assert {job.listing.source_job_id for job in page["jobs"]} == {"job-1", "job-2"}
    assert quota_alert(store)


def test_cancel_by_run_id_stops_before_next_query(store, fake_client, make_hit) -> None:
    profile = PreferenceProfile(target_titles=[f"Title {i}" for i in range(5)])
    holder: dict[str, Any] = {}

    def cancel_on_first_call(n: int, _query) -> None:
        if n == 1:
            holder["runner"].cancel(store.latest_run().id)

    client = fake_client([[make_hit(1), make_hit(2)]], on_call=cancel_on_first_call)
    runner = _runner(store, client, profile)
    holder["runner"] = runner

    summary = runner.run()
    runner.shutdown()

    assert summary.queries_planned == 5
    assert len(client.calls) == 1
    assert summary.status == RUN_CANCELLED
    assert store.get_run(summary.run_id).status == RUN_CANCELLED
    assert len(store.matches_for_run(summary.run_id)) == 2


def test_cancel_token_stops_run(store, fake_client, make_hit) -> None:
    profile = PreferenceProfile(target_titles=["A", "B", "C"])
    token = CancelToken()

    def cancel(n: int, _query) -> None:
        if n == 2:
            token.cancel()

    client = fake_client([[make_hit(1)], [make_hit(2)], [make_hit(3)]], on_call=cancel)
    runner = _runner(store, client, profile)
    summary = runner.run(token)
    runner.shutdown()

    assert len(client.calls) == 2
    assert summary.status == RUN_CANCELLED
    assert summary.total_fetched == 2
    assert store.cancel_requested(summary.run_id)


def test_cancelled_before_first_query_is_not_failed(store, fake_client, remote_profile) -> None:
    token = CancelToken()
    token.cancel()
    client = fake_client([[]])
    runner = _runner(store, client, remote_profile)

    summary = runner.run(token)
    runner.shutdown()

    assert client.calls == []
    assert summary.status == RUN_CANCELLED
    assert summary.total_fetched == 0


def test_missing_titles_fail_before_any_run_is_created(store, fake_client) -> None:
    client = fake_client([[]])
    runner = _runner(store, client, PreferenceProfile(skills=["python"]))
    with pytest.raises(ProfileNotConfiguredError):
        runner.run()
    runner.shutdown()
    assert store.latest_run() is None
    assert client.calls == []


def test_one_failing_query_does_not_abort_the_run(store, fake_client, make_hit, remote_profile) -> None:
    client = fake_client([SearchError("JSearch API error 500: boom", status_code=500), [make_hit(1)]])
    runner = _runner(store, client, remote_profile)
    summary = runner.run()
    runner.shutdown()

    assert summary.status == RUN_COMPLETED
    assert summary.queries_failed == 1
    assert summary.total_fetched == 1
    assert summary.error_message == "JSearch API error 500: boom"


def test_every_query_failing_fails_the_run(store, fake_client, remote_profile) -> None:
    client = fake_client([SearchError("JSearch API error 500: boom", status_code=500)])
    runner = _runner(store, client, remote_profile)
    summary = runner.run()
    runner.shutdown()

    assert summary.status == RUN_FAILED
    assert len(client.calls) == 2
    assert not quota_alert(store)


def test_unexpected_error_marks_run_failed_and_propagates(store, fake_client, remote_profile) -> None:
    client = fake_client([RuntimeError("disk on fire")])
    runner = _runner(store, client, remote_profile)
    with pytest.raises(RuntimeError):
        runner.run()
    runner.shutdown()

    run = store.latest_run()
    assert run.status == RUN_FAILED
    assert run.error_message == "disk on fire"


def test_disqualified_listings_are_not_persisted_as_matches(store, fake_client, make_hit, remote_profile) -> None:
    weights = Weights(
        min_score=0,
        scoring_mode="rules",
        rules=[
            ScoringRule(pattern="python", weight=5),
            ScoringRule(pattern="unpaid", disqualify=True),
        ],
    )
    hits = [make_hit(1), make_hit(2, job_description="Unpaid python internship.")]
    runner = _runner(store, fake_client([hits]), remote_profile, weights)
    summary = runner.run()
    runner.shutdown()

    matches = store.matches_for_run(summary.run_id)
    assert [store.get_listing(m.listing_id).source_job_id for m in matches] == ["job-1"]
    assert store.count_listings() == 2


def test_partial_matches_visible_while_run_is_in_progress(store, fake_client, make_hit, remote_profile) -> None:
    seen: dict[str, Any] = {}

    def inspect(n: int, _query) -> None:
        if n == 2:
            run = store.latest_run()
            seen["status"] = run.status
            seen["fetched"] = run.total_fetched
            seen["matches"] = len(store.matches_for_run(run.id))

    client = fake_client([[make_hit(1), make_hit(2)], [make_hit(3)]], on_call=inspect)
    runner = _runner(store, client, remote_profile)
    summary = runner.run()
    runner.shutdown()

    assert seen == {"status": "running", "fetched": 2, "matches": 2}
    assert summary.matches == 3


def test_background_run_returns_handle(store, fake_client, make_hit, remote_profile) -> None:
    client = fake_client([[make_hit(1)]])
    runner = _runner(store, client, remote_profile)

    handle = runner.start()
    summary = handle.result(timeout=10)
    runner.shutdown()

    assert handle.done()
    assert summary.run_id == handle.run_id
    assert summary.status == RUN_COMPLETED
    assert store.get_run(handle.run_id).status == RUN_COMPLETED


def test_background_failure_surfaces_through_handle(store, fake_client, remote_profile) -> None:
    client = fake_client([RuntimeError("worker crashed")])
    runner = _runner(store, client, remote_profile)

    handle = runner.start()
    with pytest.raises(RuntimeError):
        handle.result(timeout=10)
    runner.shutdown()

    assert store.get_run(handle.run_id).status == RUN_FAILED


def test_run_records_params_snapshot(store, fake_client, remote_profile) -> None:
    runner = _runner(store, fake_client([[]]), remote_profile)
    summary = runner.run()
    runner.shutdown()

    run = store.get_run(summary.run_id)
    assert '"Backend Engineer remote"' in run.params_json
    assert summary.status == RUN_COMPLETED


def test_all_scoring_passes_use_the_run_start_clock(store, fake_client, make_hit) -> None:
    start = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    ticks = iter(start + timedelta(hours=2 * i) for i in range(100))
    posted = (start - timedelta(hours=23)).isoformat()
    profile = PreferenceProfile(target_titles=["Platform Engineer"])
    runner = RecommendedRunner(
        store,
        fake_client([[make_hit(1, job_posted_at_datetime_utc=posted)]]),
        profile_loader=lambda: profile,
        weights_loader=lambda: Weights(min_score=25),
        clock=lambda: next(ticks),
    )

    summary = runner.run()
    runner.shutdown()

    stored = [(m.score, m.rank) for m in store.matches_for_run(summary.run_id)]
    assert stored == [(30.0, 1)]
    assert summary.matches == 1


def test_listings_that_stop_qualifying_lose_their_match(store, fake_client, make_hit) -> None:
    # dropping the skill mid-run pushes job-1 under min_score on the next pass
    profile = PreferenceProfile(target_titles=["Backend Engineer", "SRE"], skills=["python"])
    client = fake_client([[make_hit(1)], [make_hit(2, job_description="nothing relevant")]])

    def drop_python(n: int, _query) -> None:
        if n == 2:
            profile.skills = []

    client.on_call = drop_python
    runner = _runner(store, client, profile, Weights(min_score=15))
    summary = runner.run()
    runner.shutdown()

    assert store.matches_for_run(summary.run_id) == []
    assert summary.matches == 0


def test_store_failures_skip_one_listing_and_one_match(
    store, fake_client, make_hit, remote_profile, monkeypatch: pytest.MonkeyPatch
) -> None:
    create_listing = store.create_listing
    upsert_match = store.upsert_match

    def flaky_create(listing):
        if listing.source_job_id == "job-2":
            raise StoreError("disk I/O error")
        return create_listing(listing)

    def flaky_upsert(run_id, listing_id, score, rank=None):
        if store.get_listing(listing_id).source_job_id == "job-3":
            raise StoreError("database is locked")
        return upsert_match(run_id, listing_id, score, rank)

    monkeypatch.setattr(store, "create_listing", flaky_create)
    monkeypatch.setattr(store, "upsert_match", flaky_upsert)

    hits = [make_hit(1), make_hit(2), make_hit(3)]
    runner = _runner(store, fake_client([hits]), remote_profile)
    summary = runner.run()
    runner.shutdown()

    assert summary.status == RUN_COMPLETED
    assert (summary.total_fetched, summary.new_jobs, summary.duplicates) == (6, 2, 2)
    assert sorted(item.source_job_id for item in store.find_listings()) == ["job-1", "job-3"]
    matched = [store.get_listing(m.listing_id).source_job_id for m in store.matches_for_run(summary.run_id)]
    assert matched == ["job-1"]
    assert summary.matches == 1


def test_execute_run_marks_run_failed_when_planning_fails(store, fake_client) -> None:
    runner = _runner(store, fake_client([[]]), PreferenceProfile())
    run = store.create_run("running")

    with pytest.raises(ProfileNotConfiguredError):
        runner.execute_run(run, PreferenceProfile(), Weights(), CancelToken(run.id, store))
    runner.shutdown()

    stored = store.get_run(run.id)
    assert stored.status == RUN_FAILED
    assert "target titles" in stored.error_message


def test_run_log_records_carry_the_run_id(
    store, fake_client, make_hit, remote_profile, caplog: pytest.LogCaptureFixture
) -> None:
    runner = _runner(store, fake_client([[make_hit(1)]]), remote_profile)
    with caplog.at_level(logging.INFO, logger="jobby.runner"):
        summary = runner.run()
    runner.shutdown()

    run_records = [r for r in caplog.records if r.name == "jobby.runner" and hasattr(r, "run_id")]
    assert run_records
    assert {r.run_id for r in run_records} == {summary.run_id}
