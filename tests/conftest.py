from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from jobby.models import PreferenceProfile, QueryDescriptor, Weights
from jobby.sources.base import SearchClient
from jobby.store import SQLiteStore


def build_hit(i: int, **overrides: Any) -> dict[str, Any]:
    hit: dict[str, Any] = {
        "job_id": f"job-{i}",
        "job_title": f"Backend Engineer {i}",
        "employer_name": f"Company {i}",
        "employer_logo": None,
        "job_apply_link": f"https://jobs.example.com/apply?id={i}&utm_source=jsearch",
        "job_description": "Build Python services with PostgreSQL.",
        "job_is_remote": True,
        "job_location": "Austin, TX",
        "job_city": "Austin",
        "job_state": "TX",
        "job_country": "US",
        "job_posted_at_datetime_utc": None,
        "job_employment_type": "FULLTIME",
        "job_min_salary": None,
        "job_max_salary": None,
        "job_salary_period": None,
        "job_highlights": {"Qualifications": ["3+ years of Python"]},
    }
    hit.update(overrides)
    return hit


class FakeSearchClient(SearchClient):
    """Replays scripted responses; an Exception entry is raised instead of returned."""

    def __init__(
        self,
        responses: list[Any] | Callable[[int, QueryDescriptor], Any],
        on_call: Callable[[int, QueryDescriptor], None] | None = None,
    ) -> None:
        self.responses = responses
        self.on_call = on_call
        self.calls: list[QueryDescriptor] = []

    def search(self, query: QueryDescriptor) -> list[dict[str, Any]]:
        self.calls.append(query)
        n = len(self.calls)
        if self.on_call is not None:
            self.on_call(n, query)
        if callable(self.responses):
            result = self.responses(n, query)
        else:
            result = self.responses[min(n, len(self.responses)) - 1]
        if isinstance(result, BaseException):
            raise result
        return list(result)


@pytest.fixture
def store(tmp_path: Path):
    with SQLiteStore(tmp_path / "jobby.sqlite3") as s:
        yield s


@pytest.fixture
def make_hit() -> Callable[..., dict[str, Any]]:
    return build_hit


@pytest.fixture
def fake_client() -> type[FakeSearchClient]:
    return FakeSearchClient


@pytest.fixture
def profile() -> PreferenceProfile:
    return PreferenceProfile(
        target_titles=["Backend Engineer"],
        skills=["python"],
        remote_preferred=True,
    )


@pytest.fixture
def weights() -> Weights:
    return Weights(min_score=0)
