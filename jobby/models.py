"""Data models for listings, preferences, weights, runs and matches."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from jobby.log import get_logger

log = get_logger(__name__)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED})

MAX_PROFILE_ITEMS = 5

HIGHLIGHT_SECTIONS = ("Qualifications", "Responsibilities", "Benefits")


@dataclass
class Listing:
    title: str
    company: str
    source: str = "jsearch"
    source_job_id: str | None = None
    id: int | None = None
    company_logo: str | None = None
    location: str = ""
    city: str | None = None
    state: str | None = None
    country: str | None = None
    is_remote: bool = False
    description: str = ""
    highlights: dict[str, list[str]] = field(default_factory=dict)
    benefits: list[str] = field(default_factory=list)
    salary_min: float | None = None
    salary_max: float | None = None
    salary_period: str | None = None
    employment_type: str | None = None
    apply_url: str = ""
    canonical_url: str | None = None
    fingerprint: str = ""
    posted_at: datetime | None = None
    discovered_at: datetime | None = None
    ignored: bool = False

    def highlight_text(self, *sections: str) -> str:
        wanted = sections or HIGHLIGHT_SECTIONS
        parts: list[str] = []
        for name in wanted:
            parts.extend(str(item) for item in self.highlights.get(name) or [])
        return " ".join(parts)


def to_number(value: Any) -> float | None:
    """Lenient numeric parse for config and upstream fields: "120000", 120000
    and 1.2e5 all work; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip()) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _str_list(value: Any, name: str, limit: int | None = None) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    items = [str(v).strip() for v in value if str(v).strip()]
    if limit is not None and len(items) > limit:
        log.warning("Profile %s has %d entries; keeping the first %d", name, len(items), limit)
        items = items[:limit]
    return items


@dataclass
class PreferenceProfile:
    target_titles: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    preferred_locations: list[str] = field(default_factory=list)
    remote_preferred: bool = False
    citizenship_not_required: bool = False
    seniority: str = ""
    years_of_experience: Any = None
    role_types: list[str] = field(default_factory=list)
    work_mode_preference: str = ""
    min_salary: float | None = None
    max_salary: float | None = None
    education: str = ""
    industries: list[str] = field(default_factory=list)
    company_size_preference: str = ""
    avoid_keywords: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PreferenceProfile":
        data = dict(data or {})
        return cls(
            target_titles=_str_list(data.get("target_titles"), "target_titles", MAX_PROFILE_ITEMS),
            skills=_str_list(data.get("skills"), "skills", MAX_PROFILE_ITEMS),
            preferred_locations=_str_list(
                data.get("preferred_locations"), "preferred_locations", MAX_PROFILE_ITEMS
            ),
            remote_preferred=bool(data.get("remote_preferred", False)),
            citizenship_not_required=bool(data.get("citizenship_not_required", False)),
            seniority=str(data.get("seniority") or "").lower().strip(),
            years_of_experience=data.get("years_of_experience"),
            role_types=_str_list(data.get("role_types"), "role_types"),
            work_mode_preference=str(data.get("work_mode_preference") or "").lower().strip(),
            min_salary=to_number(data.get("min_salary")),
            max_salary=to_number(data.get("max_salary")),
            education=str(data.get("education") or "").lower().strip(),
            industries=_str_list(data.get("industries"), "industries"),
            company_size_preference=str(data.get("company_size_preference") or "").lower().strip(),
            avoid_keywords=_str_list(data.get("avoid_keywords"), "avoid_keywords"),
        )

    def wants_remote(self) -> bool:
        return self.work_mode_preference == "remote" or self.remote_preferred


@dataclass
class ScoringRule:
    """One row of a user-configured rule table."""

    pattern: str
    weight: float = 0.0
    effect: str = "boost"
    count_once: bool = True
    disqualify: bool = False


@dataclass
class Weights:
    weight_skill_match: float = 10
    weight_target_title: float = 10
    weight_recency_day1: float = 30
    weight_recency_day3: float = 20
    weight_recency_week: float = 10
    weight_remote_match: float = 15
    weight_work_mode_match: float = 10
    weight_onsite_match: float = 5
    weight_seniority_match: float = 20
    weight_seniority_mismatch: float = -15
    weight_salary_overlap: float = 15
    weight_salary_below: float = -20
    weight_industry_match: float = 10
    weight_education_meet: float = 5
    weight_education_under: float = -10
    weight_company_size: float = 10
    weight_exp_meet: float = 10
    weight_exp_under: float = -15
    weight_citizenship: float = -50
    weight_opt_cpt_boost: float = 20
    weight_avoid_keyword: float = -15
    min_score: float = 50
    expiry_days: int = 5
    recommended_num_pages: int = 1
    recommended_date_posted: str = "week"
    country: str = "us"
    radius: int | None = None
    exclude_publishers: list[str] = field(default_factory=list)
    scoring_mode: str = "fixed"
    rules: list[ScoringRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Weights":
        """Build weights from a settings mapping; unknown keys are ignored and
        missing or null values fall back to the defaults."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known or value is None:
                continue
            if key == "rules":
                value = [r if isinstance(r, ScoringRule) else ScoringRule(**r) for r in value]
            kwargs[key] = value
        return cls(**kwargs)


@dataclass
class QueryDescriptor:
    query: str
    work_from_home: bool = False
    page: int = 1
    num_pages: int = 1
    country: str | None = None
    date_posted: str | None = None
    employment_types: str | None = None
    job_requirements: str | None = None
    radius: int | None = None
    exclude_job_publishers: str | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {"query": self.query}
        if self.page:
            params["page"] = str(self.page)
        if self.num_pages:
            params["num_pages"] = str(self.num_pages)
        if self.country:
            params["country"] = self.country
        if self.date_posted:
            params["date_posted"] = self.date_posted
        if self.work_from_home:
            params["work_from_home"] = "true"
        if self.employment_types:
            params["employment_types"] = self.employment_types
        if self.job_requirements:
            params["job_requirements"] = self.job_requirements
        if self.radius:
            params["radius"] = str(self.radius)
        if self.exclude_job_publishers:
            params["exclude_job_publishers"] = self.exclude_job_publishers
        return params


@dataclass
class ScoreResult:
    score: float
    disqualified: bool = False
    reasons: list[str] = field(default_factory=list)


@dataclass
class Run:
    id: int
    status: str
    run_at: datetime
    total_fetched: int = 0
    new_jobs: int = 0
    duplicates: int = 0
    error_message: str | None = None
    params_json: str = "{}"
    cancel_requested: bool = False


@dataclass
class Match:
    run_id: int
    listing_id: int
    score: float
    rank: int | None = None


@dataclass
class RunSummary:
    run_id: int
    status: str
    total_fetched: int
    new_jobs: int
    duplicates: int
    queries_planned: int
    queries_failed: int
    matches: int
    error_message: str | None = None
