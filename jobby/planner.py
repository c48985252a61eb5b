"""Expand a preference profile into concrete JSearch queries."""
from __future__ import annotations

from jobby.errors import ProfileNotConfiguredError
from jobby.log import get_logger
from jobby.models import PreferenceProfile, QueryDescriptor, Weights
from jobby.scorer import profile_years

log = get_logger(__name__)

# skills paired with each title
TOP_SKILLS_FOR_QUERIES = 2

EMPLOYMENT_TYPES: dict[str, str] = {
    "full-time": "FULLTIME",
    "fulltime": "FULLTIME",
    "part-time": "PARTTIME",
    "parttime": "PARTTIME",
    "contract": "CONTRACTOR",
    "contractor": "CONTRACTOR",
    "intern": "INTERN",
    "internship": "INTERN",
}


def _employment_types(role_types: list[str]) -> str | None:
    mapped = [EMPLOYMENT_TYPES.get(r.lower().strip()) for r in role_types]
    kept = list(dict.fromkeys(m for m in mapped if m))
    return ",".join(kept) if kept else None


def _job_requirements(profile: PreferenceProfile) -> str | None:
    years = profile_years(profile.years_of_experience)
    if years is None:
        return None
    if years <= 0:
        return "no_experience"
    if years < 3:
        return "under_3_years_experience"
    return "more_than_3_years_experience"


def plan_queries(profile: PreferenceProfile, weights: Weights | None = None) -> list[QueryDescriptor]:
    """Titles x locations (or titles alone), a remote variant per title when
    remote work is wanted, and skill x title pairs for the top skills."""
    if not profile.target_titles:
        raise ProfileNotConfiguredError()
    weights = weights or Weights()

    shared = {
        "num_pages": max(1, int(weights.recommended_num_pages or 1)),
        "country": weights.country or None,
        "date_posted": weights.recommended_date_posted or None,
        "employment_types": _employment_types(profile.role_types),
        "job_requirements": _job_requirements(profile),
        "radius": weights.radius,
        "exclude_job_publishers": ",".join(weights.exclude_publishers) or None,
    }

    queries: list[QueryDescriptor] = []
    seen: set[tuple[str, bool]] = set()

    def add(text: str, wfh: bool = False) -> None:
        key = (text.lower(), wfh)
        if key in seen:
            return
        seen.add(key)
        queries.append(QueryDescriptor(query=text, work_from_home=wfh, **shared))

    for title in profile.target_titles:
        if profile.preferred_locations:
            for loc in profile.preferred_locations:
                add(f"{title} in {loc}")
        else:
            add(title)
        if profile.wants_remote():
            add(f"{title} remote", wfh=True)

    for skill in profile.skills[:TOP_SKILLS_FOR_QUERIES]:
        for title in profile.target_titles:
            add(f"{skill} {title}")

    log.info("Planned %d queries for %d title(s)", len(queries), len(profile.target_titles))
    return queries
