"""Score listings against the preference profile and weight vector.

Two engines share one ``score(listing, profile, weights, now=None)`` contract:

- ``FixedWeightScorer`` runs the built-in rules below, each adding a signed
  delta, and floors the total at zero.
- ``RuleTableScorer`` evaluates the user's own (pattern, weight, effect,
  count_once, disqualify) rows instead.

``build_scorer`` picks one from ``weights.scoring_mode``.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Protocol

from jobby.log import get_logger
from jobby.models import Listing, PreferenceProfile, ScoreResult, ScoringRule, Weights
from jobby.text import KEYWORD_CAP, contains, count_occurrences

log = get_logger(__name__)


def _normalize(s: str | None) -> str:
    return (s or "").lower().strip()


SENIORITY_KEYWORDS: dict[str, list[str]] = {
    "entry": ["entry-level", "entry level", "new grad", "graduate", "junior", "jr"],
    "junior": ["junior", "jr", "entry-level", "entry level", "associate"],
    "mid": ["mid-level", "mid level", "intermediate"],
    "senior": ["senior", "sr", "lead", "staff", "principal"],
    "lead": ["lead", "staff", "principal", "architect"],
}

# Slack before a "N+ years" requirement counts as a seniority mismatch
SENIORITY_YEARS_SLACK = 2

EDUCATION_RANK: dict[str, int] = {
    "high_school": 1,
    "associate": 2,
    "bachelors": 3,
    "masters": 4,
    "phd": 5,
}

# Highest degree first; the first family that matches is the requirement
DEGREE_PATTERNS: list[tuple[str, list[re.Pattern[str]]]] = [
    ("phd", [re.compile(r"\bph\.?\s?d\b", re.I), re.compile(r"\bdoctora(te|l)\b", re.I)]),
    (
        "masters",
        [
            re.compile(r"\bmaster'?s?\b", re.I),
            re.compile(r"\bm\.s\.", re.I),
            re.compile(r"\bmsc\b", re.I),
            re.compile(r"\bmba\b", re.I),
        ],
    ),
    (
        "bachelors",
        [
            re.compile(r"\bbachelor'?s?\b", re.I),
            re.compile(r"\bb\.s\.", re.I),
            re.compile(r"\bbsc\b", re.I),
            re.compile(r"\bb\.?tech\b", re.I),
            re.compile(r"\bundergraduate degree\b", re.I),
        ],
    ),
]

COMPANY_SIZE_KEYWORDS: dict[str, list[str]] = {
    "startup": ["startup", "start-up", "early-stage", "early stage", "seed", "series a", "series b"],
    "enterprise": [
        "enterprise", "fortune 500", "fortune 100", "multinational",
        "global leader", "10,000+ employees", "large organization",
    ],
}

CITIZENSHIP_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bus\s*citizen", re.I),
    re.compile(r"\bunited\s*states\s*citizen", re.I),
    re.compile(r"\bgreen\s*card", re.I),
    re.compile(r"\bsecurity\s*clearance", re.I),
    re.compile(r"\bclearance\s*required", re.I),
    re.compile(r"\bmust\s*be\s*(legally\s*)?authorized\s*to\s*work", re.I),
    re.compile(r"\bwithout\s*sponsorship", re.I),
    re.compile(r"\bno\s*visa\s*sponsor", re.I),
    re.compile(r"\bpermanent\s*resident", re.I),
    re.compile(r"\bUS\s*Person", re.I),
]

VISA_FRIENDLY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(stem\s*)?opt\b", re.I),
    re.compile(r"\bcpt\b", re.I),
    re.compile(r"\bf-?1\b", re.I),
    re.compile(r"\bh-?1b\s*(transfer|sponsorship)", re.I),
    re.compile(r"(?<!no )\bvisa\s*sponsorship\s*(is\s*)?(available|provided|offered)", re.I),
    re.compile(r"\bwill\s*sponsor", re.I),
]

YEARS_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(\d{1,2})\s*\+\s*(?:years|yrs)", re.I),
    re.compile(r"(?:minimum|at least|min\.?)\s*(?:of\s*)?(\d{1,2})\s*(?:years|yrs)", re.I),
    re.compile(r"(\d{1,2})\s*(?:-|to)\s*\d{1,2}\s*(?:years|yrs)", re.I),
    re.compile(r"(\d{1,2})\s*(?:years|yrs)(?:'|\s*of)?\s*(?:professional\s*|relevant\s*|industry\s*)?experience", re.I),
]

INDUSTRY_CAP = 2
AVOID_PER_KEYWORD_CAP = 2
AVOID_TOTAL_CAP = 5

_PERIOD_MULTIPLIER: dict[str, float] = {
    "hour": 2080, "hourly": 2080,
    "day": 260, "daily": 260,
    "week": 52, "weekly": 52,
    "month": 12, "monthly": 12,
    "year": 1, "yearly": 1, "annual": 1,
}


def _word_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])", re.I)


def _has_word(text: str, keywords: list[str]) -> str | None:
    for kw in keywords:
        if _word_pattern(kw).search(text):
            return kw
    return None


def extract_years_required(text: str) -> int | None:
    """Largest "N years" style requirement in *text*."""
    found: list[int] = []
    for pattern in YEARS_PATTERNS:
        for m in pattern.finditer(text or ""):
            years = int(m.group(1))
            if 0 < years <= 30:
                found.append(years)
    return max(found) if found else None


def profile_years(value) -> float | None:
    """Years of experience from a number or a bucket like "3-5" or "5+"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (list, tuple)):
        years = [y for y in (profile_years(v) for v in value) if y is not None]
        return max(years) if years else None
    nums = re.findall(r"\d+(?:\.\d+)?", str(value))
    return max(float(n) for n in nums) if nums else None


def detect_degree(text: str) -> str | None:
    for level, patterns in DEGREE_PATTERNS:
        if any(p.search(text or "") for p in patterns):
            return level
    return None


def _annualize(amount: float, period: str | None) -> float:
    return amount * _PERIOD_MULTIPLIER.get(_normalize(period), 1)


def listing_text(listing: Listing, *, with_highlights: bool = True) -> str:
    parts = [listing.title, listing.description]
    if with_highlights:
        parts.append(listing.highlight_text())
    return " ".join(p for p in parts if p)


class Scorer(Protocol):
    def score(
        self,
        listing: Listing,
        profile: PreferenceProfile,
        weights: Weights,
        now: datetime | None = None,
    ) -> ScoreResult: ...


class FixedWeightScorer:
    """The built-in rule set; deterministic for a fixed ``now``."""

    def score(
        self,
        listing: Listing,
        profile: PreferenceProfile,
        weights: Weights,
        now: datetime | None = None,
    ) -> ScoreResult:
        now = now or datetime.now(timezone.utc)
        text = listing_text(listing).lower()
        reasons: list[str] = []
        total = 0.0

        total += self._keywords(text, profile.skills, weights.weight_skill_match, "Skill", reasons)
        total += self._keywords(
            text, profile.target_titles, weights.weight_target_title, "Title", reasons
        )
        total += self._recency(listing, weights, now, reasons)
        total += self._work_mode(listing, profile, weights, reasons)
        total += self._seniority(text, profile, weights, reasons)
        total += self._salary(listing, profile, weights, reasons)
        total += self._industry(text, profile, weights, reasons)
        total += self._education(text, profile, weights, reasons)
        total += self._company_size(text, profile, weights, reasons)
        total += self._experience(text, profile, weights, reasons)
        total += self._citizenship(listing_text(listing), profile, weights, reasons)
        total += self._avoid(text, profile, weights, reasons)

        return ScoreResult(score=max(total, 0.0), reasons=reasons)

    @staticmethod
    def _keywords(text: str, keywords: list[str], weight: float, label: str, reasons: list[str]) -> float:
        delta = 0.0
        for kw in keywords:
            n = count_occurrences(text, kw, cap=KEYWORD_CAP)
            if n:
                delta += n * weight
                reasons.append(f"{label}: {kw} x{n}")
        return delta

    @staticmethod
    def _recency(listing: Listing, weights: Weights, now: datetime, reasons: list[str]) -> float:
        if listing.posted_at is None:
            return 0.0
        posted = listing.posted_at
        if posted.tzinfo is None:
            posted = posted.replace(tzinfo=timezone.utc)
        age_days = (now - posted).total_seconds() / 86400
        for limit, weight in (
            (1, weights.weight_recency_day1),
            (3, weights.weight_recency_day3),
            (7, weights.weight_recency_week),
        ):
            if age_days <= limit:
                reasons.append(f"Posted within {limit}d")
                return weight
        return 0.0

    @staticmethod
    def _work_mode(
        listing: Listing, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        mode = profile.work_mode_preference
        if mode == "remote" and listing.is_remote:
            reasons.append("Remote (work mode)")
            return weights.weight_work_mode_match
        if mode == "onsite" and not listing.is_remote:
            reasons.append("On-site (work mode)")
            return weights.weight_onsite_match
        if mode not in ("remote", "onsite", "hybrid") and profile.remote_preferred and listing.is_remote:
            reasons.append("Remote")
            return weights.weight_remote_match
        return 0.0

    @staticmethod
    def _seniority(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        family = SENIORITY_KEYWORDS.get(profile.seniority)
        if not family:
            return 0.0
        hit = _has_word(text, family)
        if hit:
            reasons.append(f"Seniority: {hit}")
            return weights.weight_seniority_match
        required = extract_years_required(text)
        have = profile_years(profile.years_of_experience)
        if required is not None and have is not None and required - have > SENIORITY_YEARS_SLACK:
            reasons.append(f"Seniority mismatch: {required}+ years")
            return weights.weight_seniority_mismatch
        return 0.0

    @staticmethod
    def _salary(
        listing: Listing, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        if profile.min_salary is None and profile.max_salary is None:
            return 0.0
        if listing.salary_min is None and listing.salary_max is None:
            return 0.0
        lo = listing.salary_min if listing.salary_min is not None else listing.salary_max
        hi = listing.salary_max if listing.salary_max is not None else listing.salary_min
        lo = _annualize(lo, listing.salary_period)
        hi = _annualize(hi, listing.salary_period)
        want_lo = profile.min_salary if profile.min_salary is not None else 0
        want_hi = profile.max_salary if profile.max_salary is not None else float("inf")
        if lo <= want_hi and hi >= want_lo:
            reasons.append("Salary overlaps range")
            return weights.weight_salary_overlap
        if profile.min_salary is not None and hi < profile.min_salary:
            reasons.append("Salary below minimum")
            return weights.weight_salary_below
        return 0.0

    @staticmethod
    def _industry(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        matched = [i for i in profile.industries if contains(text, i)][:INDUSTRY_CAP]
        for i in matched:
            reasons.append(f"Industry: {i}")
        return len(matched) * weights.weight_industry_match

    @staticmethod
    def _education(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        have = EDUCATION_RANK.get(profile.education)
        if have is None:
            return 0.0
        required = detect_degree(text)
        if required is None:
            return 0.0
        if have >= EDUCATION_RANK[required]:
            reasons.append(f"Education meets {required}")
            return weights.weight_education_meet
        reasons.append(f"Education below {required}")
        return weights.weight_education_under

    @staticmethod
    def _company_size(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        family = COMPANY_SIZE_KEYWORDS.get(profile.company_size_preference)
        if not family:
            return 0.0
        hit = _has_word(text, family)
        if hit:
            reasons.append(f"Company size: {hit}")
            return weights.weight_company_size
        return 0.0

    @staticmethod
    def _experience(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        have = profile_years(profile.years_of_experience)
        if have is None:
            return 0.0
        required = extract_years_required(text)
        if required is None:
            return 0.0
        if required <= have:
            reasons.append(f"Experience fits ({required}y)")
            return weights.weight_exp_meet
        reasons.append(f"Experience short ({required}y)")
        return weights.weight_exp_under

    @staticmethod
    def _citizenship(
        raw_text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        if not profile.citizenship_not_required:
            return 0.0
        delta = 0.0
        if any(p.search(raw_text) for p in CITIZENSHIP_PATTERNS):
            reasons.append("Citizenship/clearance required")
            delta += weights.weight_citizenship
        if any(p.search(raw_text) for p in VISA_FRIENDLY_PATTERNS):
            reasons.append("Visa friendly")
            delta += weights.weight_opt_cpt_boost
        return delta

    @staticmethod
    def _avoid(
        text: str, profile: PreferenceProfile, weights: Weights, reasons: list[str]
    ) -> float:
        hits = 0
        for kw in profile.avoid_keywords:
            n = count_occurrences(text, kw, cap=AVOID_PER_KEYWORD_CAP)
            if n:
                reasons.append(f"Avoid: {kw}")
                hits += n
        return min(hits, AVOID_TOTAL_CAP) * weights.weight_avoid_keyword


class RuleTableScorer:
    """User-defined pattern rules; a disqualifying hit short-circuits."""

    def score(
        self,
        listing: Listing,
        profile: PreferenceProfile,
        weights: Weights,
        now: datetime | None = None,
    ) -> ScoreResult:
        text = listing_text(listing)
        total = 0.0
        reasons: list[str] = []
        for rule in weights.rules:
            pattern = self._compile(rule)
            if pattern is None:
                continue
            if rule.disqualify:
                if pattern.search(text):
                    reasons.append(f"Disqualified: {rule.pattern}")
                    return ScoreResult(score=max(total, 0.0), disqualified=True, reasons=reasons)
                continue
            n = 0
            for _ in pattern.finditer(text):
                n += 1
                if rule.count_once or n >= KEYWORD_CAP:
                    break
            if not n:
                continue
            magnitude = abs(rule.weight) * n
            total += -magnitude if _normalize(rule.effect) in ("penalize", "penalty", "subtract") else magnitude
            reasons.append(f"Rule {rule.pattern} x{n}")
        return ScoreResult(score=max(total, 0.0), reasons=reasons)

    @staticmethod
    def _compile(rule: ScoringRule) -> re.Pattern[str] | None:
        if not rule.pattern:
            return None
        try:
            return re.compile(rule.pattern, re.I)
        except re.error as exc:
            log.warning("Skipping invalid rule pattern %r: %s", rule.pattern, exc)
            return None


def build_scorer(weights: Weights) -> Scorer:
    if _normalize(weights.scoring_mode) == "rules":
        return RuleTableScorer()
    return FixedWeightScorer()


def score_listing(
    listing: Listing,
    profile: PreferenceProfile,
    weights: Weights,
    now: datetime | None = None,
) -> ScoreResult:
    return build_scorer(weights).score(listing, profile, weights, now=now)
