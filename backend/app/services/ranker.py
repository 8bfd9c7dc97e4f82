import math
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Union

from app.models import Candidate, Profile, RankFilters, ServiceRequest
from app.services.errors import ValidationError
from app.services.matcher import skills_overlap

SORT_OPTIONS = ("relevance", "budget-low", "budget-high", "date", "reviews")
TOP_RATED_THRESHOLD = 4.5
SWEET_SPOT_BUDGET = (1000.0, 5000.0)
DATE_RANGE_DAYS = {"today": 1, "week": 7, "month": 30}
URGENT_WITHIN_DAYS = 1.0

Anchor = Union[Profile, ServiceRequest, None]


def as_number(value: Any) -> float:
    """Coerce a possibly malformed numeric field; anything unusable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _epoch(value: Optional[str]) -> float:
    parsed = parse_timestamp(value)
    return parsed.timestamp() if parsed else 0.0


def _posted(candidate: Candidate) -> Optional[str]:
    return candidate.created_at or candidate.preferred_date


def _days_until(value: Optional[str], now: datetime) -> Optional[float]:
    when = parse_timestamp(value)
    if when is None:
        return None
    return (when - now).total_seconds() / 86400


def _anchor_skills(anchor: Anchor) -> List[str]:
    if isinstance(anchor, Profile):
        return list(anchor.skills)
    if isinstance(anchor, ServiceRequest):
        return [anchor.type_of_work]
    return []


def _searchable(candidate: Candidate) -> str:
    return " ".join([candidate.name, candidate.service_type, candidate.description, *candidate.skills]).lower()


def _work_text(candidate: Candidate) -> str:
    return " ".join([candidate.service_type, candidate.description, *candidate.skills])


def validate_filters(filters: RankFilters) -> None:
    if filters.date_range not in ("any", *DATE_RANGE_DAYS):
        raise ValidationError(f"Invalid date_range value. Allowed: any, {', '.join(DATE_RANGE_DAYS)}")
    if filters.urgency not in ("any", "urgent"):
        raise ValidationError("Invalid urgency value. Allowed: any, urgent")
    if filters.min_budget is not None and filters.max_budget is not None and filters.min_budget > filters.max_budget:
        raise ValidationError("min_budget cannot be greater than max_budget")


def apply_filters(
    candidates: Iterable[Candidate],
    filters: RankFilters,
    now: Optional[datetime] = None,
) -> List[Candidate]:
    now = now or datetime.now(timezone.utc)
    tokens = (filters.search or "").lower().split()
    service_type = (filters.service_type or "").strip().lower()
    location = (filters.location or "").strip().lower()
    window = DATE_RANGE_DAYS.get(filters.date_range)

    result: List[Candidate] = []
    for candidate in candidates:
        rating = as_number(candidate.rating)
        budget = as_number(candidate.budget)
        if tokens:
            text = _searchable(candidate)
            if not all(token in text for token in tokens):
                continue
        if service_type:
            haystack = " ".join([candidate.service_type, candidate.description, *candidate.skills]).lower()
            if service_type not in haystack:
                continue
        if filters.min_rating is not None and rating < filters.min_rating:
            continue
        if filters.max_rate is not None and budget > filters.max_rate:
            continue
        if filters.min_budget is not None and budget < filters.min_budget:
            continue
        if filters.max_budget is not None and budget > filters.max_budget:
            continue
        if location and location not in candidate.location_label.lower():
            continue
        if filters.verified_only and not candidate.verified:
            continue
        if filters.top_rated and rating < TOP_RATED_THRESHOLD:
            continue
        if filters.available_now and not candidate.available:
            continue
        if window is not None:
            # Upcoming within the window by schedule, or posted within it when unscheduled.
            if candidate.preferred_date:
                days = _days_until(candidate.preferred_date, now)
            else:
                posted = _days_until(candidate.created_at, now)
                days = -posted if posted is not None else None
            if days is None or not 0 <= days <= window:
                continue
        if filters.urgency == "urgent":
            days = _days_until(candidate.preferred_date, now)
            if days is None or not 0 <= days <= URGENT_WITHIN_DAYS:
                continue
        result.append(candidate)
    return result


def composite_score(candidate: Candidate, anchor: Anchor, now: datetime) -> float:
    score = as_number(candidate.recommendation_score)

    posted = parse_timestamp(_posted(candidate))
    if posted is not None:
        days = (now - posted).total_seconds() / 86400
        if days < 1:
            score += 3
        elif days < 3:
            score += 2
        elif days < 7:
            score += 1

    budget = as_number(candidate.budget)
    low, high = SWEET_SPOT_BUDGET
    if low <= budget <= high:
        score += 2
    elif budget > high:
        score += 1

    if skills_overlap(_anchor_skills(anchor), _work_text(candidate)):
        score += 2
    return score


def rank(
    candidates: Sequence[Candidate],
    anchor: Anchor = None,
    filters: Optional[RankFilters] = None,
    sort_by: str = "relevance",
    now: Optional[datetime] = None,
) -> List[Candidate]:
    sort_key = (sort_by or "relevance").strip().lower()
    if sort_key not in SORT_OPTIONS:
        raise ValidationError(f"Invalid sort_by value. Allowed: {', '.join(SORT_OPTIONS)}")
    filters = filters or RankFilters()
    validate_filters(filters)
    if not candidates:
        return []

    now = now or datetime.now(timezone.utc)
    kept = apply_filters(candidates, filters, now=now)
    scored = [c.model_copy(update={"score": composite_score(c, anchor, now)}) for c in kept]

    if sort_key == "budget-low":
        scored.sort(key=lambda c: as_number(c.budget))
    elif sort_key == "budget-high":
        scored.sort(key=lambda c: -as_number(c.budget))
    elif sort_key == "date":
        scored.sort(key=lambda c: -_epoch(_posted(c)))
    elif sort_key == "reviews":
        scored.sort(key=lambda c: -as_number(c.review_count))
    else:
        scored.sort(key=lambda c: (-c.score, -_epoch(_posted(c))))
    return scored
