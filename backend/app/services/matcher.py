import logging
import math
from typing import Optional, Sequence

from app.models import GeoPoint, MatchResult, Profile, ServiceRequest
from app.services.errors import InvalidCoordinateError

logger = logging.getLogger(__name__)

BUDGET_TOLERANCE = 200.0
MATCH_RADIUS_KM = 5.0
EARTH_RADIUS_KM = 6371.0

CONTENT_WEIGHTS = {
    "skills": 0.4,
    "rating": 0.25,
    "reviews": 0.15,
    "experience": 0.1,
    "jobs": 0.1,
}

COLLABORATIVE_WEIGHTS = {
    "history": 0.5,
    "jobs": 0.3,
    "rating": 0.2,
}
COLLABORATIVE_DEFAULT = 0.3
HYBRID_WEIGHTS = (0.6, 0.4)
MIN_RECOMMENDATION_SCORE = 0.3


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def haversine_km(origin: GeoPoint, target: GeoPoint) -> float:
    coords = (origin.lat, origin.lng, target.lat, target.lng)
    if not all(_finite(value) is not None for value in coords):
        raise InvalidCoordinateError(f"Coordinates must be finite numbers: {coords}")
    lat1, lon1, lat2, lon2 = (float(value) for value in coords)
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def request_budget(request: ServiceRequest) -> Optional[float]:
    """Single budget figure for a request: ``budget`` or the range midpoint."""
    budget = _finite(request.budget)
    if budget is not None:
        return budget
    low = _finite(request.min_budget)
    high = _finite(request.max_budget)
    if low is not None and high is not None:
        return (low + high) / 2
    return high if high is not None else low


def skills_overlap(skills: list[str], text: str) -> bool:
    haystack = (text or "").strip().lower()
    if not haystack:
        return False
    for skill in skills:
        needle = (skill or "").strip().lower()
        if needle and (needle in haystack or haystack in needle):
            return True
    return False


def budget_match(provider: Profile, request: ServiceRequest) -> bool:
    rate = _finite(provider.service_rate)
    budget = request_budget(request)
    if rate is None or budget is None:
        return False
    return abs(budget - rate) <= BUDGET_TOLERANCE


def skill_match(provider: Profile, request: ServiceRequest) -> bool:
    return skills_overlap(provider.skills, request.type_of_work)


def location_distance(provider: Profile, request: ServiceRequest) -> Optional[float]:
    if provider.location is None or request.location is None:
        return None
    try:
        return haversine_km(provider.location, request.location)
    except InvalidCoordinateError:
        logger.debug("Ignoring invalid coordinates for provider=%s request=%s", provider.id, request.id)
        return None


def match(provider: Profile, request: ServiceRequest) -> MatchResult:
    by_budget = budget_match(provider, request)
    by_skill = skill_match(provider, request)
    distance = location_distance(provider, request)
    by_location = distance is not None and distance <= MATCH_RADIUS_KM
    return MatchResult(
        budget_match=by_budget,
        skill_match=by_skill,
        location_match=by_location,
        is_match=by_budget or by_skill or by_location,
        distance_km=round(distance, 3) if distance is not None else None,
    )


def content_score(provider: Profile, request: ServiceRequest) -> float:
    """Content-based fit of a provider for a request, in ``[0, 1]``.

    Each factor only counts when the provider has data for it, and the sum is
    normalised by the weights of the factors present, so a new provider is not
    penalised for missing reviews or history.
    """
    score = 0.0
    weights = 0.0

    work = (request.type_of_work or "").strip().lower()
    skills = [s for s in provider.skills if (s or "").strip()]
    if work and skills:
        matching = [s for s in skills if skills_overlap([s], work)]
        score += len(matching) / len(skills) * CONTENT_WEIGHTS["skills"]
        weights += CONTENT_WEIGHTS["skills"]

    rating = _finite(provider.rating)
    if rating:
        score += min(rating / 5.0, 1.0) * CONTENT_WEIGHTS["rating"]
        weights += CONTENT_WEIGHTS["rating"]

    reviews = _finite(provider.review_count)
    if reviews and reviews > 0:
        score += min(math.log10(reviews + 1) / math.log10(11), 1.0) * CONTENT_WEIGHTS["reviews"]
        weights += CONTENT_WEIGHTS["reviews"]

    years = _finite(provider.years_experience)
    if years and years > 0:
        score += min(years / 5.0, 1.0) * CONTENT_WEIGHTS["experience"]
        weights += CONTENT_WEIGHTS["experience"]

    jobs = _finite(provider.jobs_completed)
    if jobs and jobs > 0:
        score += min(jobs / 20.0, 1.0) * CONTENT_WEIGHTS["jobs"]
        weights += CONTENT_WEIGHTS["jobs"]

    return score / weights if weights > 0 else 0.0


def _work_key(type_of_work: str) -> str:
    words = (type_of_work or "").strip().lower().split()
    return words[0] if words else ""


def collaborative_score(provider: Profile, request: ServiceRequest, completed_work: Sequence[str]) -> float:
    """Track-record fit from the provider's completed bookings.

    ``completed_work`` holds the type of work of every booking the provider
    completed. Unlike ``content_score`` the weights are not renormalised, and a
    provider with no usable history at all gets ``COLLABORATIVE_DEFAULT``.
    """
    score = 0.0
    counted = False

    if completed_work:
        key = _work_key(request.type_of_work)
        similar = [work for work in completed_work if work and key in work.lower()]
        score += len(similar) / len(completed_work) * COLLABORATIVE_WEIGHTS["history"]
        counted = True

    jobs = max(_finite(provider.jobs_completed) or 0.0, float(len(completed_work)))
    if jobs > 0:
        score += min(jobs / 20.0, 1.0) * COLLABORATIVE_WEIGHTS["jobs"]
        counted = True

    rating = _finite(provider.rating)
    if rating and provider.review_count > 0:
        score += min(rating / 5.0, 1.0) * COLLABORATIVE_WEIGHTS["rating"]
        counted = True

    return score if counted else COLLABORATIVE_DEFAULT


def hybrid_score(provider: Profile, request: ServiceRequest, completed_work: Sequence[str] = ()) -> float:
    content_weight, collaborative_weight = HYBRID_WEIGHTS
    return (
        content_score(provider, request) * content_weight
        + collaborative_score(provider, request, completed_work) * collaborative_weight
    )
