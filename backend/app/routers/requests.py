from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from app.auth import assert_actor_authorized
from app.models import (
    ApplyRequest,
    Candidate,
    Offer,
    OfferCreateRequest,
    OfferRespondRequest,
    RankFilters,
    RequestActionRequest,
    ServiceRequest,
    ServiceRequestCreate,
    StatusHistoryEntry,
)
from app.services.errors import (
    AuthorizationError,
    ConflictError,
    DeliveryError,
    DuplicateApplicationError,
    MarketplaceError,
    NotFoundError,
)
from app.services.marketplace import marketplace

router = APIRouter(tags=["requests"])


def raise_marketplace_http_error(exc: MarketplaceError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, DuplicateApplicationError):
        raise HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DeliveryError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _rank_filters(
    q: Optional[str] = None,
    service_type: Optional[str] = None,
    min_rating: Optional[float] = None,
    max_rate: Optional[float] = None,
    location: Optional[str] = None,
    verified_only: bool = False,
    top_rated: bool = False,
    available_now: bool = False,
    min_budget: Optional[float] = None,
    max_budget: Optional[float] = None,
    date_range: str = "any",
    urgency: str = "any",
) -> RankFilters:
    return RankFilters(
        search=q,
        service_type=service_type,
        min_rating=min_rating,
        max_rate=max_rate,
        location=location,
        verified_only=verified_only,
        top_rated=top_rated,
        available_now=available_now,
        min_budget=min_budget,
        max_budget=max_budget,
        date_range=(date_range or "any").strip().lower(),
        urgency=(urgency or "any").strip().lower(),
    )


@router.post("/requests", response_model=ServiceRequest)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return marketplace.create_request(marketplace.session_for(payload.user_id), payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/mine", response_model=list[ServiceRequest])
def list_my_requests(
    user_id: str = Query(...),
    role: str = Query(default="all"),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.list_my_requests(marketplace.session_for(user_id), role=role)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}", response_model=ServiceRequest)
def get_request(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.get_request(marketplace.session_for(user_id), request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/history", response_model=list[StatusHistoryEntry])
def request_history(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.request_history(marketplace.session_for(user_id), request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/offers", response_model=list[Offer])
def list_offers(
    request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.list_offers(marketplace.session_for(user_id), request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/recommended-providers", response_model=list[Candidate])
def recommended_providers(
    request_id: str,
    user_id: str = Query(...),
    sort_by: str = Query(default="relevance"),
    q: Optional[str] = Query(default=None),
    service_type: Optional[str] = Query(default=None),
    min_rating: Optional[float] = Query(default=None),
    max_rate: Optional[float] = Query(default=None),
    location: Optional[str] = Query(default=None),
    verified_only: bool = Query(default=False),
    top_rated: bool = Query(default=False),
    available_now: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    filters = _rank_filters(
        q=q,
        service_type=service_type,
        min_rating=min_rating,
        max_rate=max_rate,
        location=location,
        verified_only=verified_only,
        top_rated=top_rated,
        available_now=available_now,
    )
    try:
        return marketplace.get_recommended_providers(
            marketplace.session_for(user_id),
            request_id,
            filters=filters,
            sort_by=sort_by,
            limit=limit,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/providers/{provider_id}/recommended-jobs", response_model=list[Candidate])
def recommended_jobs(
    provider_id: str,
    sort_by: str = Query(default="relevance"),
    q: Optional[str] = Query(default=None),
    service_type: Optional[str] = Query(default=None),
    max_rate: Optional[float] = Query(default=None),
    location: Optional[str] = Query(default=None),
    min_budget: Optional[float] = Query(default=None),
    max_budget: Optional[float] = Query(default=None),
    date_range: str = Query(default="any"),
    urgency: str = Query(default="any"),
    limit: int = Query(default=50, ge=1, le=200),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=provider_id, authorization=authorization)
    filters = _rank_filters(
        q=q,
        service_type=service_type,
        max_rate=max_rate,
        location=location,
        min_budget=min_budget,
        max_budget=max_budget,
        date_range=date_range,
        urgency=urgency,
    )
    try:
        return marketplace.get_recommended_jobs(
            marketplace.session_for(provider_id),
            provider_id,
            filters=filters,
            sort_by=sort_by,
            limit=limit,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/offers", response_model=Offer)
def create_offer(
    request_id: str,
    payload: OfferCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.create_offer(
            marketplace.session_for(payload.actor_user_id),
            request_id,
            payload.target_provider_id,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/apply", response_model=Offer)
def apply_to_request(
    request_id: str,
    payload: ApplyRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.apply_to_request(
            marketplace.session_for(payload.actor_user_id),
            request_id,
            payload.commission_fee,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/offers/{offer_id}/respond", response_model=dict)
def respond_to_offer(
    offer_id: str,
    payload: OfferRespondRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        request, offer = marketplace.respond_to_offer(
            marketplace.session_for(payload.actor_user_id),
            offer_id,
            payload.decision,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
    return {"request": request.model_dump(), "offer": offer.model_dump()}


@router.post("/requests/{request_id}/start", response_model=ServiceRequest)
def start_work(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.start_work(marketplace.session_for(payload.actor_user_id), request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/complete", response_model=ServiceRequest)
def complete_work(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.complete_work(marketplace.session_for(payload.actor_user_id), request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.cancel_request(
            marketplace.session_for(payload.actor_user_id),
            request_id,
            payload.reason,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/decline", response_model=ServiceRequest)
def decline_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.decline_request(
            marketplace.session_for(payload.actor_user_id),
            request_id,
            payload.reason,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
