from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


RequestStatus = Literal["Open", "Offered", "Accepted", "Working", "Complete", "Cancelled", "Declined"]
OfferStatus = Literal["pending", "accepted", "declined", "cancelled", "expired"]
OfferDirection = Literal["offered", "applied"]
MessageStatus = Literal["sent", "delivered", "seen"]
SortBy = Literal["relevance", "budget-low", "budget-high", "date", "reviews"]


class GeoPoint(BaseModel):
    lat: float
    lng: float


class Profile(BaseModel):
    id: str
    name: str
    role: Literal["client", "provider", "admin"] = "client"
    skills: list[str] = Field(default_factory=list)
    service_rate: Optional[float] = None
    location: Optional[GeoPoint] = None
    location_label: str = ""
    description: str = ""
    verified: bool = False
    rating: float = 0.0
    review_count: int = 0
    years_experience: float = 0.0
    jobs_completed: int = 0
    available: bool = True
    online_status: bool = False


class ServiceRequest(BaseModel):
    id: str
    requester_id: str
    name: str
    type_of_work: str
    budget: Optional[float] = None
    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    location: Optional[GeoPoint] = None
    location_label: str = ""
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    notes: str = ""
    status: RequestStatus = "Open"
    target_provider_id: Optional[str] = None
    service_provider_id: Optional[str] = None
    cancellation_reason: str = ""
    created_at: str
    updated_at: str
    expires_at: Optional[str] = None


class Offer(BaseModel):
    id: str
    request_id: str
    requester_id: str
    provider_id: str
    direction: OfferDirection
    commission_fee: Optional[float] = None
    status: OfferStatus = "pending"
    created_at: str
    updated_at: str


class StatusHistoryEntry(BaseModel):
    id: str
    request_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class MatchResult(BaseModel):
    budget_match: bool = False
    skill_match: bool = False
    location_match: bool = False
    is_match: bool = False
    distance_km: Optional[float] = None


class Candidate(BaseModel):
    """A job (service request) or a provider, flattened for ranking.

    ``budget`` holds the request budget for jobs and the service rate for
    providers, so the budget sorts and ``max_rate`` filter apply to both.
    """

    id: str
    kind: Literal["job", "provider"]
    name: str = ""
    skills: list[str] = Field(default_factory=list)
    description: str = ""
    service_type: str = ""
    location_label: str = ""
    budget: Optional[float] = None
    rating: Optional[float] = None
    review_count: Optional[float] = None
    verified: bool = False
    available: bool = True
    created_at: Optional[str] = None
    preferred_date: Optional[str] = None
    recommendation_score: Optional[float] = None
    score: float = 0.0
    match: Optional[MatchResult] = None


class RankFilters(BaseModel):
    search: Optional[str] = None
    service_type: Optional[str] = None
    min_rating: Optional[float] = None
    max_rate: Optional[float] = None
    location: Optional[str] = None
    verified_only: bool = False
    top_rated: bool = False
    available_now: bool = False
    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    date_range: str = "any"
    urgency: str = "any"


class Message(BaseModel):
    id: str
    appointment_id: str
    seq: int
    sender_id: str
    body: str
    client_message_id: Optional[str] = None
    timestamp: str
    status: MessageStatus = "sent"
    state: Literal["pending", "committed"] = "committed"


class ConversationSummary(BaseModel):
    appointment_id: str
    counterpart_id: str
    request_status: Optional[str] = None
    conversation_status: Literal["open", "closed"] = "open"
    unread_count: int = 0
    last_message: Optional[Message] = None


class ChatGroup(BaseModel):
    counterpart_id: str
    appointments: list[str]
    total_unread_count: int = 0
    last_message: Optional[Message] = None
    request_status: Optional[str] = None


class PresenceState(BaseModel):
    user_id: str
    online: bool = False
    typing_in: list[str] = Field(default_factory=list)


class RealtimeEvent(BaseModel):
    type: Literal[
        "message",
        "message_seen",
        "typing",
        "stop_typing",
        "request_updated",
        "notification",
        "presence",
    ]
    appointment_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ServiceRequestCreate(BaseModel):
    user_id: str
    name: str
    type_of_work: str
    budget: Optional[float] = Field(default=None, ge=0)
    min_budget: Optional[float] = Field(default=None, ge=0)
    max_budget: Optional[float] = Field(default=None, ge=0)
    location: Optional[GeoPoint] = None
    location_label: str = ""
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    notes: str = ""


class OfferCreateRequest(BaseModel):
    actor_user_id: str
    target_provider_id: str


class ApplyRequest(BaseModel):
    actor_user_id: str
    commission_fee: Optional[float] = Field(default=None, ge=0)


class OfferRespondRequest(BaseModel):
    actor_user_id: str
    decision: Literal["accept", "decline"]


class RequestActionRequest(BaseModel):
    actor_user_id: str
    reason: str = ""


class MessageSendRequest(BaseModel):
    actor_user_id: str
    body: str
    client_message_id: Optional[str] = None


class MarkSeenRequest(BaseModel):
    actor_user_id: str


class SeenResult(BaseModel):
    appointment_id: str
    updated: int
    unread_count: int


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "marketplace-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: str = "client"


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["offer", "booking", "message", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
