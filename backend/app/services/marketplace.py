import asyncio
import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from app.models import (
    Candidate,
    ChatGroup,
    Message,
    NotificationRecord,
    Offer,
    Profile,
    RankFilters,
    RealtimeEvent,
    SeenResult,
    ServiceRequest,
    ServiceRequestCreate,
    StatusHistoryEntry,
)
from app.services.booking_store import BookingStore
from app.services.conversation_store import ConversationStore, group_conversations
from app.services.dispatcher import RealtimeDispatcher, Subscription
from app.services.errors import AuthorizationError, NotFoundError, ValidationError
from app.services.matcher import MIN_RECOMMENDATION_SCORE, hybrid_score, match, request_budget
from app.services.notification_store import NotificationStore, notification_store
from app.services.presence import PresenceTracker
from app.services.profile_store import ProfileStore
from app.services.ranker import parse_timestamp, rank
from app.session import Session

logger = logging.getLogger(__name__)

THREAD_STATUSES = {"Accepted", "Working"}


class MarketplaceService:
    """The operations exposed to clients, each taking the caller's Session.

    Stores own state and invariants; this layer resolves profiles, opens and
    closes conversations as requests move, and fans out notifications and
    real-time events to the affected users.
    """

    def __init__(
        self,
        profiles: ProfileStore,
        bookings: BookingStore,
        conversations: ConversationStore,
        notifications: NotificationStore,
        dispatcher: RealtimeDispatcher,
    ):
        self.profiles = profiles
        self.bookings = bookings
        self.conversations = conversations
        self.notifications = notifications
        self.dispatcher = dispatcher
        conversations.add_listener(self._on_message_committed)
        notifications.add_listener(self._on_notification)

    @classmethod
    def from_db_path(cls, db_path: str, notifications: Optional[NotificationStore] = None) -> "MarketplaceService":
        return cls(
            profiles=ProfileStore(db_path=db_path),
            bookings=BookingStore(db_path=db_path),
            conversations=ConversationStore(db_path=db_path),
            notifications=notifications or NotificationStore(),
            dispatcher=RealtimeDispatcher(presence=PresenceTracker()),
        )

    def session_for(self, user_id: str) -> Session:
        if not user_id.strip():
            raise ValidationError("user_id is required")
        return Session(user_id=user_id, role=self.profiles.role_of(user_id))

    # -- listeners -------------------------------------------------------

    def _on_message_committed(self, message: Message) -> None:
        self.dispatcher.publish_thread(
            message.appointment_id,
            RealtimeEvent(
                type="message",
                appointment_id=message.appointment_id,
                user_id=message.sender_id,
                payload=message.model_dump(),
            ),
        )

    def _on_notification(self, record: NotificationRecord, alert: bool) -> None:
        self.dispatcher.publish_user(
            record.user_id,
            RealtimeEvent(type="notification", user_id=record.user_id, payload={**record.model_dump(), "alert": alert}),
        )

    def _notify(
        self,
        user_id: Optional[str],
        title: str,
        body: str,
        category: str,
        request_id: str,
        kind: str,
    ) -> None:
        if not user_id:
            return
        self.notifications.create(
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            deep_link=f"request:{request_id}",
            meta={"request_id": request_id, "type": kind},
            push=not self.dispatcher.is_viewing(user_id, request_id),
        )

    def _publish_request_update(self, request: ServiceRequest, action: str, extra_users: Tuple[str, ...] = ()) -> None:
        event = RealtimeEvent(
            type="request_updated",
            appointment_id=request.id,
            payload={"request_id": request.id, "action": action, "status": request.status},
        )
        users = {request.requester_id, request.target_provider_id, request.service_provider_id, *extra_users}
        for user_id in users:
            if user_id:
                self.dispatcher.publish_user(user_id, event)
        self.dispatcher.publish_thread(request.id, event)

    # -- requests --------------------------------------------------------

    def create_request(self, session: Session, payload: ServiceRequestCreate) -> ServiceRequest:
        return self.bookings.create_request(
            session,
            name=payload.name,
            type_of_work=payload.type_of_work,
            budget=payload.budget,
            min_budget=payload.min_budget,
            max_budget=payload.max_budget,
            location=payload.location,
            location_label=payload.location_label,
            preferred_date=payload.preferred_date,
            preferred_time=payload.preferred_time,
            notes=payload.notes,
        )

    def get_request(self, session: Session, request_id: str) -> ServiceRequest:
        """Parties and admins always; other providers only while it is an open job or they hold an offer on it."""
        request = self.bookings.get_request(request_id)
        if session.is_admin or session.user_id in self._parties(request):
            return request
        if session.role == "provider" and (
            request.status == "Open" or self.bookings.list_offers(request_id=request_id, provider_id=session.user_id)
        ):
            return request
        raise AuthorizationError("Not a party to this request")

    def list_my_requests(self, session: Session, role: str = "all") -> List[ServiceRequest]:
        return self.bookings.list_requests_for_user(session.user_id, role=role)

    def request_history(self, session: Session, request_id: str) -> List[StatusHistoryEntry]:
        request = self.bookings.get_request(request_id)
        self._assert_party(session, request)
        return self.bookings.history(request_id)

    def list_offers(self, session: Session, request_id: str) -> List[Offer]:
        request = self.bookings.get_request(request_id)
        if session.is_admin or request.requester_id == session.user_id:
            return self.bookings.list_offers(request_id=request_id)
        return self.bookings.list_offers(request_id=request_id, provider_id=session.user_id)

    @staticmethod
    def _parties(request: ServiceRequest) -> set[Optional[str]]:
        return {request.requester_id, request.target_provider_id, request.service_provider_id}

    def _assert_party(self, session: Session, request: ServiceRequest) -> None:
        if session.user_id not in self._parties(request) and not session.is_admin:
            raise AuthorizationError("Not a party to this request")

    # -- recommendations -------------------------------------------------

    def _provider_profile(self, provider_id: str) -> Profile:
        provider = self.profiles.get(provider_id)
        if provider.role != "provider":
            raise ValidationError(f"User {provider_id} is not a service provider")
        return provider.model_copy(update={"online_status": self.dispatcher.presence.is_online(provider_id)})

    @staticmethod
    def _preferred_moment(request: ServiceRequest) -> Optional[str]:
        if request.preferred_date and request.preferred_time:
            combined = f"{request.preferred_date}T{request.preferred_time}"
            if parse_timestamp(combined) is not None:
                return combined
        return request.preferred_date

    def get_recommended_jobs(
        self,
        session: Session,
        provider_id: str,
        filters: Optional[RankFilters] = None,
        sort_by: str = "relevance",
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> List[Candidate]:
        if session.user_id != provider_id and not session.is_admin:
            raise AuthorizationError("Recommendations are only visible to the provider")
        provider = self._provider_profile(provider_id)
        self.expire_stale_offers(now=now)
        completed = self.bookings.completed_work_by_provider().get(provider_id, [])
        candidates: List[Candidate] = []
        for request in self.bookings.list_open_requests(now=now):
            if request.requester_id == provider_id:
                continue
            result = match(provider, request)
            if not result.is_match:
                continue
            candidates.append(
                Candidate(
                    id=request.id,
                    kind="job",
                    name=request.name,
                    description=" ".join(part for part in (request.type_of_work, request.notes) if part),
                    service_type=request.type_of_work,
                    location_label=request.location_label,
                    budget=request_budget(request),
                    created_at=request.created_at,
                    preferred_date=self._preferred_moment(request),
                    recommendation_score=hybrid_score(provider, request, completed),
                    match=result,
                )
            )
        return rank(candidates, anchor=provider, filters=filters, sort_by=sort_by, now=now)[:limit]

    def get_recommended_providers(
        self,
        session: Session,
        request_id: str,
        filters: Optional[RankFilters] = None,
        sort_by: str = "relevance",
        limit: int = 50,
        now: Optional[datetime] = None,
        min_score: float = MIN_RECOMMENDATION_SCORE,
    ) -> List[Candidate]:
        request = self.bookings.get_request(request_id)
        if request.requester_id != session.user_id and not session.is_admin:
            raise AuthorizationError("Recommendations are only visible to the requester")
        history = self.bookings.completed_work_by_provider()
        candidates: List[Candidate] = []
        for provider in self.profiles.list_providers():
            if provider.id == request.requester_id:
                continue
            result = match(provider, request)
            if not result.is_match:
                continue
            score = hybrid_score(provider, request, history.get(provider.id, []))
            if score < min_score:
                continue
            candidates.append(
                Candidate(
                    id=provider.id,
                    kind="provider",
                    name=provider.name,
                    skills=provider.skills,
                    description=provider.description,
                    service_type=", ".join(provider.skills),
                    location_label=provider.location_label,
                    budget=provider.service_rate,
                    rating=provider.rating,
                    review_count=provider.review_count,
                    verified=provider.verified,
                    available=provider.available,
                    recommendation_score=score,
                    match=result,
                )
            )
        return rank(candidates, anchor=request, filters=filters, sort_by=sort_by, now=now)[:limit]

    # -- offers and the booking lifecycle --------------------------------

    def create_offer(self, session: Session, request_id: str, target_provider_id: str) -> Offer:
        self._provider_profile(target_provider_id)
        request, offer = self.bookings.create_offer(session, request_id, target_provider_id)
        self._notify(
            target_provider_id,
            "New Service Offer",
            f"You have received an offer for: {request.type_of_work}",
            "offer",
            request.id,
            "service-offer",
        )
        self._publish_request_update(request, "offered")
        return offer

    def apply_to_request(self, session: Session, request_id: str, commission_fee: Optional[float] = None) -> Offer:
        offer = self.bookings.apply(session, request_id, commission_fee)
        request = self.bookings.get_request(request_id)
        self._notify(
            request.requester_id,
            "New Application",
            f"A provider applied to your \"{request.type_of_work}\" request",
            "offer",
            request.id,
            "application",
        )
        self.dispatcher.publish_user(
            request.requester_id,
            RealtimeEvent(
                type="request_updated",
                appointment_id=request.id,
                payload={"request_id": request.id, "action": "applied", "status": request.status, "offer_id": offer.id},
            ),
        )
        return offer

    def respond_to_offer(self, session: Session, offer_id: str, decision: str) -> Tuple[ServiceRequest, Offer]:
        previous = self.bookings.get_offer(offer_id)
        request, offer = self.bookings.respond_to_offer(session, offer_id, decision)
        accepted = offer.status == "accepted"
        if accepted:
            try:
                self._ensure_conversation(request.id)
            except sqlite3.Error:
                # The booking is already committed; the thread is opened on first chat use.
                logger.exception("Could not open conversation for accepted request %s", request.id)

        if previous.direction == "offered":
            title, kind = ("Offer Accepted", "offer-accepted") if accepted else ("Offer Rejected", "offer-rejected")
            self._notify(
                request.requester_id,
                title,
                f"Your offer for \"{request.type_of_work}\" has been {'accepted' if accepted else 'rejected'}",
                "offer",
                request.id,
                kind,
            )
        else:
            title, kind = ("Application Accepted", "application-accepted") if accepted else ("Application Declined", "application-declined")
            self._notify(
                offer.provider_id,
                title,
                f"Your application for \"{request.type_of_work}\" was {'accepted' if accepted else 'declined'}",
                "offer",
                request.id,
                kind,
            )
        action = "offer-accepted" if accepted else "offer-rejected"
        self._publish_request_update(request, action, extra_users=(offer.provider_id,))
        return request, offer

    def start_work(self, session: Session, request_id: str) -> ServiceRequest:
        request = self.bookings.start(session, request_id)
        self._notify(
            request.requester_id,
            "Work Started",
            f"Work on \"{request.type_of_work}\" has started",
            "booking",
            request.id,
            "work-started",
        )
        self._publish_request_update(request, "started")
        return request

    def complete_work(self, session: Session, request_id: str) -> ServiceRequest:
        request = self.bookings.complete(session, request_id)
        self.conversations.close_conversation(request.id)
        self._notify(
            request.requester_id,
            "Booking Completed",
            f"\"{request.type_of_work}\" has been marked as complete",
            "booking",
            request.id,
            "booking-completed",
        )
        self._publish_request_update(request, "completed")
        return request

    def cancel_request(self, session: Session, request_id: str, reason: str = "") -> ServiceRequest:
        before = self.bookings.get_request(request_id)
        request = self.bookings.cancel(session, request_id, reason)
        self.conversations.close_conversation(request.id)
        for user_id in {before.requester_id, before.target_provider_id, before.service_provider_id}:
            if user_id and user_id != session.user_id:
                self._notify(
                    user_id,
                    "Request Cancelled",
                    f"\"{request.type_of_work}\" was cancelled" + (f": {reason}" if reason else ""),
                    "booking",
                    request.id,
                    "request-cancelled",
                )
        self._publish_request_update(request, "cancelled", extra_users=tuple(u for u in (before.target_provider_id,) if u))
        return request

    def decline_request(self, session: Session, request_id: str, reason: str = "") -> ServiceRequest:
        before = self.bookings.get_request(request_id)
        request = self.bookings.decline(session, request_id, reason)
        self.conversations.close_conversation(request.id)
        self._notify(
            request.requester_id if request.requester_id != session.user_id else None,
            "Request Declined",
            f"\"{request.type_of_work}\" was declined" + (f": {reason}" if reason else ""),
            "booking",
            request.id,
            "request-declined",
        )
        self._publish_request_update(request, "declined", extra_users=tuple(u for u in (before.target_provider_id,) if u))
        return request

    def expire_stale_offers(self, now: Optional[datetime] = None) -> List[Offer]:
        expired = self.bookings.expire_stale_offers(now=now)
        for request, offer in expired:
            self._notify(
                request.requester_id,
                "Offer Expired",
                f"Your offer for \"{request.type_of_work}\" expired without a response",
                "offer",
                request.id,
                "offer-expired",
            )
            self._publish_request_update(request, "offer-expired", extra_users=(offer.provider_id,))
        return [offer for _, offer in expired]

    # -- messaging -------------------------------------------------------

    def _ensure_conversation(self, appointment_id: str) -> None:
        """Open the thread of a booked request if accepting it did not get that far."""
        if self.conversations.has_conversation(appointment_id):
            return
        try:
            request = self.bookings.get_request(appointment_id)
        except NotFoundError:
            return
        if request.status in THREAD_STATUSES and request.service_provider_id:
            self.conversations.open_conversation(request.id, request.requester_id, request.service_provider_id)

    def assert_participant(self, session: Session, appointment_id: str) -> str:
        """Counterpart of ``session`` in the thread; raises if it is not a participant."""
        self._ensure_conversation(appointment_id)
        return self.conversations.counterpart(appointment_id, session.user_id)

    def send_message(
        self,
        session: Session,
        appointment_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        recipient = self.assert_participant(session, appointment_id)
        message = self.conversations.append_message(
            appointment_id,
            session.user_id,
            body,
            client_message_id=client_message_id,
        )
        if self.dispatcher.is_viewing(recipient, appointment_id):
            self.conversations.mark_delivered(appointment_id, recipient)
            return message
        sender = self.profiles.find(session.user_id)
        self.notifications.create(
            user_id=recipient,
            title="New Message",
            body=f"{sender.name if sender else session.user_id}: {message.body[:120]}",
            category="message",
            deep_link=f"chat:{appointment_id}",
            meta={
                "appointment_id": appointment_id,
                "message_id": message.id,
                "unread_count": self.conversations.unread_count(appointment_id, recipient),
                "type": "new-message",
            },
            push=True,
        )
        return message

    def list_messages(self, session: Session, appointment_id: str) -> List[Message]:
        self._ensure_conversation(appointment_id)
        return self.conversations.list_messages(appointment_id, session.user_id)

    def mark_seen(self, session: Session, appointment_id: str) -> SeenResult:
        counterpart = self.assert_participant(session, appointment_id)
        updated = self.conversations.mark_seen(appointment_id, session.user_id)
        if updated:
            receipt = RealtimeEvent(
                type="message_seen",
                appointment_id=appointment_id,
                user_id=session.user_id,
                payload={"appointment_id": appointment_id, "seen_by": session.user_id, "count": updated},
            )
            self.dispatcher.publish_thread(appointment_id, receipt, exclude_user=session.user_id)
            self.dispatcher.publish_user(counterpart, receipt)
        return SeenResult(
            appointment_id=appointment_id,
            updated=updated,
            unread_count=self.conversations.unread_count(appointment_id, session.user_id),
        )

    def chat_list(self, session: Session) -> List[ChatGroup]:
        for request in self.bookings.list_requests_for_user(session.user_id):
            if request.status in THREAD_STATUSES:
                self._ensure_conversation(request.id)
        summaries = []
        for summary in self.conversations.list_conversations(session.user_id):
            try:
                status = self.bookings.get_request(summary.appointment_id).status
            except NotFoundError:
                status = None
            summaries.append(summary.model_copy(update={"request_status": status}))
        return group_conversations(summaries)

    def join_thread(
        self,
        session: Session,
        appointment_id: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Tuple[List[Message], Subscription]:
        """Backlog plus a live subscription.

        Call from the event loop, or pass the loop that will consume the
        subscription when running on a worker thread.
        """
        self._ensure_conversation(appointment_id)
        return self.conversations.join(
            appointment_id,
            session.user_id,
            lambda: self.dispatcher.subscribe_thread(appointment_id, session.user_id, loop=loop),
        )

    def subscribe_user(self, session: Session) -> Subscription:
        return self.dispatcher.subscribe_user(session.user_id)

    def typing(self, session: Session, appointment_id: str) -> None:
        self.assert_participant(session, appointment_id)
        self.dispatcher.typing(session.user_id, appointment_id)

    def stop_typing(self, session: Session, appointment_id: str) -> None:
        self.dispatcher.stop_typing(session.user_id, appointment_id)

    def clear_typing(self, session: Session) -> None:
        """Drop every typing indicator of the user; event loop only."""
        self.dispatcher.clear_user_typing(session.user_id)

    def _counterparts(self, user_id: str) -> set[str]:
        return {summary.counterpart_id for summary in self.conversations.list_conversations(user_id)}

    def _publish_presence(self, user_id: str, online: bool) -> None:
        event = RealtimeEvent(type="presence", user_id=user_id, payload={"user_id": user_id, "online": online})
        for counterpart in self._counterparts(user_id):
            self.dispatcher.publish_user(counterpart, event)

    def connect(self, session: Session) -> None:
        if self.dispatcher.presence.connect(session.user_id):
            logger.info("User %s online", session.user_id)
            self._publish_presence(session.user_id, True)

    def disconnect(self, session: Session) -> None:
        if self.dispatcher.presence.disconnect(session.user_id):
            logger.info("User %s offline", session.user_id)
            self._publish_presence(session.user_id, False)


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
marketplace = MarketplaceService.from_db_path(
    os.getenv("MARKETPLACE_DB_PATH", default_db),
    notifications=notification_store,
)
