import asyncio
import os
import sqlite3
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import GeoPoint, RankFilters, ServiceRequestCreate
from app.services.errors import AuthorizationError, ConflictError, ValidationError
from app.services.marketplace import MarketplaceService
from app.services.matcher import hybrid_score
from app.services.notification_store import NotificationStore


@pytest.fixture()
def service(tmp_path):
    return MarketplaceService.from_db_path(str(tmp_path / "marketplace.sqlite3"), notifications=NotificationStore())


def _create_request(service: MarketplaceService, **overrides):
    fields = {
        "user_id": "client_1",
        "name": "Maria Santos",
        "type_of_work": "Plumbing",
        "budget": 1200,
        "location": GeoPoint(lat=14.5995, lng=120.9842),
        "location_label": "Ermita, Manila",
    }
    fields.update(overrides)
    return service.create_request(service.session_for(fields["user_id"]), ServiceRequestCreate(**fields))


def _booked(service: MarketplaceService):
    client = service.session_for("client_1")
    provider = service.session_for("provider_1")
    request = _create_request(service)
    offer = service.create_offer(client, request.id, "provider_1")
    service.respond_to_offer(provider, offer.id, "accept")
    return request, client, provider


def test_sessions_carry_profile_roles(service):
    assert service.session_for("provider_1").role == "provider"
    assert service.session_for("admin_1").is_admin is True
    assert service.session_for("someone_new").role == "client"


def test_recommended_jobs_only_include_matches(service):
    plumbing = _create_request(service)
    painting_far = _create_request(
        service,
        type_of_work="House Painting",
        budget=9000,
        location=GeoPoint(lat=10.3157, lng=123.8854),
        location_label="Cebu City",
    )
    jobs = service.get_recommended_jobs(service.session_for("provider_1"), "provider_1")
    ids = [job.id for job in jobs]
    assert plumbing.id in ids
    assert painting_far.id not in ids
    match = next(job for job in jobs if job.id == plumbing.id).match
    assert match.skill_match and match.budget_match and match.location_match


def test_recommended_jobs_are_private_to_the_provider(service):
    with pytest.raises(AuthorizationError):
        service.get_recommended_jobs(service.session_for("provider_2"), "provider_1")
    with pytest.raises(ValidationError):
        service.get_recommended_jobs(service.session_for("client_1"), "client_1")


def test_recommended_providers_are_ranked_and_filterable(service):
    request = _create_request(service)
    client = service.session_for("client_1")

    ranked = service.get_recommended_providers(client, request.id)
    assert ranked[0].id == "provider_1"
    assert "provider_3" not in [c.id for c in ranked]

    verified = service.get_recommended_providers(
        client, request.id, filters=RankFilters(verified_only=True), sort_by="budget-high"
    )
    assert all(c.verified for c in verified)
    with pytest.raises(ValidationError):
        service.get_recommended_providers(client, request.id, sort_by="nearest")


def test_offer_acceptance_opens_conversation_and_notifies(service):
    request, client, provider = _booked(service)
    titles = [n.title for n in service.notifications.list_for_user("provider_1")]
    assert "New Service Offer" in titles
    assert "Offer Accepted" in [n.title for n in service.notifications.list_for_user("client_1")]
    assert service.get_request(client, request.id).status == "Accepted"
    assert service.send_message(client, request.id, "When can you come?").seq == 1


def test_unread_increments_while_thread_closed_and_resets_on_seen(service):
    request, client, provider = _booked(service)

    async def scenario():
        inbox = service.subscribe_user(provider)
        service.send_message(client, request.id, "Is 9am fine?")
        event = await inbox.get(timeout=1)
        inbox.cancel()
        return event

    event = asyncio.run(scenario())

    assert event.type == "notification"
    assert event.payload["category"] == "message"
    assert event.payload["alert"] is True
    groups = service.chat_list(provider)
    assert groups[0].counterpart_id == "client_1"
    assert groups[0].total_unread_count == 1
    assert groups[0].request_status == "Accepted"

    seen = service.mark_seen(provider, request.id)
    assert (seen.updated, seen.unread_count) == (1, 0)
    assert service.chat_list(provider)[0].total_unread_count == 0
    assert service.mark_seen(provider, request.id).updated == 0


def test_viewer_gets_message_live_without_a_notification(service):
    request, client, provider = _booked(service)
    service.send_message(client, request.id, "before you joined")

    async def scenario():
        backlog, thread = service.join_thread(provider, request.id)
        sent = service.send_message(client, request.id, "while you watch")
        event = await thread.get(timeout=1)
        thread.cancel()
        return backlog, sent, event

    backlog, sent, event = asyncio.run(scenario())

    assert [m.body for m in backlog] == ["before you joined"]
    assert event.type == "message"
    assert event.payload["id"] == sent.id
    message_alerts = [n for n in service.notifications.list_for_user("provider_1") if n.category == "message"]
    assert len(message_alerts) == 1
    statuses = {m.body: m.status for m in service.list_messages(client, request.id)}
    assert statuses["while you watch"] == "delivered"


def test_read_receipt_reaches_sender(service):
    request, client, provider = _booked(service)

    async def scenario():
        inbox = service.subscribe_user(client)
        service.send_message(client, request.id, "ping")
        service.mark_seen(provider, request.id)
        event = await inbox.get(timeout=1)
        inbox.cancel()
        return event

    event = asyncio.run(scenario())
    assert event.type == "message_seen"
    assert event.payload["seen_by"] == "provider_1"


def test_completed_request_closes_the_thread(service):
    request, client, provider = _booked(service)
    service.start_work(provider, request.id)
    service.complete_work(provider, request.id)
    with pytest.raises(ConflictError):
        service.send_message(client, request.id, "thanks!")
    assert "Booking Completed" in [n.title for n in service.notifications.list_for_user("client_1")]
    history = service.request_history(client, request.id)
    assert [h.to_status for h in history] == ["Offered", "Accepted", "Working", "Complete"]


def test_outsiders_cannot_read_history_or_chat(service):
    request, client, provider = _booked(service)
    outsider = service.session_for("client_2")
    with pytest.raises(AuthorizationError):
        service.request_history(outsider, request.id)
    with pytest.raises(AuthorizationError):
        service.list_messages(outsider, request.id)


def test_application_flow_notifies_both_sides(service):
    request = _create_request(service)
    provider = service.session_for("provider_2")
    application = service.apply_to_request(provider, request.id, commission_fee=1100)
    assert "New Application" in [n.title for n in service.notifications.list_for_user("client_1")]

    own_offers = service.list_offers(provider, request.id)
    assert [o.id for o in own_offers] == [application.id]

    accepted, _ = service.respond_to_offer(service.session_for("client_1"), application.id, "accept")
    assert accepted.service_provider_id == "provider_2"
    assert "Application Accepted" in [n.title for n in service.notifications.list_for_user("provider_2")]
    assert service.chat_list(provider)[0].counterpart_id == "client_1"


def test_cancel_notifies_assigned_provider(service):
    request, client, provider = _booked(service)
    cancelled = service.cancel_request(client, request.id, "found someone closer")
    assert cancelled.status == "Cancelled"
    alerts = [n for n in service.notifications.list_for_user("provider_1") if n.title == "Request Cancelled"]
    assert alerts and "found someone closer" in alerts[0].body


def test_thread_opens_on_first_use_when_accept_could_not_open_it(service, monkeypatch):
    open_conversation = service.conversations.open_conversation
    calls = []

    def locked_once(*args):
        calls.append(args)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return open_conversation(*args)

    monkeypatch.setattr(service.conversations, "open_conversation", locked_once)
    request, client, provider = _booked(service)

    assert service.get_request(client, request.id).status == "Accepted"
    assert service.send_message(client, request.id, "Still on for Monday?").seq == 1
    assert len(calls) == 2
    assert service.chat_list(provider)[0].total_unread_count == 1


def test_chat_list_reopens_missing_threads_of_booked_requests(service, monkeypatch):
    def locked(*args):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(service.conversations, "open_conversation", locked)
    request, client, provider = _booked(service)
    monkeypatch.undo()

    groups = service.chat_list(provider)
    assert [g.appointments for g in groups] == [[request.id]]


def test_provider_recommendations_use_hybrid_score_and_track_record(service):
    client = service.session_for("client_1")
    provider = service.session_for("provider_1")
    finished, _, _ = _booked(service)
    service.start_work(provider, finished.id)
    service.complete_work(provider, finished.id)

    request = _create_request(service)
    ranked = service.get_recommended_providers(client, request.id)
    top = next(c for c in ranked if c.id == "provider_1")
    profile = service.profiles.get("provider_1")
    assert top.recommendation_score == pytest.approx(hybrid_score(profile, request, ["Plumbing"]))
    assert top.recommendation_score > hybrid_score(profile, request, ["Cleaning"])

    assert service.get_recommended_providers(client, request.id, min_score=1.01) == []


def test_recommended_jobs_carry_preferred_date_for_urgent_filter(service):
    soon = _create_request(service, preferred_date="2026-03-02", preferred_time="08:00")
    later = _create_request(service, preferred_date="2026-03-20")
    provider = service.session_for("provider_1")
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    jobs = service.get_recommended_jobs(provider, "provider_1", now=now)
    assert {job.id: job.preferred_date for job in jobs if job.id in {soon.id, later.id}} == {
        soon.id: "2026-03-02T08:00",
        later.id: "2026-03-20",
    }
    urgent = service.get_recommended_jobs(provider, "provider_1", filters=RankFilters(urgency="urgent"), now=now)
    assert [job.id for job in urgent] == [soon.id]


def test_request_details_are_private_once_booked(service):
    request = _create_request(service)
    assert service.get_request(service.session_for("provider_2"), request.id).id == request.id
    with pytest.raises(AuthorizationError):
        service.get_request(service.session_for("client_2"), request.id)

    booked, _, _ = _booked(service)
    with pytest.raises(AuthorizationError):
        service.get_request(service.session_for("provider_2"), booked.id)
    assert service.get_request(service.session_for("provider_1"), booked.id).status == "Accepted"
    assert service.get_request(service.session_for("admin_1"), booked.id).status == "Accepted"
