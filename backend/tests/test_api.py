import os
import sys

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.main import app

client = TestClient(app)


def _login(user_id: str) -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "password": "marketplace-demo"})
    assert response.status_code == 200
    return response.json()["access_token"]


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _create_request(token: str, **overrides) -> dict:
    body = {
        "user_id": "client_1",
        "name": "Maria Santos",
        "type_of_work": "Plumbing",
        "budget": 1200,
        "location": {"lat": 14.5995, "lng": 120.9842},
        "location_label": "Ermita, Manila",
        "notes": "Leaking kitchen sink",
    }
    body.update(overrides)
    response = client.post("/requests", json=body, headers=_auth(token))
    assert response.status_code == 200
    return response.json()


def _book(client_token: str, provider_token: str) -> dict:
    request = _create_request(client_token)
    offer = client.post(
        f"/requests/{request['id']}/offers",
        json={"actor_user_id": "client_1", "target_provider_id": "provider_1"},
        headers=_auth(client_token),
    )
    assert offer.status_code == 200
    accepted = client.post(
        f"/offers/{offer.json()['id']}/respond",
        json={"actor_user_id": "provider_1", "decision": "accept"},
        headers=_auth(provider_token),
    )
    assert accepted.status_code == 200
    assert accepted.json()["request"]["status"] == "Accepted"
    return accepted.json()["request"]


def test_health_and_ready():
    assert client.get("/health").json()["status"] == "ok"
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["push_enabled"] is False


def test_auth_login_and_me():
    token = _login("provider_1")
    me = client.get("/auth/me", headers=_auth(token))
    assert me.status_code == 200
    assert me.json() == {"user_id": "provider_1", "role": "provider"}


def test_auth_rejects_bad_password_and_token():
    bad = client.post("/auth/login", json={"user_id": "client_1", "password": "nope"})
    assert bad.status_code == 401
    me = client.get("/auth/me", headers=_auth("garbage.token"))
    assert me.status_code == 401


def test_token_must_match_actor():
    token = _login("client_2")
    response = client.post(
        "/requests",
        json={"user_id": "client_1", "name": "Someone Else", "type_of_work": "Cleaning"},
        headers=_auth(token),
    )
    assert response.status_code == 403


def test_create_request_validates_budget_range():
    token = _login("client_1")
    response = client.post(
        "/requests",
        json={"user_id": "client_1", "name": "Maria", "type_of_work": "Cleaning", "min_budget": 900, "max_budget": 100},
        headers=_auth(token),
    )
    assert response.status_code == 400


def test_unknown_request_returns_404():
    response = client.get("/requests/req_missing", params={"user_id": "client_1"})
    assert response.status_code == 404


def test_duplicate_application_returns_409_with_code():
    client_token = _login("client_1")
    provider_token = _login("provider_2")
    request = _create_request(client_token, type_of_work="Electrical", budget=1500)

    first = client.post(
        f"/requests/{request['id']}/apply",
        json={"actor_user_id": "provider_2", "commission_fee": 1400},
        headers=_auth(provider_token),
    )
    assert first.status_code == 200
    assert first.json()["direction"] == "applied"

    second = client.post(
        f"/requests/{request['id']}/apply",
        json={"actor_user_id": "provider_2", "commission_fee": 1300},
        headers=_auth(provider_token),
    )
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "already_applied"


def test_recommended_jobs_and_invalid_sort():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _create_request(client_token)

    jobs = client.get("/providers/provider_1/recommended-jobs", params={"sort_by": "date"}, headers=_auth(provider_token))
    assert jobs.status_code == 200
    assert request["id"] in [job["id"] for job in jobs.json()]

    invalid = client.get("/providers/provider_1/recommended-jobs", params={"sort_by": "nearest"}, headers=_auth(provider_token))
    assert invalid.status_code == 400


def test_recommended_providers_for_request():
    token = _login("client_1")
    request = _create_request(token)
    response = client.get(
        f"/requests/{request['id']}/recommended-providers",
        params={"user_id": "client_1", "verified_only": True},
        headers=_auth(token),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload[0]["id"] == "provider_1"
    assert payload[0]["match"]["is_match"] is True


def test_illegal_transition_returns_400_and_keeps_state():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _create_request(client_token)

    start = client.post(
        f"/requests/{request['id']}/start",
        json={"actor_user_id": "provider_1"},
        headers=_auth(provider_token),
    )
    assert start.status_code == 400
    current = client.get(f"/requests/{request['id']}", params={"user_id": "client_1"})
    assert current.json()["status"] == "Open"


def test_second_accept_conflicts():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _create_request(client_token)
    offer = client.post(
        f"/requests/{request['id']}/offers",
        json={"actor_user_id": "client_1", "target_provider_id": "provider_1"},
        headers=_auth(client_token),
    ).json()

    body = {"actor_user_id": "provider_1", "decision": "accept"}
    first = client.post(f"/offers/{offer['id']}/respond", json=body, headers=_auth(provider_token))
    second = client.post(f"/offers/{offer['id']}/respond", json=body, headers=_auth(provider_token))
    assert first.status_code == 200
    assert second.status_code == 409


def test_chat_over_rest_tracks_unread():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _book(client_token, provider_token)

    sent = client.post(
        f"/chat/{request['id']}/messages",
        json={"actor_user_id": "client_1", "body": "Can you come at 9?", "client_message_id": "rest-1"},
        headers=_auth(client_token),
    )
    assert sent.status_code == 200

    threads = client.get("/chat/threads", params={"user_id": "provider_1"}, headers=_auth(provider_token)).json()
    group = next(item for item in threads if request["id"] in item["appointments"])
    assert group["counterpart_id"] == "client_1"
    assert group["total_unread_count"] >= 1

    seen = client.post(
        f"/chat/{request['id']}/seen",
        json={"actor_user_id": "provider_1"},
        headers=_auth(provider_token),
    )
    assert seen.status_code == 200
    assert seen.json()["unread_count"] == 0

    messages = client.get(f"/chat/{request['id']}/messages", params={"user_id": "client_1"}, headers=_auth(client_token))
    assert [m["status"] for m in messages.json()] == ["seen"]

    outsider = client.get(f"/chat/{request['id']}/messages", params={"user_id": "client_2"})
    assert outsider.status_code == 403


def test_chat_socket_delivers_live_messages():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _book(client_token, provider_token)

    with client.websocket_connect(f"/chat/ws?token={provider_token}") as provider_ws:
        provider_ws.send_json({"action": "join", "appointment_id": request["id"]})
        backlog = provider_ws.receive_json()
        assert backlog == {"type": "backlog", "appointment_id": request["id"], "messages": []}

        with client.websocket_connect(f"/chat/ws?token={client_token}") as client_ws:
            client_ws.send_json(
                {"action": "send", "appointment_id": request["id"], "body": "On my way", "client_message_id": "ws-1"}
            )
            ack = client_ws.receive_json()
            assert ack["type"] == "ack"
            assert ack["message"]["seq"] == 1

            event = provider_ws.receive_json()
            while event["type"] != "message":
                event = provider_ws.receive_json()
            assert event["payload"]["body"] == "On my way"

            client_ws.send_json({"action": "dance", "appointment_id": request["id"]})
            assert client_ws.receive_json()["type"] == "error"


def test_chat_socket_requires_identity():
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/chat/ws"):
            pass


def test_notifications_flow():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    _book(client_token, provider_token)

    listing = client.get("/notifications", params={"user_id": "provider_1"}, headers=_auth(provider_token))
    assert listing.status_code == 200
    offer_alert = next(item for item in listing.json() if item["title"] == "New Service Offer")

    marked = client.post(
        f"/notifications/{offer_alert['id']}/read",
        params={"user_id": "provider_1"},
        headers=_auth(provider_token),
    )
    assert marked.status_code == 200
    assert marked.json()["read"] is True

    count = client.get("/notifications/unread-count", params={"user_id": "provider_1"}, headers=_auth(provider_token))
    assert count.json()["unread_count"] >= 0

    register = client.post(
        "/notifications/register-device",
        json={"user_id": "provider_1", "device_token": "fcm-token-1", "platform": "web"},
        headers=_auth(provider_token),
    )
    assert register.status_code == 200


def test_request_details_need_matching_token_and_a_party():
    client_token = _login("client_1")
    outsider_token = _login("client_2")
    request = _create_request(client_token)

    mismatched = client.get(f"/requests/{request['id']}", params={"user_id": "client_1"}, headers=_auth(outsider_token))
    assert mismatched.status_code == 403
    outsider = client.get(f"/requests/{request['id']}", params={"user_id": "client_2"}, headers=_auth(outsider_token))
    assert outsider.status_code == 403
    own = client.get(f"/requests/{request['id']}", params={"user_id": "client_1"}, headers=_auth(client_token))
    assert own.json()["id"] == request["id"]


def test_recommended_jobs_budget_and_date_filters():
    client_token = _login("client_1")
    provider_token = _login("provider_1")
    request = _create_request(client_token, budget=1150)

    in_range = client.get(
        "/providers/provider_1/recommended-jobs",
        params={"min_budget": 1100, "max_budget": 1200, "date_range": "today"},
        headers=_auth(provider_token),
    )
    assert in_range.status_code == 200
    assert request["id"] in [job["id"] for job in in_range.json()]
    assert all(1100 <= job["budget"] <= 1200 for job in in_range.json())

    urgent = client.get(
        "/providers/provider_1/recommended-jobs",
        params={"urgency": "urgent"},
        headers=_auth(provider_token),
    )
    assert request["id"] not in [job["id"] for job in urgent.json()]

    invalid = client.get(
        "/providers/provider_1/recommended-jobs",
        params={"urgency": "whenever"},
        headers=_auth(provider_token),
    )
    assert invalid.status_code == 400
