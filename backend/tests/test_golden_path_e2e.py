import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.main import app

client = TestClient(app)


def _login(user_id: str) -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "password": "marketplace-demo"})
    assert response.status_code == 200
    payload = response.json()
    return payload["access_token"]


def test_golden_path_request_apply_book_chat_complete():
    requester = f"golden_client_{uuid4().hex[:8]}"
    requester_token = _login(requester)
    provider_token = _login("provider_1")

    created = client.post(
        "/requests",
        json={
            "user_id": requester,
            "name": "Golden Requester",
            "type_of_work": "Pipe Repair",
            "min_budget": 900,
            "max_budget": 1300,
            "location": {"lat": 14.6010, "lng": 120.9830},
            "location_label": "Binondo, Manila",
            "preferred_date": "2026-11-02",
            "preferred_time": "09:00",
        },
        headers={"Authorization": f"Bearer {requester_token}"},
    )
    assert created.status_code == 200
    request_id = created.json()["id"]

    jobs = client.get(
        "/providers/provider_1/recommended-jobs",
        params={"q": "pipe"},
        headers={"Authorization": f"Bearer {provider_token}"},
    )
    assert jobs.status_code == 200
    assert any(job["id"] == request_id for job in jobs.json())

    applied = client.post(
        f"/requests/{request_id}/apply",
        json={"actor_user_id": "provider_1", "commission_fee": 1100},
        headers={"Authorization": f"Bearer {provider_token}"},
    )
    assert applied.status_code == 200

    offers = client.get(
        f"/requests/{request_id}/offers",
        params={"user_id": requester},
        headers={"Authorization": f"Bearer {requester_token}"},
    )
    assert [offer["provider_id"] for offer in offers.json()] == ["provider_1"]

    accepted = client.post(
        f"/offers/{applied.json()['id']}/respond",
        json={"actor_user_id": requester, "decision": "accept"},
        headers={"Authorization": f"Bearer {requester_token}"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["request"]["service_provider_id"] == "provider_1"

    message = client.post(
        f"/chat/{request_id}/messages",
        json={"actor_user_id": "provider_1", "body": "I'll bring the replacement fittings."},
        headers={"Authorization": f"Bearer {provider_token}"},
    )
    assert message.status_code == 200

    inbox = client.get(
        "/chat/threads",
        params={"user_id": requester},
        headers={"Authorization": f"Bearer {requester_token}"},
    ).json()
    assert inbox[0]["counterpart_id"] == "provider_1"
    assert inbox[0]["total_unread_count"] == 1

    for action in ("start", "complete"):
        moved = client.post(
            f"/requests/{request_id}/{action}",
            json={"actor_user_id": "provider_1"},
            headers={"Authorization": f"Bearer {provider_token}"},
        )
        assert moved.status_code == 200
    assert moved.json()["status"] == "Complete"

    history = client.get(
        f"/requests/{request_id}/history",
        params={"user_id": requester},
        headers={"Authorization": f"Bearer {requester_token}"},
    )
    assert [entry["to_status"] for entry in history.json()] == ["Offered", "Accepted", "Working", "Complete"]

    notifications = client.get(
        "/notifications",
        params={"user_id": requester},
        headers={"Authorization": f"Bearer {requester_token}"},
    ).json()
    categories = {item["category"] for item in notifications}
    assert {"offer", "message", "booking"} <= categories
    completed = next(item for item in notifications if item["title"] == "Booking Completed")

    mark_read = client.post(
        f"/notifications/{completed['id']}/read",
        params={"user_id": requester},
        headers={"Authorization": f"Bearer {requester_token}"},
    )
    assert mark_read.status_code == 200
    assert mark_read.json()["read"] is True
