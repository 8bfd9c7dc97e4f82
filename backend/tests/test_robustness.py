import importlib
import os
import sqlite3
import sys


sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.services.notification_store import NotificationStore
from app.services.profile_store import ProfileStore
from app.services.push_sender import PushSender


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("app.auth", None)
    auth = importlib.import_module("app.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("app.auth", None)
    auth = importlib.import_module("app.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_tampered_token_is_rejected():
    auth = importlib.import_module("app.auth")
    token, _ = auth.create_access_token("client_1")
    assert auth.verify_access_token(token) == "client_1"
    payload, signature = token.split(".", 1)
    assert auth.verify_access_token(f"{payload}.{signature[::-1]}") is None
    assert auth.verify_access_token("not-a-token") is None


def test_profile_store_handles_invalid_skills_json(tmp_path):
    db_path = tmp_path / "profiles.sqlite3"
    store = ProfileStore(db_path=str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            "INSERT INTO profiles (id, name, role, skills_json, rating) VALUES (?, ?, ?, ?, ?)",
            ("provider_broken", "Broken Skills", "provider", "{bad", 4.0),
        )
        conn.execute(
            "INSERT INTO profiles (id, name, role, skills_json) VALUES (?, ?, ?, ?)",
            ("provider_scalar", "Scalar Skills", "provider", "42"),
        )
        conn.commit()

    assert store.get("provider_broken").skills == []
    assert store.get("provider_scalar").skills == []
    assert {p.id for p in store.list_providers()} >= {"provider_1", "provider_broken", "provider_scalar"}


def test_admin_ids_come_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("ADMIN_USER_IDS", "client_2, ops_1")
    store = ProfileStore(db_path=str(tmp_path / "profiles.sqlite3"))
    assert store.role_of("client_2") == "admin"
    assert store.role_of("ops_1") == "admin"
    assert store.role_of("admin_1") == "admin"
    assert store.role_of("client_1") == "client"


class _RecordingSender(PushSender):
    def __init__(self, invalid):
        super().__init__()
        self.invalid = invalid
        self.calls = []

    def send_notification(self, tokens, title, body, data):
        self.calls.append((sorted(tokens), title, data))
        return [token for token in tokens if token in self.invalid]


def test_notification_store_prunes_invalid_tokens():
    sender = _RecordingSender(invalid={"stale"})
    store = NotificationStore(sender=sender)
    store.register_device_token("client_1", "fresh")
    store.register_device_token("client_1", "stale")
    store.register_device_token("client_1", "   ")

    store.create(user_id="client_1", title="Hello", body="First", category="system")
    store.create(user_id="client_1", title="Again", body="Second", category="system")

    assert sender.calls[0][0] == ["fresh", "stale"]
    assert sender.calls[1][0] == ["fresh"]
    assert store.unread_count("client_1") == 2


def test_notification_without_push_still_lands_in_feed():
    sender = _RecordingSender(invalid=set())
    store = NotificationStore(sender=sender)
    seen = []
    store.add_listener(lambda record, alert: seen.append((record.title, alert)))
    store.register_device_token("client_1", "fresh")

    record = store.create(user_id="client_1", title="Quiet", body="In-app only", push=False)

    assert sender.calls == []
    assert seen == [("Quiet", False)]
    assert store.list_for_user("client_1")[0].id == record.id
    assert store.mark_read("client_1", record.id).read is True
    assert store.list_for_user("client_1", unread_only=True) == []


def test_push_sender_disabled_without_credentials(monkeypatch):
    monkeypatch.delenv("FIREBASE_CREDENTIALS_PATH", raising=False)
    sender = PushSender()
    assert sender.enabled is False
    assert sender.send_notification(["token"], "Title", "Body", {"a": 1}) == []
