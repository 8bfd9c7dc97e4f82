import json
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Set

from app.models import GeoPoint, Profile
from app.services.errors import NotFoundError, ValidationError

DEFAULT_ADMIN_USERS = {"admin_1"}


@dataclass
class ProfileStore:
    """Read side of the account store: skills, rate, location, verification."""

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        configured_admins = {value.strip() for value in os.getenv("ADMIN_USER_IDS", "").split(",") if value.strip()}
        self._admin_user_ids: Set[str] = configured_admins or set(DEFAULT_ADMIN_USERS)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS profiles (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        role TEXT NOT NULL,
                        skills_json TEXT NOT NULL DEFAULT '[]',
                        service_rate REAL,
                        latitude REAL,
                        longitude REAL,
                        location_label TEXT NOT NULL DEFAULT '',
                        description TEXT NOT NULL DEFAULT '',
                        verified INTEGER NOT NULL DEFAULT 0,
                        rating REAL NOT NULL DEFAULT 0,
                        review_count INTEGER NOT NULL DEFAULT 0,
                        years_experience REAL NOT NULL DEFAULT 0,
                        jobs_completed INTEGER NOT NULL DEFAULT 0,
                        available INTEGER NOT NULL DEFAULT 1
                    )
                    """
                )
                conn.commit()

    def _seed_if_needed(self) -> None:
        seed_profiles: List[Dict[str, Any]] = [
            {
                "id": "client_1",
                "name": "Maria Santos",
                "role": "client",
                "location": {"lat": 14.5995, "lng": 120.9842},
                "location_label": "Ermita, Manila",
            },
            {
                "id": "client_2",
                "name": "Jose Reyes",
                "role": "client",
                "location": {"lat": 14.6091, "lng": 121.0223},
                "location_label": "Sta. Mesa, Manila",
            },
            {
                "id": "provider_1",
                "name": "Ramon Plumbing Services",
                "role": "provider",
                "skills": ["Plumbing", "Pipe Repair"],
                "service_rate": 1100,
                "location": {"lat": 14.6042, "lng": 120.9822},
                "location_label": "Binondo, Manila",
                "description": "Leak repair, pipe replacement and fixture installation.",
                "verified": True,
                "rating": 4.8,
                "review_count": 42,
                "years_experience": 8,
                "jobs_completed": 61,
            },
            {
                "id": "provider_2",
                "name": "Liza Electrical Works",
                "role": "provider",
                "skills": ["Electrical", "Wiring"],
                "service_rate": 1500,
                "location": {"lat": 14.5547, "lng": 121.0244},
                "location_label": "Makati",
                "description": "Residential wiring, breaker panels and lighting.",
                "verified": True,
                "rating": 4.6,
                "review_count": 18,
                "years_experience": 5,
                "jobs_completed": 22,
            },
            {
                "id": "provider_3",
                "name": "Andres Home Cleaning",
                "role": "provider",
                "skills": ["Cleaning", "Laundry"],
                "service_rate": 600,
                "location": {"lat": 14.6760, "lng": 121.0437},
                "location_label": "Quezon City",
                "description": "Deep cleaning for apartments and small offices.",
                "verified": False,
                "rating": 4.2,
                "review_count": 7,
                "years_experience": 2,
                "jobs_completed": 9,
            },
            {
                "id": "admin_1",
                "name": "Barangay Admin",
                "role": "admin",
            },
        ]
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT COUNT(*) AS count FROM profiles").fetchone()["count"]
                if existing:
                    return
                for profile in seed_profiles:
                    self._insert(conn, Profile(**profile))
                conn.commit()

    def _insert(self, conn: sqlite3.Connection, profile: Profile) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO profiles (
                id, name, role, skills_json, service_rate, latitude, longitude, location_label,
                description, verified, rating, review_count, years_experience, jobs_completed, available
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                profile.id,
                profile.name,
                profile.role,
                json.dumps(profile.skills),
                profile.service_rate,
                profile.location.lat if profile.location else None,
                profile.location.lng if profile.location else None,
                profile.location_label,
                profile.description,
                int(profile.verified),
                profile.rating,
                profile.review_count,
                profile.years_experience,
                profile.jobs_completed,
                int(profile.available),
            ),
        )

    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        try:
            skills = json.loads(row["skills_json"] or "[]")
        except json.JSONDecodeError:
            skills = []
        if not isinstance(skills, list):
            skills = []
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = GeoPoint(lat=row["latitude"], lng=row["longitude"])
        role = row["role"]
        if row["id"] in self._admin_user_ids:
            role = "admin"
        return Profile(
            id=row["id"],
            name=row["name"],
            role=role,
            skills=[str(skill) for skill in skills],
            service_rate=row["service_rate"],
            location=location,
            location_label=row["location_label"],
            description=row["description"],
            verified=bool(row["verified"]),
            rating=float(row["rating"] or 0),
            review_count=int(row["review_count"] or 0),
            years_experience=float(row["years_experience"] or 0),
            jobs_completed=int(row["jobs_completed"] or 0),
            available=bool(row["available"]),
        )

    def upsert(self, profile: Profile) -> Profile:
        if not profile.id.strip():
            raise ValidationError("Profile id is required")
        with self._lock:
            with self._connect() as conn:
                self._insert(conn, profile)
                conn.commit()
        return self.get(profile.id)

    def get(self, user_id: str) -> Profile:
        profile = self.find(user_id)
        if profile is None:
            raise NotFoundError("Profile not found")
        return profile

    def find(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_profile(row) if row else None

    def list_providers(self) -> List[Profile]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM profiles WHERE role = 'provider' ORDER BY id").fetchall()
        return [self._row_to_profile(row) for row in rows]

    def role_of(self, user_id: str) -> str:
        if user_id in self._admin_user_ids:
            return "admin"
        profile = self.find(user_id)
        return profile.role if profile else "client"
