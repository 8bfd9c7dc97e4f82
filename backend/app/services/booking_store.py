import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from app.models import GeoPoint, Offer, ServiceRequest, StatusHistoryEntry
from app.services.errors import (
    AuthorizationError,
    ConflictError,
    DuplicateApplicationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.session import Session

logger = logging.getLogger(__name__)


def _env_hours(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


OFFER_TTL_HOURS = _env_hours("OFFER_TTL_HOURS", 24)
REQUEST_TTL_HOURS = _env_hours("REQUEST_TTL_HOURS", 24)

REQUEST_TERMINAL_STATUSES = {"Complete", "Cancelled", "Declined"}
REQUEST_ACTIVE_STATUSES = {"Open", "Offered", "Accepted", "Working"}

# transition name -> (allowed source states, target state)
TRANSITIONS: Dict[str, Tuple[set[str], str]] = {
    "offer": ({"Open"}, "Offered"),
    "accept": ({"Offered"}, "Accepted"),
    "reject": ({"Offered"}, "Open"),
    "expire": ({"Offered"}, "Open"),
    "start": ({"Accepted"}, "Working"),
    "complete": ({"Working"}, "Complete"),
    "cancel": (set(REQUEST_ACTIVE_STATUSES), "Cancelled"),
    "decline": ({"Open", "Offered", "Accepted"}, "Declined"),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BookingStore:
    """Service requests, offers/applications and the request state machine."""

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        requester_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        type_of_work TEXT NOT NULL,
                        budget REAL,
                        min_budget REAL,
                        max_budget REAL,
                        latitude REAL,
                        longitude REAL,
                        location_label TEXT NOT NULL DEFAULT '',
                        preferred_date TEXT,
                        preferred_time TEXT,
                        notes TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'Open',
                        target_provider_id TEXT,
                        service_provider_id TEXT,
                        cancellation_reason TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        expires_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS offers (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        requester_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        direction TEXT NOT NULL,
                        commission_fee REAL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_status_history (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_offers_one_active_offer
                    ON offers(request_id) WHERE direction = 'offered' AND status = 'pending'
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_offers_one_pending_application
                    ON offers(request_id, provider_id) WHERE direction = 'applied' AND status = 'pending'
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON service_requests(status, created_at)")
                conn.commit()

    def _row_to_request(self, row: sqlite3.Row) -> ServiceRequest:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = GeoPoint(lat=row["latitude"], lng=row["longitude"])
        return ServiceRequest(
            id=row["id"],
            requester_id=row["requester_id"],
            name=row["name"],
            type_of_work=row["type_of_work"],
            budget=row["budget"],
            min_budget=row["min_budget"],
            max_budget=row["max_budget"],
            location=location,
            location_label=row["location_label"],
            preferred_date=row["preferred_date"],
            preferred_time=row["preferred_time"],
            notes=row["notes"],
            status=row["status"],
            target_provider_id=row["target_provider_id"],
            service_provider_id=row["service_provider_id"],
            cancellation_reason=row["cancellation_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )

    def _row_to_offer(self, row: sqlite3.Row) -> Offer:
        return Offer(
            id=row["id"],
            request_id=row["request_id"],
            requester_id=row["requester_id"],
            provider_id=row["provider_id"],
            direction=row["direction"],
            commission_fee=row["commission_fee"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_request_row(self, conn: sqlite3.Connection, request_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        return row

    def _load_offer_row(self, conn: sqlite3.Connection, offer_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM offers WHERE id = ?", (offer_id,)).fetchone()
        if not row:
            raise NotFoundError("Offer not found")
        return row

    def _check_transition(self, current: str, transition: str) -> str:
        allowed, target = TRANSITIONS[transition]
        if current in allowed:
            return target
        if transition == "accept" and current in {"Accepted", "Working", "Complete"}:
            raise ConflictError("Request already accepted")
        if transition == "offer" and current == "Offered":
            raise ConflictError("Request already has an active offer")
        if current in REQUEST_TERMINAL_STATUSES:
            raise InvalidTransitionError(current, transition, f"Cannot {transition} a request that is already {current}")
        raise InvalidTransitionError(current, transition)

    def _apply_transition(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        transition: str,
        actor_user_id: str,
        note: str = "",
        updates: Optional[Dict[str, Any]] = None,
        require: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Compare-and-swap the request status; raises ConflictError if it moved underneath us."""
        current = str(row["status"])
        target = self._check_transition(current, transition)
        now = _now_iso()
        fields = {"status": target, "updated_at": now, **(updates or {})}
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conditions = {"id": row["id"], "status": current, **(require or {})}
        where = " AND ".join(f"{column} = ?" for column in conditions)
        cursor = conn.execute(
            f"UPDATE service_requests SET {assignments} WHERE {where}",
            (*fields.values(), *conditions.values()),
        )
        if cursor.rowcount != 1:
            if transition == "accept":
                raise ConflictError("Request already accepted")
            raise ConflictError("Request was modified concurrently; reload and retry")
        conn.execute(
            """
            INSERT INTO request_status_history (id, request_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"rsh_{uuid4().hex[:10]}", row["id"], actor_user_id, current, target, note, now),
        )
        logger.info("Request %s %s: %s -> %s by %s", row["id"], transition, current, target, actor_user_id)
        return target

    def _set_offer_status(self, conn: sqlite3.Connection, offer_id: str, status: str) -> None:
        conn.execute(
            "UPDATE offers SET status = ?, updated_at = ? WHERE id = ? AND status = 'pending'",
            (status, _now_iso(), offer_id),
        )

    def _close_pending_offers(self, conn: sqlite3.Connection, request_id: str, status: str, keep: Optional[str] = None) -> None:
        conn.execute(
            "UPDATE offers SET status = ?, updated_at = ? WHERE request_id = ? AND status = 'pending' AND id != ?",
            (status, _now_iso(), request_id, keep or ""),
        )

    def create_request(
        self,
        session: Session,
        *,
        name: str,
        type_of_work: str,
        budget: Optional[float] = None,
        min_budget: Optional[float] = None,
        max_budget: Optional[float] = None,
        location: Optional[GeoPoint] = None,
        location_label: str = "",
        preferred_date: Optional[str] = None,
        preferred_time: Optional[str] = None,
        notes: str = "",
    ) -> ServiceRequest:
        if not name.strip():
            raise ValidationError("Name is required")
        if not type_of_work.strip():
            raise ValidationError("Type of work is required")
        for label, value in (("budget", budget), ("min_budget", min_budget), ("max_budget", max_budget)):
            if value is not None and value < 0:
                raise ValidationError(f"{label} must be non-negative")
        if min_budget is not None and max_budget is not None and min_budget > max_budget:
            raise ValidationError("min_budget must not exceed max_budget")

        request_id = f"req_{uuid4().hex[:10]}"
        now = datetime.now(timezone.utc)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO service_requests (
                        id, requester_id, name, type_of_work, budget, min_budget, max_budget, latitude, longitude,
                        location_label, preferred_date, preferred_time, notes, status, created_at, updated_at, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'Open', ?, ?, ?)
                    """,
                    (
                        request_id,
                        session.user_id,
                        name.strip(),
                        type_of_work.strip(),
                        budget,
                        min_budget,
                        max_budget,
                        location.lat if location else None,
                        location.lng if location else None,
                        location_label.strip(),
                        preferred_date,
                        preferred_time,
                        notes,
                        now.isoformat(),
                        now.isoformat(),
                        (now + timedelta(hours=REQUEST_TTL_HOURS)).isoformat(),
                    ),
                )
                conn.commit()
                row = self._load_request_row(conn, request_id)
        logger.info("Request %s created by %s", request_id, session.user_id)
        return self._row_to_request(row)

    def get_request(self, request_id: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                return self._row_to_request(self._load_request_row(conn, request_id))

    def list_open_requests(self, now: Optional[datetime] = None) -> List[ServiceRequest]:
        cutoff = (now or datetime.now(timezone.utc)).isoformat()
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM service_requests
                    WHERE status = 'Open' AND (expires_at IS NULL OR expires_at > ?)
                    ORDER BY created_at DESC
                    """,
                    (cutoff,),
                ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def list_requests_for_user(self, user_id: str, role: str = "all") -> List[ServiceRequest]:
        role_key = (role or "all").strip().lower()
        if role_key not in {"all", "requester", "provider"}:
            raise ValidationError("Invalid role value. Allowed: all, requester, provider")
        clauses = []
        params: List[str] = []
        if role_key in {"all", "requester"}:
            clauses.append("requester_id = ?")
            params.append(user_id)
        if role_key in {"all", "provider"}:
            clauses.append("service_provider_id = ? OR target_provider_id = ?")
            params.extend([user_id, user_id])
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM service_requests WHERE {' OR '.join(clauses)} ORDER BY created_at DESC",
                    params,
                ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def completed_work_by_provider(self) -> Dict[str, List[str]]:
        """Type of work of every completed booking, keyed by provider."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT service_provider_id, type_of_work FROM service_requests
                    WHERE status = 'Complete' AND service_provider_id IS NOT NULL
                    ORDER BY updated_at
                    """
                ).fetchall()
        history: Dict[str, List[str]] = {}
        for row in rows:
            history.setdefault(row["service_provider_id"], []).append(row["type_of_work"])
        return history

    def get_offer(self, offer_id: str) -> Offer:
        with self._lock:
            with self._connect() as conn:
                return self._row_to_offer(self._load_offer_row(conn, offer_id))

    def list_offers(
        self,
        request_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Offer]:
        clauses = []
        params: List[str] = []
        for column, value in (("request_id", request_id), ("provider_id", provider_id), ("status", status)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT * FROM offers {where} ORDER BY created_at", params).fetchall()
        return [self._row_to_offer(row) for row in rows]

    def history(self, request_id: str) -> List[StatusHistoryEntry]:
        with self._lock:
            with self._connect() as conn:
                self._load_request_row(conn, request_id)
                rows = conn.execute(
                    "SELECT * FROM request_status_history WHERE request_id = ? ORDER BY created_at, rowid",
                    (request_id,),
                ).fetchall()
        return [StatusHistoryEntry(**dict(row)) for row in rows]

    def has_already_applied(self, request_id: str, provider_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                return self._has_applied(conn, request_id, provider_id)

    def _has_applied(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM offers
            WHERE request_id = ? AND provider_id = ? AND direction = 'applied' AND status IN ('pending', 'accepted')
            """,
            (request_id, provider_id),
        ).fetchone()
        return row is not None

    def _validate_commission(self, row: sqlite3.Row, commission_fee: Optional[float]) -> None:
        if commission_fee is None:
            return
        if commission_fee < 0:
            raise ValidationError("commission_fee must be non-negative")
        low, high = row["min_budget"], row["max_budget"]
        if low is not None or high is not None:
            if low is not None and commission_fee < low:
                raise ValidationError(f"commission_fee must be at least {low:g}")
            if high is not None and commission_fee > high:
                raise ValidationError(f"commission_fee must not exceed {high:g}")
            return
        if row["budget"] is not None and commission_fee > row["budget"]:
            raise ValidationError(f"commission_fee must not exceed the budget of {row['budget']:g}")

    def apply(self, session: Session, request_id: str, commission_fee: Optional[float] = None) -> Offer:
        if session.role != "provider":
            raise AuthorizationError("Only service providers can apply to requests")
        offer_id = f"ofr_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                row = self._load_request_row(conn, request_id)
                if self._has_applied(conn, request_id, session.user_id):
                    raise DuplicateApplicationError("You have already applied to this request")
                if row["requester_id"] == session.user_id:
                    raise AuthorizationError("Cannot apply to your own request")
                if row["status"] != "Open":
                    raise InvalidTransitionError(row["status"], "apply", f"Cannot apply to a request that is {row['status']}")
                self._validate_commission(row, commission_fee)
                now = _now_iso()
                try:
                    conn.execute(
                        """
                        INSERT INTO offers (id, request_id, requester_id, provider_id, direction, commission_fee, status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, 'applied', ?, 'pending', ?, ?)
                        """,
                        (offer_id, request_id, row["requester_id"], session.user_id, commission_fee, now, now),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateApplicationError("You have already applied to this request") from exc
                conn.commit()
                offer = self._row_to_offer(self._load_offer_row(conn, offer_id))
        logger.info("Provider %s applied to request %s", session.user_id, request_id)
        return offer

    def create_offer(self, session: Session, request_id: str, provider_id: str) -> Tuple[ServiceRequest, Offer]:
        offer_id = f"ofr_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                row = self._load_request_row(conn, request_id)
                if row["requester_id"] != session.user_id:
                    raise AuthorizationError("Not authorized to offer this request")
                if provider_id == session.user_id:
                    raise ValidationError("Cannot offer a request to yourself")
                application = conn.execute(
                    """
                    SELECT commission_fee FROM offers
                    WHERE request_id = ? AND provider_id = ? AND direction = 'applied' AND status = 'pending'
                    """,
                    (request_id, provider_id),
                ).fetchone()
                self._apply_transition(
                    conn,
                    row,
                    "offer",
                    session.user_id,
                    note=f"offered to {provider_id}",
                    updates={"target_provider_id": provider_id},
                )
                now = _now_iso()
                try:
                    conn.execute(
                        """
                        INSERT INTO offers (id, request_id, requester_id, provider_id, direction, commission_fee, status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, 'offered', ?, 'pending', ?, ?)
                        """,
                        (
                            offer_id,
                            request_id,
                            session.user_id,
                            provider_id,
                            application["commission_fee"] if application else None,
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError("Request already has an active offer") from exc
                conn.commit()
                request = self._row_to_request(self._load_request_row(conn, request_id))
                offer = self._row_to_offer(self._load_offer_row(conn, offer_id))
        return request, offer

    def respond_to_offer(self, session: Session, offer_id: str, decision: str) -> Tuple[ServiceRequest, Offer]:
        if decision not in {"accept", "decline"}:
            raise ValidationError("Invalid decision. Allowed: accept, decline")
        with self._lock:
            with self._connect() as conn:
                offer_row = self._load_offer_row(conn, offer_id)
                row = self._load_request_row(conn, offer_row["request_id"])
                if offer_row["direction"] == "offered":
                    self._respond_as_provider(conn, session, offer_row, row, decision)
                else:
                    self._respond_as_requester(conn, session, offer_row, row, decision)
                conn.commit()
                request = self._row_to_request(self._load_request_row(conn, offer_row["request_id"]))
                offer = self._row_to_offer(self._load_offer_row(conn, offer_id))
        return request, offer

    def _respond_as_provider(
        self,
        conn: sqlite3.Connection,
        session: Session,
        offer_row: sqlite3.Row,
        row: sqlite3.Row,
        decision: str,
    ) -> None:
        if offer_row["status"] != "pending":
            raise ConflictError(f"Offer already {offer_row['status']}")
        if decision == "accept":
            self._check_transition(str(row["status"]), "accept")
        if offer_row["provider_id"] != session.user_id or row["target_provider_id"] != session.user_id:
            raise AuthorizationError(f"Not authorized to {decision} this offer")
        if decision == "accept":
            self._apply_transition(
                conn,
                row,
                "accept",
                session.user_id,
                note="offer accepted",
                updates={"target_provider_id": None, "service_provider_id": session.user_id},
                require={"target_provider_id": session.user_id},
            )
            self._set_offer_status(conn, offer_row["id"], "accepted")
            self._close_pending_offers(conn, row["id"], "declined", keep=offer_row["id"])
        else:
            self._apply_transition(
                conn,
                row,
                "reject",
                session.user_id,
                note="offer declined",
                updates={"target_provider_id": None},
                require={"target_provider_id": session.user_id},
            )
            self._set_offer_status(conn, offer_row["id"], "declined")

    def _respond_as_requester(
        self,
        conn: sqlite3.Connection,
        session: Session,
        offer_row: sqlite3.Row,
        row: sqlite3.Row,
        decision: str,
    ) -> None:
        if offer_row["status"] != "pending":
            raise ConflictError(f"Application already {offer_row['status']}")
        if row["requester_id"] != session.user_id:
            raise AuthorizationError(f"Not authorized to {decision} this application")
        if decision == "decline":
            self._set_offer_status(conn, offer_row["id"], "declined")
            return
        provider_id = offer_row["provider_id"]
        # The applicant already consented, so offer and acceptance happen in one step.
        self._apply_transition(
            conn,
            row,
            "offer",
            session.user_id,
            note=f"application from {provider_id} accepted",
            updates={"target_provider_id": provider_id},
        )
        offered = self._load_request_row(conn, row["id"])
        self._apply_transition(
            conn,
            offered,
            "accept",
            provider_id,
            note="application accepted",
            updates={"target_provider_id": None, "service_provider_id": provider_id},
            require={"target_provider_id": provider_id},
        )
        self._set_offer_status(conn, offer_row["id"], "accepted")
        self._close_pending_offers(conn, row["id"], "declined", keep=offer_row["id"])

    def start(self, session: Session, request_id: str) -> ServiceRequest:
        return self._provider_transition(session, request_id, "start")

    def complete(self, session: Session, request_id: str) -> ServiceRequest:
        return self._provider_transition(session, request_id, "complete")

    def _provider_transition(self, session: Session, request_id: str, transition: str) -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._load_request_row(conn, request_id)
                self._check_transition(str(row["status"]), transition)
                if row["service_provider_id"] != session.user_id:
                    raise AuthorizationError(f"Only the assigned provider can {transition} this request")
                self._apply_transition(conn, row, transition, session.user_id)
                conn.commit()
                return self._row_to_request(self._load_request_row(conn, request_id))

    def cancel(self, session: Session, request_id: str, reason: str = "") -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._load_request_row(conn, request_id)
                self._check_transition(str(row["status"]), "cancel")
                if row["requester_id"] != session.user_id and not session.is_admin:
                    raise AuthorizationError("Not authorized to cancel this request")
                self._apply_transition(
                    conn,
                    row,
                    "cancel",
                    session.user_id,
                    note=reason,
                    updates={"cancellation_reason": reason, "target_provider_id": None},
                )
                self._close_pending_offers(conn, request_id, "cancelled")
                conn.commit()
                return self._row_to_request(self._load_request_row(conn, request_id))

    def decline(self, session: Session, request_id: str, reason: str = "") -> ServiceRequest:
        with self._lock:
            with self._connect() as conn:
                row = self._load_request_row(conn, request_id)
                current = str(row["status"])
                self._check_transition(current, "decline")
                assigned = row["service_provider_id"] == session.user_id and current == "Accepted"
                if not (session.is_admin or assigned):
                    raise AuthorizationError("Not authorized to decline this request")
                self._apply_transition(
                    conn,
                    row,
                    "decline",
                    session.user_id,
                    note=reason,
                    updates={"cancellation_reason": reason, "target_provider_id": None},
                )
                self._close_pending_offers(conn, request_id, "cancelled")
                conn.commit()
                return self._row_to_request(self._load_request_row(conn, request_id))

    def expire_stale_offers(self, now: Optional[datetime] = None) -> List[Tuple[ServiceRequest, Offer]]:
        cutoff = ((now or datetime.now(timezone.utc)) - timedelta(hours=OFFER_TTL_HOURS)).isoformat()
        expired: List[Tuple[ServiceRequest, Offer]] = []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM offers WHERE direction = 'offered' AND status = 'pending' AND created_at < ?",
                    (cutoff,),
                ).fetchall()
                for offer_row in rows:
                    request_row = self._load_request_row(conn, offer_row["request_id"])
                    if request_row["status"] == "Offered" and request_row["target_provider_id"] == offer_row["provider_id"]:
                        self._apply_transition(
                            conn,
                            request_row,
                            "expire",
                            "system",
                            note="offer expired",
                            updates={"target_provider_id": None},
                            require={"target_provider_id": offer_row["provider_id"]},
                        )
                    self._set_offer_status(conn, offer_row["id"], "expired")
                    expired.append(
                        (
                            self._row_to_request(self._load_request_row(conn, offer_row["request_id"])),
                            self._row_to_offer(self._load_offer_row(conn, offer_row["id"])),
                        )
                    )
                conn.commit()
        if expired:
            logger.info("Expired %d stale offers", len(expired))
        return expired
