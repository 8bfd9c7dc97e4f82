import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from uuid import uuid4

from app.models import ChatGroup, ConversationSummary, Message
from app.services.errors import AuthorizationError, ConflictError, MarketplaceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class ConversationStore:
    """Per-appointment message threads.

    Sending is a two-phase write: ``stage_message`` stores a pending row only
    the sender can see, ``commit_message`` makes it authoritative and notifies
    listeners while still holding the store lock (so listeners observe commit
    order), and ``rollback_message`` retracts a pending row whose commit failed.
    Unread counts are always derived from message status, never stored.
    """

    db_path: str
    _listeners: List[Callable[[Message], None]] = field(default_factory=list, init=False, repr=False)

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
                    CREATE TABLE IF NOT EXISTS conversations (
                        appointment_id TEXT PRIMARY KEY,
                        requester_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'open',
                        created_at TEXT NOT NULL,
                        closed_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        appointment_id TEXT NOT NULL,
                        seq INTEGER NOT NULL DEFAULT 0,
                        sender_id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        client_message_id TEXT,
                        timestamp TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'sent',
                        state TEXT NOT NULL DEFAULT 'pending',
                        seen_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_client_id
                    ON messages(appointment_id, sender_id, client_message_id) WHERE client_message_id IS NOT NULL
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(appointment_id, state, seq)")
                conn.commit()

    def add_listener(self, listener: Callable[[Message], None]) -> None:
        self._listeners.append(listener)

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            appointment_id=row["appointment_id"],
            seq=row["seq"],
            sender_id=row["sender_id"],
            body=row["body"],
            client_message_id=row["client_message_id"],
            timestamp=row["timestamp"],
            status=row["status"],
            state=row["state"],
        )

    def _load_conversation(self, conn: sqlite3.Connection, appointment_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM conversations WHERE appointment_id = ?", (appointment_id,)).fetchone()
        if not row:
            raise NotFoundError("Conversation not found")
        return row

    def _counterpart(self, row: sqlite3.Row, user_id: str) -> str:
        if user_id == row["requester_id"]:
            return row["provider_id"]
        if user_id == row["provider_id"]:
            return row["requester_id"]
        raise AuthorizationError("Access denied to this chat")

    def open_conversation(self, appointment_id: str, requester_id: str, provider_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations (appointment_id, requester_id, provider_id, status, created_at)
                    VALUES (?, ?, ?, 'open', ?)
                    ON CONFLICT(appointment_id) DO UPDATE SET
                        requester_id = excluded.requester_id,
                        provider_id = excluded.provider_id,
                        status = 'open',
                        closed_at = NULL
                    """,
                    (appointment_id, requester_id, provider_id, _now().isoformat()),
                )
                conn.commit()
        logger.info("Conversation %s opened between %s and %s", appointment_id, requester_id, provider_id)

    def close_conversation(self, appointment_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE conversations SET status = 'closed', closed_at = ? WHERE appointment_id = ? AND status = 'open'",
                    (_now().isoformat(), appointment_id),
                )
                conn.commit()
                return cursor.rowcount == 1

    def has_conversation(self, appointment_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT 1 FROM conversations WHERE appointment_id = ?", (appointment_id,)
                ).fetchone()
        return row is not None

    def participants(self, appointment_id: str) -> Tuple[str, str]:
        with self._lock:
            with self._connect() as conn:
                row = self._load_conversation(conn, appointment_id)
        return row["requester_id"], row["provider_id"]

    def counterpart(self, appointment_id: str, user_id: str) -> str:
        with self._lock:
            with self._connect() as conn:
                return self._counterpart(self._load_conversation(conn, appointment_id), user_id)

    def stage_message(
        self,
        appointment_id: str,
        sender_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message body is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message body must be at most {MAX_MESSAGE_LENGTH} characters")
        message_id = f"msg_{uuid4().hex[:12]}"
        with self._lock:
            with self._connect() as conn:
                conversation = self._load_conversation(conn, appointment_id)
                self._counterpart(conversation, sender_id)
                if conversation["status"] != "open":
                    raise ConflictError("Conversation is closed")
                if client_message_id:
                    existing = conn.execute(
                        "SELECT * FROM messages WHERE appointment_id = ? AND sender_id = ? AND client_message_id = ?",
                        (appointment_id, sender_id, client_message_id),
                    ).fetchone()
                    if existing:
                        return self._row_to_message(existing)
                conn.execute(
                    """
                    INSERT INTO messages (id, appointment_id, sender_id, body, client_message_id, timestamp, status, state)
                    VALUES (?, ?, ?, ?, ?, ?, 'sent', 'pending')
                    """,
                    (message_id, appointment_id, sender_id, text, client_message_id, _now().isoformat()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return self._row_to_message(row)

    def commit_message(self, message_id: str) -> Message:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
                if not row:
                    raise NotFoundError("Message not found")
                if row["state"] == "committed":
                    return self._row_to_message(row)
                conversation = self._load_conversation(conn, row["appointment_id"])
                if conversation["status"] != "open":
                    raise ConflictError("Conversation is closed")
                last = conn.execute(
                    """
                    SELECT seq, timestamp FROM messages
                    WHERE appointment_id = ? AND state = 'committed'
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (row["appointment_id"],),
                ).fetchone()
                now = _now()
                if last and _parse(last["timestamp"]) > now:
                    now = _parse(last["timestamp"])
                seq = (last["seq"] if last else 0) + 1
                conn.execute(
                    "UPDATE messages SET state = 'committed', seq = ?, timestamp = ? WHERE id = ?",
                    (seq, now.isoformat(), message_id),
                )
                conn.commit()
                committed = self._row_to_message(conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone())
                for listener in self._listeners:
                    listener(committed)
        return committed

    def rollback_message(self, message_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM messages WHERE id = ? AND state = 'pending'", (message_id,))
                conn.commit()
        if cursor.rowcount:
            logger.info("Retracted pending message %s", message_id)
        return cursor.rowcount == 1

    def append_message(
        self,
        appointment_id: str,
        sender_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        pending = self.stage_message(appointment_id, sender_id, body, client_message_id=client_message_id)
        if pending.state == "committed":
            return pending
        try:
            return self.commit_message(pending.id)
        except MarketplaceError:
            self.rollback_message(pending.id)
            raise

    def list_messages(self, appointment_id: str, viewer_id: str) -> List[Message]:
        """Committed history plus the viewer's own pending messages."""
        with self._lock:
            with self._connect() as conn:
                self._counterpart(self._load_conversation(conn, appointment_id), viewer_id)
                rows = conn.execute(
                    """
                    SELECT * FROM messages
                    WHERE appointment_id = ? AND (state = 'committed' OR sender_id = ?)
                    ORDER BY state = 'pending', seq, row_id
                    """,
                    (appointment_id, viewer_id),
                ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def join(self, appointment_id: str, user_id: str, subscribe: Callable[[], T]) -> Tuple[List[Message], T]:
        """Read the committed backlog and register a subscriber atomically.

        Commits notify listeners under the same lock, so nothing committed after
        the backlog read can be missed by the new subscriber, nor seen twice.
        """
        with self._lock:
            with self._connect() as conn:
                conversation = self._load_conversation(conn, appointment_id)
                self._counterpart(conversation, user_id)
                rows = conn.execute(
                    "SELECT * FROM messages WHERE appointment_id = ? AND state = 'committed' ORDER BY seq",
                    (appointment_id,),
                ).fetchall()
                subscription = subscribe()
                conn.execute(
                    """
                    UPDATE messages SET status = 'delivered'
                    WHERE appointment_id = ? AND sender_id != ? AND state = 'committed' AND status = 'sent'
                    """,
                    (appointment_id, user_id),
                )
                conn.commit()
        return [self._row_to_message(row) for row in rows], subscription

    def mark_delivered(self, appointment_id: str, recipient_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE messages SET status = 'delivered'
                    WHERE appointment_id = ? AND sender_id != ? AND state = 'committed' AND status = 'sent'
                    """,
                    (appointment_id, recipient_id),
                )
                conn.commit()
                return cursor.rowcount

    def mark_seen(self, appointment_id: str, participant_id: str) -> int:
        """Mark every counterpart message as seen; returns how many changed."""
        with self._lock:
            with self._connect() as conn:
                self._counterpart(self._load_conversation(conn, appointment_id), participant_id)
                cursor = conn.execute(
                    """
                    UPDATE messages SET status = 'seen', seen_at = ?
                    WHERE appointment_id = ? AND sender_id != ? AND state = 'committed' AND status != 'seen'
                    """,
                    (_now().isoformat(), appointment_id, participant_id),
                )
                conn.commit()
                return cursor.rowcount

    def _unread(self, conn: sqlite3.Connection, appointment_id: str, participant_id: str) -> int:
        row = conn.execute(
            """
            SELECT COUNT(*) AS count FROM messages
            WHERE appointment_id = ? AND sender_id != ? AND state = 'committed' AND status != 'seen'
            """,
            (appointment_id, participant_id),
        ).fetchone()
        return int(row["count"])

    def unread_count(self, appointment_id: str, participant_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                self._counterpart(self._load_conversation(conn, appointment_id), participant_id)
                return self._unread(conn, appointment_id, participant_id)

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM conversations WHERE requester_id = ? OR provider_id = ? ORDER BY created_at",
                    (user_id, user_id),
                ).fetchall()
                summaries = []
                for row in rows:
                    last = conn.execute(
                        """
                        SELECT * FROM messages WHERE appointment_id = ? AND state = 'committed'
                        ORDER BY seq DESC LIMIT 1
                        """,
                        (row["appointment_id"],),
                    ).fetchone()
                    summaries.append(
                        ConversationSummary(
                            appointment_id=row["appointment_id"],
                            counterpart_id=self._counterpart(row, user_id),
                            conversation_status=row["status"],
                            unread_count=self._unread(conn, row["appointment_id"], user_id),
                            last_message=self._row_to_message(last) if last else None,
                        )
                    )
        return summaries


def _last_message_key(item: ChatGroup) -> float:
    if item.last_message is None:
        return float("-inf")
    return _parse(item.last_message.timestamp).timestamp()


def group_conversations(summaries: Iterable[ConversationSummary]) -> List[ChatGroup]:
    """Collapse threads with the same counterpart into one chat-list entry."""
    groups: Dict[str, ChatGroup] = {}
    for summary in summaries:
        group = groups.get(summary.counterpart_id)
        if group is None:
            groups[summary.counterpart_id] = ChatGroup(
                counterpart_id=summary.counterpart_id,
                appointments=[summary.appointment_id],
                total_unread_count=summary.unread_count,
                last_message=summary.last_message,
                request_status=summary.request_status,
            )
            continue
        group.appointments.append(summary.appointment_id)
        group.total_unread_count += summary.unread_count
        if summary.last_message and (
            group.last_message is None
            or _parse(summary.last_message.timestamp) > _parse(group.last_message.timestamp)
        ):
            group.last_message = summary.last_message
            group.request_status = summary.request_status
    return sorted(groups.values(), key=_last_message_key, reverse=True)
