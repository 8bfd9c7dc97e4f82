import os
import time
from threading import Lock
from typing import Callable, Dict, List

from app.models import PresenceState


def _env_seconds(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


TYPING_TTL_SECONDS = _env_seconds("TYPING_TTL_SECONDS", 1.0)


class PresenceTracker:
    """Ephemeral online/typing state. Nothing here is persisted."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, typing_ttl: float = TYPING_TTL_SECONDS):
        self._lock = Lock()
        self._clock = clock
        self.typing_ttl = typing_ttl
        self._connections: Dict[str, int] = {}
        self._typing: Dict[str, Dict[str, float]] = {}

    def connect(self, user_id: str) -> bool:
        """Register a connection; returns True when the user just came online."""
        with self._lock:
            count = self._connections.get(user_id, 0) + 1
            self._connections[user_id] = count
            return count == 1

    def disconnect(self, user_id: str) -> bool:
        """Drop a connection; returns True when the user just went offline."""
        with self._lock:
            count = self._connections.get(user_id, 0) - 1
            if count > 0:
                self._connections[user_id] = count
                return False
            went_offline = user_id in self._connections
            self._connections.pop(user_id, None)
            self._typing.pop(user_id, None)
            return went_offline

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return self._connections.get(user_id, 0) > 0

    def touch_typing(self, user_id: str, appointment_id: str) -> bool:
        """Record a keystroke; returns True when this starts a new typing burst."""
        with self._lock:
            threads = self._typing.setdefault(user_id, {})
            now = self._clock()
            started = threads.get(appointment_id, 0.0) <= now
            threads[appointment_id] = now + self.typing_ttl
            return started

    def clear_typing(self, user_id: str, appointment_id: str) -> bool:
        with self._lock:
            threads = self._typing.get(user_id, {})
            removed = threads.pop(appointment_id, None) is not None
            if not threads:
                self._typing.pop(user_id, None)
            return removed

    def typing_in(self, user_id: str) -> List[str]:
        with self._lock:
            now = self._clock()
            threads = self._typing.get(user_id, {})
            return sorted(appointment_id for appointment_id, expires in threads.items() if expires > now)

    def online_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def snapshot(self, user_id: str) -> PresenceState:
        return PresenceState(user_id=user_id, online=self.is_online(user_id), typing_in=self.typing_in(user_id))
