import asyncio
import logging
import os
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple

from app.models import RealtimeEvent
from app.services.errors import DeliveryError
from app.services.presence import PresenceTracker

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


REALTIME_QUEUE_SIZE = _env_int("REALTIME_QUEUE_SIZE", 256)

# Presence events may be dropped on a full queue; anything else drops the subscriber.
LOSSY_EVENT_TYPES = {"typing", "stop_typing", "presence"}

_CLOSED = object()


class Subscription:
    """One consumer of a channel, bound to the loop it was created on (or ``loop``).

    Events are handed over with ``call_soon_threadsafe`` so publishers on any
    thread keep FIFO order per subscriber. ``cancel`` only stops delivery; it
    never touches stored messages or unread state.
    """

    def __init__(
        self,
        dispatcher: "RealtimeDispatcher",
        channel: str,
        user_id: str,
        maxsize: int,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.channel = channel
        self.user_id = user_id
        self._dispatcher = dispatcher
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self._failed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def deliver(self, event: RealtimeEvent) -> bool:
        if self._closed:
            return False
        try:
            self._loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            # Loop already shut down; the consumer is gone.
            self._closed = True
            self._dispatcher._remove(self)
            return False
        return True

    def _offer(self, event: RealtimeEvent) -> None:
        if self._closed:
            return
        if self._queue.qsize() < self._maxsize:
            self._queue.put_nowait(event)
            return
        if event.type in LOSSY_EVENT_TYPES:
            logger.debug("Dropped %s event for %s on %s", event.type, self.user_id, self.channel)
            return
        logger.warning("Subscriber %s on %s fell behind; dropping subscription", self.user_id, self.channel)
        self._failed = True
        self._shutdown()

    def _shutdown(self) -> None:
        self._closed = True
        self._dispatcher._remove(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._dispatcher._remove(self)
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)
        except RuntimeError:
            pass

    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        """Next event, or None once cancelled. Raises DeliveryError if the channel overflowed."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            if self._failed:
                raise DeliveryError(f"Real-time channel {self.channel} overflowed; rejoin to resync")
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> RealtimeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class RealtimeDispatcher:
    """Fan-out of thread and user events to live subscriptions."""

    def __init__(self, presence: Optional[PresenceTracker] = None, queue_size: int = REALTIME_QUEUE_SIZE):
        self._lock = Lock()
        self._channels: Dict[str, List[Subscription]] = {}
        self._typing_handles: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self.presence = presence or PresenceTracker()
        self.queue_size = queue_size

    @staticmethod
    def thread_channel(appointment_id: str) -> str:
        return f"thread:{appointment_id}"

    @staticmethod
    def user_channel(user_id: str) -> str:
        return f"user:{user_id}"

    def subscribe(
        self, channel: str, user_id: str, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> Subscription:
        subscription = Subscription(self, channel, user_id, self.queue_size, loop=loop)
        with self._lock:
            self._channels.setdefault(channel, []).append(subscription)
        logger.debug("User %s subscribed to %s", user_id, channel)
        return subscription

    def subscribe_thread(
        self, appointment_id: str, user_id: str, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> Subscription:
        return self.subscribe(self.thread_channel(appointment_id), user_id, loop=loop)

    def subscribe_user(self, user_id: str) -> Subscription:
        return self.subscribe(self.user_channel(user_id), user_id)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._channels.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._channels.pop(subscription.channel, None)

    def publish(self, channel: str, event: RealtimeEvent, exclude_user: Optional[str] = None) -> int:
        with self._lock:
            subscribers = list(self._channels.get(channel, []))
        delivered = 0
        for subscription in subscribers:
            if exclude_user and subscription.user_id == exclude_user:
                continue
            if subscription.deliver(event):
                delivered += 1
        return delivered

    def publish_thread(self, appointment_id: str, event: RealtimeEvent, exclude_user: Optional[str] = None) -> int:
        return self.publish(self.thread_channel(appointment_id), event, exclude_user=exclude_user)

    def publish_user(self, user_id: str, event: RealtimeEvent) -> int:
        return self.publish(self.user_channel(user_id), event)

    def viewers(self, appointment_id: str) -> Set[str]:
        with self._lock:
            return {s.user_id for s in self._channels.get(self.thread_channel(appointment_id), []) if s.active}

    def is_viewing(self, user_id: str, appointment_id: str) -> bool:
        return user_id in self.viewers(appointment_id)

    def typing(self, user_id: str, appointment_id: str) -> None:
        """Broadcast a keystroke; the indicator clears after ``typing_ttl`` of silence.

        Must be called from the event loop, which owns the debounce timer.
        """
        loop = asyncio.get_running_loop()
        started = self.presence.touch_typing(user_id, appointment_id)
        key = (user_id, appointment_id)
        previous = self._typing_handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._typing_handles[key] = loop.call_later(self.presence.typing_ttl, self._expire_typing, user_id, appointment_id)
        if started:
            self.publish_thread(
                appointment_id,
                RealtimeEvent(type="typing", appointment_id=appointment_id, user_id=user_id),
                exclude_user=user_id,
            )

    def stop_typing(self, user_id: str, appointment_id: str) -> None:
        handle = self._typing_handles.pop((user_id, appointment_id), None)
        if handle is not None:
            handle.cancel()
        if self.presence.clear_typing(user_id, appointment_id):
            self.publish_thread(
                appointment_id,
                RealtimeEvent(type="stop_typing", appointment_id=appointment_id, user_id=user_id),
                exclude_user=user_id,
            )

    def _expire_typing(self, user_id: str, appointment_id: str) -> None:
        self._typing_handles.pop((user_id, appointment_id), None)
        self.stop_typing(user_id, appointment_id)

    def clear_user_typing(self, user_id: str) -> None:
        for key in [key for key in self._typing_handles if key[0] == user_id]:
            self.stop_typing(*key)
