import logging
import os
from threading import Lock
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

# FCM rejects multicast batches above this size.
MULTICAST_LIMIT = 500


class PushSender:
    """Device/browser alerts over Firebase Cloud Messaging.

    Disabled unless FIREBASE_CREDENTIALS_PATH is set. Send failures are logged
    and never raised: the in-app feed is the source of truth, push is a hint.
    """

    def __init__(self):
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
            if not credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                self._initialized = True
                self._enabled = False
                logger.exception("Push disabled: firebase-admin is not installed")
                return

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized from %s", credentials_path)
            except Exception:
                self._enabled = False
                logger.exception("Push disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, Any],
    ) -> List[str]:
        """Send to every token; returns the tokens FCM reported as invalid."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        payload = {key: str(value) for key, value in data.items() if value is not None}
        invalid: List[str] = []
        for start in range(0, len(tokens), MULTICAST_LIMIT):
            batch_tokens = tokens[start : start + MULTICAST_LIMIT]
            try:
                message = self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=title, body=body),
                    tokens=batch_tokens,
                    data=payload,
                )
                batch = self._messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Push send failed for %d tokens", len(batch_tokens))
                continue
            for idx, response in enumerate(batch.responses):
                if response.success:
                    continue
                error_text = str(response.exception).lower() if response.exception else ""
                if "registration token" in error_text or "invalid argument" in error_text:
                    invalid.append(batch_tokens[idx])
        if invalid:
            logger.info("Pruning %d invalid device tokens", len(invalid))
        return invalid


push_sender = PushSender()
