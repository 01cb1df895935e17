"""Push notification delivery over Firebase Cloud Messaging.

Delivery is best-effort everywhere: nothing in here raises into a request.
Without Firebase credentials the notifier runs disabled and every send is
skipped with a warning.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Set

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "labourmarket"

# send_each_for_multicast rejects more tokens than this
MULTICAST_LIMIT = 500


def _short(token: str) -> str:
    return f"{token[:10]}..."


def _stringify(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # FCM data payloads only carry string values
    return {str(k): "" if v is None else str(v) for k, v in (data or {}).items()}


@dataclass
class MulticastReport:
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: List[str] = field(default_factory=list)


class PushNotifier:
    def __init__(self, firebase_app: Optional[firebase_admin.App] = None):
        self._app = firebase_app

    @classmethod
    def from_credentials(cls, credentials_path: Optional[str]) -> "PushNotifier":
        if not credentials_path:
            logger.warning("FIREBASE_CREDENTIALS not set; push notifications are disabled")
            return cls(None)
        try:
            app = firebase_admin.get_app(FIREBASE_APP_NAME)
        except ValueError:
            try:
                cred = credentials.Certificate(credentials_path)
                app = firebase_admin.initialize_app(cred, name=FIREBASE_APP_NAME)
                logger.info("Firebase Admin initialized from %s", credentials_path)
            except (ValueError, OSError) as e:
                logger.warning("Firebase credentials invalid (%s); push notifications are disabled", e)
                return cls(None)
        return cls(app)

    @property
    def enabled(self) -> bool:
        return self._app is not None

    async def send(self, token: Optional[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
        if not self.enabled:
            logger.warning("Skipping notification: Firebase Admin not initialized")
            return False
        if not token:
            logger.warning("Skipping notification: no push token provided")
            return False

        logger.info("[Notification] Sending to %s title=%r", _short(token), title)
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data=_stringify(data),
        )
        try:
            message_id = await asyncio.to_thread(messaging.send, message, app=self._app)
        except (exceptions.FirebaseError, ValueError) as e:
            logger.error("[Notification] Error sending to %s: %s", _short(token), e)
            return False
        logger.info("[Notification] Sent message %s", message_id)
        return True

    async def send_multicast(
        self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None
    ) -> MulticastReport:
        tokens = [t for t in tokens if t]
        if not self.enabled:
            logger.warning("Skipping broadcast: Firebase Admin not initialized")
            return MulticastReport(failure_count=len(tokens), failed_tokens=tokens)
        if not tokens:
            logger.warning("Skipping broadcast: no tokens provided")
            return MulticastReport()

        logger.info("[Notification] Broadcasting to %d tokens title=%r", len(tokens), title)
        report = MulticastReport()
        for start in range(0, len(tokens), MULTICAST_LIMIT):
            chunk = tokens[start:start + MULTICAST_LIMIT]
            message = messaging.MulticastMessage(
                tokens=chunk,
                notification=messaging.Notification(title=title, body=body),
                data=_stringify(data),
            )
            try:
                response = await asyncio.to_thread(messaging.send_each_for_multicast, message, app=self._app)
            except (exceptions.FirebaseError, ValueError) as e:
                logger.error("[Notification] Error sending broadcast: %s", e)
                report.failure_count += len(chunk)
                report.failed_tokens.extend(chunk)
                continue

            report.success_count += response.success_count
            report.failure_count += response.failure_count
            for token, resp in zip(chunk, response.responses):
                if not resp.success:
                    report.failed_tokens.append(token)
                    logger.error("[Notification] Failure for token %s: %s", _short(token), resp.exception)
        logger.info(
            "[Notification] Broadcast results: %d successes, %d failures",
            report.success_count,
            report.failure_count,
        )
        return report


class NotificationDispatcher:
    """Runs notification work as background tasks after the triggering write."""

    def __init__(self, notifier: PushNotifier):
        self.notifier = notifier
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, work: Awaitable[Any], label: str = "notification") -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(work, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guard(self, work: Awaitable[Any], label: str) -> None:
        try:
            await work
        except Exception:
            logger.exception("[Notification] %s failed", label)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
