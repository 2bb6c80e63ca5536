"""
Best-effort notifications

Push messages go out through Appwrite messaging; in-app notifications are rows
in the notifications collection. Neither may fail the request that triggered
them: every delivery error is logged here and dropped.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

import httpx
from bson import ObjectId

import config
from database import DocumentStore
from schemas import Notification

logger = logging.getLogger(__name__)


class AppwritePushClient:
    def __init__(self, endpoint: str, project_id: str, api_key: str, timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.endpoint = endpoint.rstrip("/")
        self.project_id = project_id
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "AppwritePushClient":
        return cls(config.APPWRITE_ENDPOINT, config.APPWRITE_PROJECT_ID, config.APPWRITE_API_KEY)

    def send(
        self,
        title: str,
        body: str,
        topics: Sequence[str] = (),
        users: Sequence[str] = (),
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        response = httpx.post(
            f"{self.endpoint}/messaging/messages/push",
            headers={"X-Appwrite-Project": self.project_id, "X-Appwrite-Key": self.api_key},
            json={
                "messageId": str(ObjectId()),
                "title": title,
                "body": body,
                "topics": list(topics),
                "users": list(users),
                "data": data or {},
                "priority": "normal",
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


def _run_now(func: Callable, *args, **kwargs) -> None:
    func(*args, **kwargs)


class NotificationChannel:
    """
    Fire-and-forget side channel for state transitions.

    `schedule` decides when delivery runs: FastAPI's BackgroundTasks.add_task
    defers it until after the response, the default runs it immediately.
    """

    def __init__(
        self,
        push: Optional[AppwritePushClient] = None,
        store: Optional[DocumentStore] = None,
        schedule: Callable[..., None] = _run_now,
    ):
        self.push = push
        self.store = store
        self.schedule = schedule

    def notify(
        self,
        title: str,
        body: str,
        *,
        topics: Sequence[str] = (),
        users: Sequence[str] = (),
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.push is None:
            return
        self.schedule(self._deliver_push, title, body, list(topics), list(users), dict(data or {}))

    def record(self, to: str, sender: str, type: str, payload: str) -> None:
        if self.store is None:
            return
        self.schedule(self._deliver_record, to, sender, type, payload)

    def _deliver_push(self, title, body, topics, users, data) -> None:
        try:
            self.push.send(title, body, topics=topics, users=users, data=data)
            logger.info("Push notification '%s' sent (topics=%s, users=%s)", title, topics, users)
        except Exception:
            logger.exception("Failed to send push notification '%s'", title)

    def _deliver_record(self, to, sender, type, payload) -> None:
        try:
            self.store.create(
                config.NOTIFICATIONS_COLLECTION,
                Notification(to=to, sender=sender, type=type, payload=payload),
            )
        except Exception:
            logger.exception("Failed to store %s notification for %s", type, to)
