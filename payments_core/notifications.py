"""
Notification Intent Module

The core never delivers notifications itself. It emits intents of the shape
``{user_id, kind, payload}`` to a dispatcher which fans them out to the
injected notifiers. Delivery failures are logged and never reach the caller.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import uuid

import httpx

from .async_storage import AsyncStorageInterface
from .logging_config import get_logger, log_action


class NotificationKind(Enum):
    """Outcome events the core reports"""
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_FAILED = "transfer_failed"
    VERIFICATION_CODE_ISSUED = "verification_code_issued"
    SCHEDULE_EXECUTION_SUCCEEDED = "schedule_execution_succeeded"
    SCHEDULE_EXECUTION_FAILED = "schedule_execution_failed"
    SCHEDULE_EXECUTION_UPCOMING = "schedule_execution_upcoming"


# Payload keys never written to logs
_SECRET_KEYS = frozenset({"code"})


@dataclass
class NotificationIntent:
    user_id: str
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat()
        }

    def redacted_payload(self) -> Dict[str, Any]:
        return {k: ("***" if k in _SECRET_KEYS else v) for k, v in self.payload.items()}


class Notifier(ABC):
    """Abstract base class for notification delivery adapters"""

    @abstractmethod
    async def notify(self, intent: NotificationIntent) -> bool:
        """Deliver an intent. Returns True if successful."""


class LogNotifier(Notifier):
    """Writes intents to the application log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("payments.notifications")

    async def notify(self, intent: NotificationIntent) -> bool:
        log_action(
            self.logger, "info", f"Notification {intent.kind.value} for {intent.user_id}",
            user_id=intent.user_id, action="notify", resource=f"notification:{intent.id}",
            extra=intent.redacted_payload()
        )
        return True


class StorageNotifier(Notifier):
    """Persists intents as in-app notification records"""

    def __init__(self, storage: AsyncStorageInterface, table_name: str = "notifications"):
        self.storage = storage
        self.table_name = table_name

    async def notify(self, intent: NotificationIntent) -> bool:
        record = intent.to_dict()
        record["read"] = False
        await self.storage.save(self.table_name, intent.id, record)
        return True

    async def get_notifications(self, user_id: str,
                                kind: Optional[NotificationKind] = None) -> List[Dict[str, Any]]:
        """Stored notifications for a user, oldest first"""
        filters = {"user_id": user_id}
        if kind:
            filters["kind"] = kind.value
        records = await self.storage.find(self.table_name, filters)
        records.sort(key=lambda r: r["created_at"])
        return records


class WebhookNotifier(Notifier):
    """POSTs intents as JSON to an external delivery service"""

    def __init__(self, url: str, timeout: float = 5.0, api_key: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, intent: NotificationIntent) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = await self._client.post(self.url, json=intent.to_dict(), headers=headers)
        return 200 <= response.status_code < 300

    async def close(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """
    Fans intents out to every registered notifier

    Each notifier is isolated: a raising or failing notifier is logged and the
    remaining notifiers still run.
    """

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self.notifiers: List[Notifier] = list(notifiers or [])
        self.logger = get_logger("payments.notifications")

    def register(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    async def emit(
        self,
        user_id: Optional[str],
        kind: NotificationKind,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[NotificationIntent]:
        """Build and deliver an intent; returns None when there is no recipient"""
        if not user_id:
            return None

        intent = NotificationIntent(user_id=user_id, kind=kind, payload=payload or {})
        for notifier in self.notifiers:
            try:
                delivered = await notifier.notify(intent)
            except Exception:
                log_action(
                    self.logger, "error", f"Notifier {type(notifier).__name__} raised",
                    user_id=user_id, action="notify", resource=f"notification:{intent.id}",
                    extra={"kind": kind.value}, exc_info=True
                )
                continue

            if not delivered:
                log_action(
                    self.logger, "warning", f"Notifier {type(notifier).__name__} did not deliver",
                    user_id=user_id, action="notify", resource=f"notification:{intent.id}",
                    extra={"kind": kind.value}
                )
        return intent
