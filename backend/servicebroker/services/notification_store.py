from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from servicebroker.models import NotificationRecord
from servicebroker.services.events import (
    AgreementFinalized,
    BrokerEvent,
    QuoteReceived,
    RequestAssigned,
    RequestCompleted,
    WorkflowMilestoneReached,
)
from servicebroker.services.request_lifecycle import RequestLifecycle


class NotificationStore:
    def __init__(self, max_records: int = 5000):
        self._lock = Lock()
        self._max_records = max_records
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        payload: Optional[Dict[str, str]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
            payload=payload or {},
        )
        with self._lock:
            self._notifications.insert(0, record)
            del self._notifications[self._max_records :]
        return record

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


class EventNotifier:
    """Subscriber that turns broker events into per-user notification records."""

    def __init__(self, store: NotificationStore, requests: RequestLifecycle) -> None:
        self._store = store
        self._requests = requests

    def __call__(self, event: BrokerEvent) -> None:
        request = self._requests.get(event.request_id)  # type: ignore[attr-defined]
        deep_link = f"request:{request.id}"
        payload = {"event": event.name, **event.payload()}
        if isinstance(event, QuoteReceived):
            self._store.create(
                user_id=request.requester_id,
                title="New quote received",
                body=f"A provider quoted on your {request.subcategory} request.",
                category="quote",
                deep_link=deep_link,
                payload=payload,
            )
        elif isinstance(event, AgreementFinalized):
            for user_id in (request.requester_id, event.provider_id):
                self._store.create(
                    user_id=user_id,
                    title="Agreement finalized",
                    body=f"Both parties accepted the quote for {request.subcategory}.",
                    category="agreement",
                    deep_link=deep_link,
                    payload=payload,
                )
        elif isinstance(event, RequestAssigned):
            self._store.create(
                user_id=event.provider_id,
                title="You have been assigned",
                body=f"You are now assigned to {request.subcategory} in {request.location}.",
                category="request",
                deep_link=deep_link,
                payload=payload,
            )
        elif isinstance(event, WorkflowMilestoneReached):
            self._store.create(
                user_id=request.requester_id,
                title="Job update",
                body=f"Your {request.subcategory} job is now {event.milestone.replace('_', ' ')}.",
                category="workflow",
                deep_link=deep_link,
                payload=payload,
            )
        elif isinstance(event, RequestCompleted):
            self._store.create(
                user_id=request.requester_id,
                title="Request completed",
                body=f"Your {request.subcategory} request has been completed.",
                category="request",
                deep_link=deep_link,
                payload=payload,
            )


notification_store = NotificationStore()
