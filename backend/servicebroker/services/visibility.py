from typing import List
from uuid import uuid4

from servicebroker.models import HiddenRequest
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import BrokerNotFoundError, BrokerPermissionError
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.repositories import HiddenRequestRepository, RequestRepository


class VisibilityLedger:
    """Provider-scoped feed suppression. Never touches the request's global status."""

    def __init__(
        self,
        db: Database,
        hidden: HiddenRequestRepository,
        requests: RequestRepository,
        tracker: ProviderStatusTracker,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._hidden = hidden
        self._requests = requests
        self._tracker = tracker
        self._clock = clock

    def hide(self, *, request_id: str, provider_id: str) -> HiddenRequest:
        with self._db.transaction() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id == provider_id:
                raise BrokerPermissionError("Requesters cannot hide their own request")
            existing = self._hidden.get(conn, provider_id, request_id)
            if existing:
                return existing
            hidden = HiddenRequest(
                id=f"hid_{uuid4().hex[:12]}",
                provider_id=provider_id,
                service_request_id=request_id,
                hidden_at=to_iso(self._clock()),
            )
            self._hidden.insert(conn, hidden)
            if request.status == "Open":
                self._tracker.hide(conn, request_id, provider_id)
        return hidden

    def unhide(self, *, request_id: str, provider_id: str) -> bool:
        with self._db.transaction() as conn:
            removed = self._hidden.delete(conn, provider_id, request_id)
            if removed:
                self._tracker.unhide(conn, request_id, provider_id)
        return removed

    def is_hidden(self, *, request_id: str, provider_id: str) -> bool:
        with self._db.read() as conn:
            return self._hidden.get(conn, provider_id, request_id) is not None

    def hidden_request_ids(self, *, provider_id: str) -> List[str]:
        with self._db.read() as conn:
            return self._hidden.request_ids_for_provider(conn, provider_id)
