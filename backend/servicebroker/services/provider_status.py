import sqlite3
from typing import List, Optional
from uuid import uuid4

from servicebroker.models import ProviderRequestStatus
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import BrokerNotFoundError, BrokerPermissionError, BrokerTransitionError
from servicebroker.services.repositories import ProviderStatusRepository, RequestRepository

# Negotiation rows only move forward; Assigned and Rejected share a rank so neither overrides the other.
STATUS_RANK = {
    "Hidden": 0,
    "Viewed": 1,
    "Negotiating": 2,
    "Quoted": 3,
    "Assigned": 4,
    "Rejected": 4,
    "Completed": 5,
}

RETIRABLE_STATUSES = ("Viewed", "Negotiating", "Quoted")


class ProviderStatusTracker:
    def __init__(
        self,
        db: Database,
        statuses: ProviderStatusRepository,
        requests: RequestRepository,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._statuses = statuses
        self._requests = requests
        self._clock = clock

    def _insert(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        provider_id: str,
        status: str,
        quote_id: Optional[str],
        now_iso: str,
    ) -> ProviderRequestStatus:
        row = ProviderRequestStatus(
            id=f"prs_{uuid4().hex[:12]}",
            request_id=request_id,
            provider_id=provider_id,
            status=status,  # type: ignore[arg-type]
            quote_id=quote_id,
            last_updated=now_iso,
        )
        self._statuses.insert(conn, row)
        return row

    def advance(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        provider_id: str,
        status: str,
        quote_id: Optional[str] = None,
    ) -> ProviderRequestStatus:
        now_iso = to_iso(self._clock())
        existing = self._statuses.get(conn, request_id, provider_id)
        if existing is None:
            return self._insert(conn, request_id, provider_id, status, quote_id, now_iso)
        current_rank = STATUS_RANK[existing.status]
        next_rank = STATUS_RANK[status]
        if next_rank > current_rank or (next_rank == current_rank and existing.status == status and quote_id):
            self._statuses.update(conn, existing.id, status, quote_id or existing.quote_id, now_iso)
            return existing.model_copy(
                update={"status": status, "quote_id": quote_id or existing.quote_id, "last_updated": now_iso}
            )
        return existing

    def hide(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> None:
        existing = self._statuses.get(conn, request_id, provider_id)
        now_iso = to_iso(self._clock())
        if existing is None:
            self._insert(conn, request_id, provider_id, "Hidden", None, now_iso)
        elif existing.status == "Viewed":
            self._statuses.update(conn, existing.id, "Hidden", existing.quote_id, now_iso)

    def unhide(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> None:
        existing = self._statuses.get(conn, request_id, provider_id)
        if existing is not None and existing.status == "Hidden":
            self._statuses.update(conn, existing.id, "Viewed", existing.quote_id, to_iso(self._clock()))

    def fan_out_assignment(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        winner_provider_id: str,
        quote_id: Optional[str],
    ) -> int:
        """Reject every other live negotiation on the request and mark the winner Assigned."""
        now_iso = to_iso(self._clock())
        rejected = self._statuses.bulk_transition(
            conn,
            request_id,
            RETIRABLE_STATUSES,
            "Rejected",
            now_iso,
            exclude_provider_id=winner_provider_id,
        )
        winner = self._statuses.get(conn, request_id, winner_provider_id)
        if winner is None:
            self._insert(conn, request_id, winner_provider_id, "Assigned", quote_id, now_iso)
        else:
            self._statuses.update(conn, winner.id, "Assigned", quote_id or winner.quote_id, now_iso)
        return rejected

    def mark_completed(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> None:
        self.advance(conn, request_id, provider_id, "Completed")

    def retire_all(self, conn: sqlite3.Connection, request_id: str) -> int:
        return self._statuses.bulk_transition(
            conn,
            request_id,
            (*RETIRABLE_STATUSES, "Assigned"),
            "Rejected",
            to_iso(self._clock()),
        )

    def current(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> Optional[ProviderRequestStatus]:
        return self._statuses.get(conn, request_id, provider_id)

    def record_view(self, *, request_id: str, provider_id: str) -> ProviderRequestStatus:
        with self._db.transaction() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id == provider_id:
                raise BrokerPermissionError("Requesters cannot act as a provider on their own request")
            if request.status != "Open":
                existing = self._statuses.get(conn, request_id, provider_id)
                if existing:
                    return existing
                raise BrokerTransitionError(f"Service request is no longer open (status {request.status})")
            return self.advance(conn, request_id, provider_id, "Viewed")

    def get(self, *, request_id: str, provider_id: str) -> ProviderRequestStatus:
        with self._db.read() as conn:
            row = self._statuses.get(conn, request_id, provider_id)
        if not row:
            raise BrokerNotFoundError("Provider status not found")
        return row

    def list_for_request(self, *, request_id: str, actor_user_id: str) -> List[ProviderRequestStatus]:
        with self._db.read() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id != actor_user_id:
                raise BrokerPermissionError("Only the requester can list provider statuses")
            return self._statuses.list_for_request(conn, request_id)
