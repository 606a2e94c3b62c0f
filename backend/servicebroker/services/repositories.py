import sqlite3
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from servicebroker.models import (
    Agreement,
    HiddenRequest,
    Message,
    ProviderRequestStatus,
    Quote,
    ServiceRequest,
    WorkflowStatus,
)

MILESTONE_COLUMNS = {
    "assigned": ("is_assigned", "assigned_at"),
    "in_progress": ("is_in_progress", "in_progress_at"),
    "checked_in": ("is_checked_in", "checked_in_at"),
    "completed": ("is_completed", "completed_at"),
}

ACCEPTANCE_COLUMNS = {
    "requester": ("requester_accepted", "requester_accepted_at"),
    "provider": ("provider_accepted", "provider_accepted_at"),
}

QUOTE_ACCEPTANCE_COLUMNS = {
    "requester": ("accepted_by_requester", "requester_accepted_at"),
    "provider": ("accepted_by_provider", "provider_accepted_at"),
}


def _placeholders(values: Iterable[object]) -> str:
    return ", ".join("?" for _ in values)


class RequestRepository:
    def _from_row(self, row: sqlite3.Row) -> ServiceRequest:
        return ServiceRequest(
            id=row["id"],
            requester_id=row["requester_id"],
            booking_mode=row["booking_mode"],
            category=row["category"],
            subcategory=row["subcategory"],
            location=row["location"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            date=row["request_date"],
            time=row["request_time"],
            title=row["title"],
            description=row["description"],
            notes=row["notes"],
            assigned_provider_id=row["assigned_provider_id"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert(self, conn: sqlite3.Connection, request: ServiceRequest) -> None:
        conn.execute(
            """
            INSERT INTO service_requests (
                id, requester_id, booking_mode, category, subcategory, location, latitude, longitude,
                request_date, request_time, title, description, notes, assigned_provider_id, status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.requester_id,
                request.booking_mode,
                request.category,
                request.subcategory,
                request.location,
                request.latitude,
                request.longitude,
                request.date,
                request.time,
                request.title,
                request.description,
                request.notes,
                request.assigned_provider_id,
                request.status,
                request.created_at,
                request.updated_at,
            ),
        )

    def get(self, conn: sqlite3.Connection, request_id: str) -> Optional[ServiceRequest]:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        return self._from_row(row) if row else None

    def list_for_requester(
        self,
        conn: sqlite3.Connection,
        requester_id: str,
        status: Optional[str] = None,
        booking_mode: Optional[str] = None,
    ) -> List[ServiceRequest]:
        query = "SELECT * FROM service_requests WHERE requester_id = ?"
        params: List[object] = [requester_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        if booking_mode:
            query += " AND booking_mode = ?"
            params.append(booking_mode)
        query += " ORDER BY created_at DESC"
        return [self._from_row(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def list_open(self, conn: sqlite3.Connection, exclude_ids: Iterable[str] = ()) -> List[ServiceRequest]:
        excluded = list(exclude_ids)
        query = "SELECT * FROM service_requests WHERE status = 'Open' AND assigned_provider_id IS NULL"
        if excluded:
            query += f" AND id NOT IN ({_placeholders(excluded)})"
        query += " ORDER BY created_at DESC"
        return [self._from_row(row) for row in conn.execute(query, tuple(excluded)).fetchall()]

    def claim_assignment(self, conn: sqlite3.Connection, request_id: str, provider_id: str, now_iso: str) -> bool:
        # Compare-and-swap on assigned_provider_id: only one caller can move it off NULL.
        cursor = conn.execute(
            """
            UPDATE service_requests
            SET assigned_provider_id = ?, status = 'Assigned', updated_at = ?
            WHERE id = ? AND status = 'Open' AND assigned_provider_id IS NULL
            """,
            (provider_id, now_iso, request_id),
        )
        return cursor.rowcount == 1

    def set_status(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        status: str,
        now_iso: str,
        *,
        clear_assignment: bool = False,
    ) -> None:
        if clear_assignment:
            conn.execute(
                "UPDATE service_requests SET status = ?, assigned_provider_id = NULL, updated_at = ? WHERE id = ?",
                (status, now_iso, request_id),
            )
            return
        conn.execute(
            "UPDATE service_requests SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_iso, request_id),
        )

    def update_details(self, conn: sqlite3.Connection, request: ServiceRequest) -> None:
        conn.execute(
            """
            UPDATE service_requests
            SET booking_mode = ?, category = ?, subcategory = ?, location = ?, latitude = ?, longitude = ?,
                request_date = ?, request_time = ?, title = ?, description = ?, notes = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                request.booking_mode,
                request.category,
                request.subcategory,
                request.location,
                request.latitude,
                request.longitude,
                request.date,
                request.time,
                request.title,
                request.description,
                request.notes,
                request.updated_at,
                request.id,
            ),
        )


class ProviderStatusRepository:
    def _from_row(self, row: sqlite3.Row) -> ProviderRequestStatus:
        return ProviderRequestStatus(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            status=row["status"],
            quote_id=row["quote_id"],
            last_updated=row["last_updated"],
        )

    def get(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> Optional[ProviderRequestStatus]:
        row = conn.execute(
            "SELECT * FROM provider_request_status WHERE request_id = ? AND provider_id = ?",
            (request_id, provider_id),
        ).fetchone()
        return self._from_row(row) if row else None

    def list_for_request(self, conn: sqlite3.Connection, request_id: str) -> List[ProviderRequestStatus]:
        rows = conn.execute(
            "SELECT * FROM provider_request_status WHERE request_id = ? ORDER BY last_updated ASC",
            (request_id,),
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def statuses_for_provider(self, conn: sqlite3.Connection, provider_id: str) -> Dict[str, str]:
        rows = conn.execute(
            "SELECT request_id, status FROM provider_request_status WHERE provider_id = ?",
            (provider_id,),
        ).fetchall()
        return {row["request_id"]: row["status"] for row in rows}

    def insert(self, conn: sqlite3.Connection, row: ProviderRequestStatus) -> None:
        conn.execute(
            """
            INSERT INTO provider_request_status (id, request_id, provider_id, status, quote_id, last_updated)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (row.id, row.request_id, row.provider_id, row.status, row.quote_id, row.last_updated),
        )

    def update(self, conn: sqlite3.Connection, row_id: str, status: str, quote_id: Optional[str], now_iso: str) -> None:
        conn.execute(
            "UPDATE provider_request_status SET status = ?, quote_id = ?, last_updated = ? WHERE id = ?",
            (status, quote_id, now_iso, row_id),
        )

    def bulk_transition(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        now_iso: str,
        exclude_provider_id: Optional[str] = None,
    ) -> int:
        sources = list(from_statuses)
        query = (
            f"UPDATE provider_request_status SET status = ?, last_updated = ? "
            f"WHERE request_id = ? AND status IN ({_placeholders(sources)})"
        )
        params: List[object] = [to_status, now_iso, request_id, *sources]
        if exclude_provider_id:
            query += " AND provider_id != ?"
            params.append(exclude_provider_id)
        return conn.execute(query, tuple(params)).rowcount


class QuoteRepository:
    def _from_row(self, row: sqlite3.Row) -> Quote:
        return Quote(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            price=Decimal(row["price"]),
            message=row["message"],
            expires_at=row["expires_at"],
            status=row["status"],
            accepted_by_requester=bool(row["accepted_by_requester"]),
            requester_accepted_at=row["requester_accepted_at"],
            accepted_by_provider=bool(row["accepted_by_provider"]),
            provider_accepted_at=row["provider_accepted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert(self, conn: sqlite3.Connection, quote: Quote) -> None:
        conn.execute(
            """
            INSERT INTO quotes (
                id, request_id, provider_id, price, message, expires_at, status,
                accepted_by_requester, requester_accepted_at, accepted_by_provider, provider_accepted_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, 0, NULL, ?, ?)
            """,
            (
                quote.id,
                quote.request_id,
                quote.provider_id,
                str(quote.price),
                quote.message,
                quote.expires_at,
                quote.status,
                quote.created_at,
                quote.updated_at,
            ),
        )

    def get(self, conn: sqlite3.Connection, quote_id: str) -> Optional[Quote]:
        row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        return self._from_row(row) if row else None

    def get_live(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> Optional[Quote]:
        row = conn.execute(
            "SELECT * FROM quotes WHERE request_id = ? AND provider_id = ? AND status = 'Pending'",
            (request_id, provider_id),
        ).fetchone()
        return self._from_row(row) if row else None

    def list_for_request(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        provider_id: Optional[str] = None,
    ) -> List[Quote]:
        query = "SELECT * FROM quotes WHERE request_id = ?"
        params: List[object] = [request_id]
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY created_at ASC"
        return [self._from_row(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def list_pending_with_expiry(self, conn: sqlite3.Connection) -> List[Quote]:
        rows = conn.execute(
            "SELECT * FROM quotes WHERE status = 'Pending' AND expires_at IS NOT NULL"
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def set_status(self, conn: sqlite3.Connection, quote_id: str, status: str, now_iso: str) -> None:
        conn.execute(
            "UPDATE quotes SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_iso, quote_id),
        )

    def mark_accepted_by(self, conn: sqlite3.Connection, quote_id: str, side: str, now_iso: str) -> None:
        flag, stamp = QUOTE_ACCEPTANCE_COLUMNS[side]
        conn.execute(
            f"UPDATE quotes SET {flag} = 1, {stamp} = COALESCE({stamp}, ?), updated_at = ? WHERE id = ?",
            (now_iso, now_iso, quote_id),
        )

    def retire_pending(self, conn: sqlite3.Connection, request_id: str, now_iso: str, keep_quote_id: Optional[str] = None) -> List[str]:
        query = "SELECT id FROM quotes WHERE request_id = ? AND status = 'Pending'"
        params: List[object] = [request_id]
        if keep_quote_id:
            query += " AND id != ?"
            params.append(keep_quote_id)
        ids = [row["id"] for row in conn.execute(query, tuple(params)).fetchall()]
        if ids:
            conn.execute(
                f"UPDATE quotes SET status = 'Rejected', updated_at = ? WHERE id IN ({_placeholders(ids)})",
                (now_iso, *ids),
            )
        return ids


class AgreementRepository:
    def _from_row(self, row: sqlite3.Row) -> Agreement:
        return Agreement(
            id=row["id"],
            quote_id=row["quote_id"],
            request_id=row["request_id"],
            requester_id=row["requester_id"],
            provider_id=row["provider_id"],
            requester_accepted=bool(row["requester_accepted"]),
            requester_accepted_at=row["requester_accepted_at"],
            provider_accepted=bool(row["provider_accepted"]),
            provider_accepted_at=row["provider_accepted_at"],
            finalized_at=row["finalized_at"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert(self, conn: sqlite3.Connection, agreement: Agreement) -> None:
        conn.execute(
            """
            INSERT INTO agreements (
                id, quote_id, request_id, requester_id, provider_id, requester_accepted, requester_accepted_at,
                provider_accepted, provider_accepted_at, finalized_at, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, NULL, 0, NULL, NULL, ?, ?, ?)
            """,
            (
                agreement.id,
                agreement.quote_id,
                agreement.request_id,
                agreement.requester_id,
                agreement.provider_id,
                agreement.status,
                agreement.created_at,
                agreement.updated_at,
            ),
        )

    def get(self, conn: sqlite3.Connection, agreement_id: str) -> Optional[Agreement]:
        row = conn.execute("SELECT * FROM agreements WHERE id = ?", (agreement_id,)).fetchone()
        return self._from_row(row) if row else None

    def get_for_quote(self, conn: sqlite3.Connection, quote_id: str, provider_id: str) -> Optional[Agreement]:
        row = conn.execute(
            "SELECT * FROM agreements WHERE quote_id = ? AND provider_id = ?",
            (quote_id, provider_id),
        ).fetchone()
        return self._from_row(row) if row else None

    def list_for_request(self, conn: sqlite3.Connection, request_id: str, provider_id: Optional[str] = None) -> List[Agreement]:
        query = "SELECT * FROM agreements WHERE request_id = ?"
        params: List[object] = [request_id]
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY created_at ASC"
        return [self._from_row(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def mark_accepted_by(self, conn: sqlite3.Connection, agreement_id: str, side: str, now_iso: str) -> None:
        flag, stamp = ACCEPTANCE_COLUMNS[side]
        conn.execute(
            f"UPDATE agreements SET {flag} = 1, {stamp} = ?, updated_at = ? WHERE id = ?",
            (now_iso, now_iso, agreement_id),
        )

    def set_status(
        self,
        conn: sqlite3.Connection,
        agreement_id: str,
        status: str,
        now_iso: str,
        finalized_at: Optional[str] = None,
    ) -> None:
        conn.execute(
            "UPDATE agreements SET status = ?, finalized_at = COALESCE(?, finalized_at), updated_at = ? WHERE id = ?",
            (status, finalized_at, now_iso, agreement_id),
        )

    def close_pending(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        status: str,
        now_iso: str,
        keep_agreement_id: Optional[str] = None,
    ) -> int:
        query = "UPDATE agreements SET status = ?, updated_at = ? WHERE request_id = ? AND status = 'Pending'"
        params: List[object] = [status, now_iso, request_id]
        if keep_agreement_id:
            query += " AND id != ?"
            params.append(keep_agreement_id)
        return conn.execute(query, tuple(params)).rowcount


class WorkflowRepository:
    def _from_row(self, row: sqlite3.Row) -> WorkflowStatus:
        return WorkflowStatus(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            is_assigned=bool(row["is_assigned"]),
            assigned_at=row["assigned_at"],
            is_in_progress=bool(row["is_in_progress"]),
            in_progress_at=row["in_progress_at"],
            is_checked_in=bool(row["is_checked_in"]),
            checked_in_at=row["checked_in_at"],
            is_completed=bool(row["is_completed"]),
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert(self, conn: sqlite3.Connection, workflow: WorkflowStatus) -> None:
        conn.execute(
            """
            INSERT INTO workflow_statuses (
                id, request_id, provider_id, is_assigned, assigned_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workflow.id,
                workflow.request_id,
                workflow.provider_id,
                int(workflow.is_assigned),
                workflow.assigned_at,
                workflow.created_at,
                workflow.updated_at,
            ),
        )

    def get(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> Optional[WorkflowStatus]:
        row = conn.execute(
            "SELECT * FROM workflow_statuses WHERE request_id = ? AND provider_id = ?",
            (request_id, provider_id),
        ).fetchone()
        return self._from_row(row) if row else None

    def set_milestone(self, conn: sqlite3.Connection, workflow_id: str, milestone: str, now_iso: str) -> None:
        flag, stamp = MILESTONE_COLUMNS[milestone]
        conn.execute(
            f"UPDATE workflow_statuses SET {flag} = 1, {stamp} = ?, updated_at = ? WHERE id = ?",
            (now_iso, now_iso, workflow_id),
        )


class HiddenRequestRepository:
    def _from_row(self, row: sqlite3.Row) -> HiddenRequest:
        return HiddenRequest(
            id=row["id"],
            provider_id=row["provider_id"],
            service_request_id=row["service_request_id"],
            hidden_at=row["hidden_at"],
        )

    def get(self, conn: sqlite3.Connection, provider_id: str, request_id: str) -> Optional[HiddenRequest]:
        row = conn.execute(
            "SELECT * FROM hidden_requests WHERE provider_id = ? AND service_request_id = ?",
            (provider_id, request_id),
        ).fetchone()
        return self._from_row(row) if row else None

    def insert(self, conn: sqlite3.Connection, hidden: HiddenRequest) -> None:
        conn.execute(
            "INSERT INTO hidden_requests (id, provider_id, service_request_id, hidden_at) VALUES (?, ?, ?, ?)",
            (hidden.id, hidden.provider_id, hidden.service_request_id, hidden.hidden_at),
        )

    def delete(self, conn: sqlite3.Connection, provider_id: str, request_id: str) -> bool:
        cursor = conn.execute(
            "DELETE FROM hidden_requests WHERE provider_id = ? AND service_request_id = ?",
            (provider_id, request_id),
        )
        return cursor.rowcount > 0

    def request_ids_for_provider(self, conn: sqlite3.Connection, provider_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT service_request_id FROM hidden_requests WHERE provider_id = ?",
            (provider_id,),
        ).fetchall()
        return [row["service_request_id"] for row in rows]


class MessageRepository:
    def _from_row(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            request_id=row["request_id"],
            quote_id=row["quote_id"],
            text=row["text"],
            created_at=row["created_at"],
            is_read=bool(row["is_read"]),
            is_delivered=bool(row["is_delivered"]),
            is_system=bool(row["is_system"]),
        )

    def insert(self, conn: sqlite3.Connection, message: Message) -> None:
        conn.execute(
            """
            INSERT INTO messages (
                id, sender_id, receiver_id, request_id, quote_id, text, created_at, is_read, is_delivered, is_system
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?)
            """,
            (
                message.id,
                message.sender_id,
                message.receiver_id,
                message.request_id,
                message.quote_id,
                message.text,
                message.created_at,
                int(message.is_system),
            ),
        )

    def get(self, conn: sqlite3.Connection, message_id: str) -> Optional[Message]:
        row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return self._from_row(row) if row else None

    def list_thread(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        quote_id: Optional[str],
        participant_id: Optional[str] = None,
    ) -> List[Message]:
        if quote_id:
            query = "SELECT * FROM messages WHERE request_id = ? AND quote_id = ?"
            params: List[object] = [request_id, quote_id]
        else:
            query = "SELECT * FROM messages WHERE request_id = ? AND quote_id IS NULL"
            params = [request_id]
        if participant_id:
            query += " AND (sender_id = ? OR receiver_id = ?)"
            params.extend([participant_id, participant_id])
        query += " ORDER BY created_at ASC, rowid ASC"
        return [self._from_row(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def list_for_participant(self, conn: sqlite3.Connection, user_id: str) -> List[Tuple[Message, str]]:
        rows = conn.execute(
            """
            SELECT m.*, r.subcategory || ' - ' || r.category AS service_title
            FROM messages m
            JOIN service_requests r ON r.id = m.request_id
            WHERE m.sender_id = ? OR m.receiver_id = ?
            ORDER BY m.created_at ASC, m.rowid ASC
            """,
            (user_id, user_id),
        ).fetchall()
        return [(self._from_row(row), row["service_title"]) for row in rows]

    def set_flag(self, conn: sqlite3.Connection, message_id: str, flag: str) -> None:
        if flag == "read":
            conn.execute("UPDATE messages SET is_read = 1, is_delivered = 1 WHERE id = ?", (message_id,))
        else:
            conn.execute("UPDATE messages SET is_delivered = 1 WHERE id = ?", (message_id,))
