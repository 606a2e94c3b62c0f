import logging
import sqlite3
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from servicebroker.models import ProviderFeedItem, ServiceRequest
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import (
    BrokerConflictError,
    BrokerNotFoundError,
    BrokerPermissionError,
    BrokerTransitionError,
    BrokerValidationError,
)
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.repositories import (
    AgreementRepository,
    HiddenRequestRepository,
    ProviderStatusRepository,
    QuoteRepository,
    RequestRepository,
)

logger = logging.getLogger(__name__)

BOOKING_MODES = ("immediate", "scheduled", "quote-only")
REQUEST_STATUSES = ("Open", "Assigned", "InProgress", "Completed", "Cancelled")
CANCELLABLE_STATUSES = {"Open", "Assigned"}


class RequestLifecycle:
    def __init__(
        self,
        db: Database,
        requests: RequestRepository,
        statuses: ProviderStatusRepository,
        quotes: QuoteRepository,
        agreements: AgreementRepository,
        hidden: HiddenRequestRepository,
        tracker: ProviderStatusTracker,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._requests = requests
        self._statuses = statuses
        self._quotes = quotes
        self._agreements = agreements
        self._hidden = hidden
        self._tracker = tracker
        self._clock = clock

    def _parse_iso_date(self, value: str, *, field: str = "date") -> date:
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise BrokerValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc

    def _validate_schedule(
        self,
        booking_mode: str,
        date_value: Optional[str],
        time_value: Optional[str],
    ) -> Tuple[Optional[str], Optional[str]]:
        cleaned_date = (date_value or "").strip() or None
        cleaned_time = (time_value or "").strip() or None
        today = self._clock().date()

        if booking_mode == "quote-only":
            if cleaned_date:
                raise BrokerValidationError("date must be omitted for quote-only booking")
            if cleaned_time:
                raise BrokerValidationError("time must be omitted for quote-only booking")
            return None, None

        if not cleaned_date:
            raise BrokerValidationError(f"date is required for {booking_mode} booking")
        parsed = self._parse_iso_date(cleaned_date)
        if booking_mode == "immediate":
            if parsed < today:
                raise BrokerValidationError("date must be today or later for immediate booking")
            return parsed.isoformat(), cleaned_time

        if not cleaned_time:
            raise BrokerValidationError("time is required for scheduled booking")
        if parsed < today + timedelta(days=1):
            raise BrokerValidationError("date must be at least tomorrow for scheduled booking")
        return parsed.isoformat(), cleaned_time

    def _clean_details(
        self,
        *,
        booking_mode: str,
        category: str,
        subcategory: str,
        location: str,
        latitude: Optional[float],
        longitude: Optional[float],
        date: Optional[str],
        time: Optional[str],
        title: Optional[str],
        description: Optional[str],
        notes: Optional[str],
    ) -> Dict[str, object]:
        cleaned_category = category.strip()
        cleaned_subcategory = subcategory.strip()
        cleaned_location = location.strip()
        if booking_mode not in BOOKING_MODES:
            raise BrokerValidationError("Invalid booking_mode. Allowed: immediate, scheduled, quote-only")
        if not cleaned_category:
            raise BrokerValidationError("category is required")
        if not cleaned_subcategory:
            raise BrokerValidationError("subcategory is required")
        if not cleaned_location:
            raise BrokerValidationError("location is required")
        if (latitude is None) != (longitude is None):
            raise BrokerValidationError("latitude and longitude must be supplied together")
        if latitude is not None and not -90 <= latitude <= 90:
            raise BrokerValidationError("latitude must be between -90 and 90")
        if longitude is not None and not -180 <= longitude <= 180:
            raise BrokerValidationError("longitude must be between -180 and 180")
        request_date, request_time = self._validate_schedule(booking_mode, date, time)
        return {
            "booking_mode": booking_mode,
            "category": cleaned_category,
            "subcategory": cleaned_subcategory,
            "location": cleaned_location,
            "latitude": latitude,
            "longitude": longitude,
            "date": request_date,
            "time": request_time,
            "title": (title or "").strip() or None,
            "description": (description or "").strip() or None,
            "notes": (notes or "").strip() or None,
        }

    def create(
        self,
        *,
        requester_id: str,
        booking_mode: str,
        category: str,
        subcategory: str,
        location: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        date: Optional[str] = None,
        time: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        cleaned_requester = requester_id.strip()
        if not cleaned_requester:
            raise BrokerValidationError("requester_id is required")
        details = self._clean_details(
            booking_mode=booking_mode,
            category=category,
            subcategory=subcategory,
            location=location,
            latitude=latitude,
            longitude=longitude,
            date=date,
            time=time,
            title=title,
            description=description,
            notes=notes,
        )

        now_iso = to_iso(self._clock())
        request = ServiceRequest(
            id=f"req_{uuid4().hex[:12]}",
            requester_id=cleaned_requester,
            status="Open",
            created_at=now_iso,
            updated_at=now_iso,
            **details,
        )
        with self._db.transaction() as conn:
            self._requests.insert(conn, request)
        return request

    def update(
        self,
        *,
        request_id: str,
        actor_user_id: str,
        booking_mode: str,
        category: str,
        subcategory: str,
        location: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        date: Optional[str] = None,
        time: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        """Replace the editable fields of an open request. Status and assignment are untouched."""
        details = self._clean_details(
            booking_mode=booking_mode,
            category=category,
            subcategory=subcategory,
            location=location,
            latitude=latitude,
            longitude=longitude,
            date=date,
            time=time,
            title=title,
            description=description,
            notes=notes,
        )
        with self._db.transaction() as conn:
            request = self._reload(conn, request_id)
            if request.requester_id != actor_user_id:
                raise BrokerPermissionError("Only the requester can edit this request")
            if request.status != "Open":
                raise BrokerTransitionError(f"Cannot edit a request in status {request.status}")
            updated = request.model_copy(update={**details, "updated_at": to_iso(self._clock())})
            self._requests.update_details(conn, updated)
        logger.info("Request %s edited by %s", request_id, actor_user_id)
        return updated

    def _reload(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        request = self._requests.get(conn, request_id)
        if not request:
            raise BrokerNotFoundError("Service request not found")
        return request

    def get(self, request_id: str) -> ServiceRequest:
        with self._db.read() as conn:
            request = self._requests.get(conn, request_id)
        if not request:
            raise BrokerNotFoundError("Service request not found")
        return request

    def list_for_requester(
        self,
        *,
        requester_id: str,
        status: Optional[str] = None,
        booking_mode: Optional[str] = None,
    ) -> List[ServiceRequest]:
        if status and status not in REQUEST_STATUSES:
            raise BrokerValidationError(f"Invalid status filter. Allowed: {', '.join(REQUEST_STATUSES)}")
        if booking_mode and booking_mode not in BOOKING_MODES:
            raise BrokerValidationError("Invalid booking_mode filter. Allowed: immediate, scheduled, quote-only")
        with self._db.read() as conn:
            return self._requests.list_for_requester(conn, requester_id, status=status, booking_mode=booking_mode)

    def list_open_for_provider(self, *, provider_id: str) -> List[ProviderFeedItem]:
        with self._db.read() as conn:
            hidden_ids = self._hidden.request_ids_for_provider(conn, provider_id)
            requests = self._requests.list_open(conn, exclude_ids=hidden_ids)
            own_statuses = self._statuses.statuses_for_provider(conn, provider_id)
        return [
            ProviderFeedItem(request=request, provider_status=own_statuses.get(request.id, "Viewed"))
            for request in requests
            if request.requester_id != provider_id
        ]

    def assign(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> ServiceRequest:
        """Claim the request for one provider. Must run inside the finalizing transaction."""
        request = self._requests.get(conn, request_id)
        if not request:
            raise BrokerNotFoundError("Service request not found")
        if request.assigned_provider_id and request.assigned_provider_id != provider_id:
            raise BrokerConflictError("Service request is already assigned to another provider")
        if request.status != "Open" or request.assigned_provider_id:
            raise BrokerTransitionError(f"Cannot assign a request in status {request.status}")
        now_iso = to_iso(self._clock())
        if not self._requests.claim_assignment(conn, request_id, provider_id, now_iso):
            logger.warning("Lost assignment race for request %s (provider %s)", request_id, provider_id)
            raise BrokerConflictError("Service request was assigned concurrently")
        logger.info("Request %s assigned to provider %s", request_id, provider_id)
        return request.model_copy(
            update={"status": "Assigned", "assigned_provider_id": provider_id, "updated_at": now_iso}
        )

    def start(self, conn: sqlite3.Connection, request_id: str) -> None:
        request = self._requests.get(conn, request_id)
        if not request or request.status != "Assigned":
            raise BrokerTransitionError("Only an assigned request can move to InProgress")
        self._requests.set_status(conn, request_id, "InProgress", to_iso(self._clock()))

    def complete(self, conn: sqlite3.Connection, request_id: str) -> None:
        request = self._requests.get(conn, request_id)
        if not request or request.status != "InProgress":
            raise BrokerTransitionError("Only an in-progress request can be completed")
        self._requests.set_status(conn, request_id, "Completed", to_iso(self._clock()))
        logger.info("Request %s completed", request_id)

    def cancel(self, *, request_id: str, actor_user_id: str) -> ServiceRequest:
        with self._db.transaction() as conn:
            request = self._reload(conn, request_id)
            if request.requester_id != actor_user_id:
                raise BrokerPermissionError("Only the requester can cancel this request")
            if request.status not in CANCELLABLE_STATUSES:
                raise BrokerTransitionError(f"Cannot cancel a request in status {request.status}")

            now_iso = to_iso(self._clock())
            self._requests.set_status(conn, request_id, "Cancelled", now_iso, clear_assignment=True)
            self._quotes.retire_pending(conn, request_id, now_iso)
            self._agreements.close_pending(conn, request_id, "Cancelled", now_iso)
            self._tracker.retire_all(conn, request_id)
            cancelled = self._reload(conn, request_id)
        logger.info("Request %s cancelled by %s", request_id, actor_user_id)
        return cancelled
