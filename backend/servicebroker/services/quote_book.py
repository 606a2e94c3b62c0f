import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Union
from uuid import uuid4

from servicebroker.models import Quote
from servicebroker.services.clock import Clock, parse_iso, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import (
    BrokerConflictError,
    BrokerNotFoundError,
    BrokerPermissionError,
    BrokerTransitionError,
    BrokerValidationError,
)
from servicebroker.services.events import EventPublisher, QuoteReceived
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.repositories import QuoteRepository, RequestRepository

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
PRICE_STEP = Decimal("0.01")
MAX_PRICE = Decimal("1000000000")


class QuoteBook:
    def __init__(
        self,
        db: Database,
        quotes: QuoteRepository,
        requests: RequestRepository,
        tracker: ProviderStatusTracker,
        publisher: EventPublisher,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._quotes = quotes
        self._requests = requests
        self._tracker = tracker
        self._publisher = publisher
        self._clock = clock

    def _normalize_price(self, price: Union[Decimal, int, float, str]) -> Decimal:
        try:
            value = Decimal(str(price))
        except (InvalidOperation, ValueError) as exc:
            raise BrokerValidationError("price must be a decimal number") from exc
        if not value.is_finite() or value <= 0:
            raise BrokerValidationError("price must be greater than zero")
        if value > MAX_PRICE:
            raise BrokerValidationError(f"price must be at most {MAX_PRICE}")
        return value.quantize(PRICE_STEP, rounding=ROUND_HALF_UP)

    def _is_due(self, quote: Quote) -> bool:
        expires_at = parse_iso(quote.expires_at)
        return quote.status == "Pending" and expires_at is not None and self._clock() > expires_at

    def submit(
        self,
        *,
        request_id: str,
        provider_id: str,
        price: Union[Decimal, int, float, str],
        message: Optional[str] = None,
        expires_at: Optional[str] = None,
    ) -> Quote:
        normalized_price = self._normalize_price(price)
        cleaned_message = (message or "").strip() or None
        if cleaned_message and len(cleaned_message) > MAX_MESSAGE_LENGTH:
            raise BrokerValidationError(f"message must be at most {MAX_MESSAGE_LENGTH} characters")
        now = self._clock()
        expiry_iso: Optional[str] = None
        if expires_at:
            try:
                expiry = parse_iso(expires_at)
            except ValueError as exc:
                raise BrokerValidationError("Invalid expires_at; expected an ISO 8601 timestamp") from exc
            if not expiry or expiry <= now:
                raise BrokerValidationError("expires_at must be in the future")
            expiry_iso = to_iso(expiry)

        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id == provider_id:
                raise BrokerPermissionError("Requesters cannot quote on their own request")
            if request.status != "Open":
                raise BrokerValidationError(f"Service request is not open for quotes (status {request.status})")

            live = self._quotes.get_live(conn, request_id, provider_id)
            if live and self._is_due(live):
                self._quotes.set_status(conn, live.id, "Expired", now_iso)
                live = None
            if live:
                raise BrokerConflictError("A live quote already exists for this request")

            quote = Quote(
                id=f"q_{uuid4().hex[:12]}",
                request_id=request_id,
                provider_id=provider_id,
                price=normalized_price,
                message=cleaned_message,
                expires_at=expiry_iso,
                status="Pending",
                created_at=now_iso,
                updated_at=now_iso,
            )
            try:
                self._quotes.insert(conn, quote)
            except sqlite3.IntegrityError as exc:
                raise BrokerConflictError("A live quote already exists for this request") from exc
            self._tracker.advance(conn, request_id, provider_id, "Quoted", quote_id=quote.id)

        self._publisher.publish(QuoteReceived(request_id=request_id, provider_id=provider_id))
        return quote

    def _reload(self, conn: sqlite3.Connection, quote_id: str) -> Quote:
        quote = self._quotes.get(conn, quote_id)
        if not quote:
            raise BrokerNotFoundError("Quote not found")
        return quote

    def _check_party(self, conn: sqlite3.Connection, quote: Quote, actor_user_id: str) -> None:
        request = self._requests.get(conn, quote.request_id)
        if not request:
            raise BrokerNotFoundError("Service request not found")
        if actor_user_id not in (request.requester_id, quote.provider_id):
            raise BrokerPermissionError("Only the requester and the quoting provider can access this quote")

    def get(self, quote_id: str) -> Quote:
        with self._db.read() as conn:
            return self._reload(conn, quote_id)

    def get_for_actor(self, *, quote_id: str, actor_user_id: str) -> Quote:
        with self._db.read() as conn:
            quote = self._reload(conn, quote_id)
            self._check_party(conn, quote, actor_user_id)
        return quote

    def list_for_request(self, *, request_id: str, actor_user_id: str) -> List[Quote]:
        with self._db.read() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id == actor_user_id:
                return self._quotes.list_for_request(conn, request_id)
            return self._quotes.list_for_request(conn, request_id, provider_id=actor_user_id)

    def ensure_acceptable(self, quote: Quote) -> None:
        if quote.status == "Expired" or self._is_due(quote):
            raise BrokerTransitionError("Quote has expired")
        if quote.status != "Pending":
            raise BrokerTransitionError(f"Quote is no longer pending (status {quote.status})")

    def mark_accepted_by(self, conn: sqlite3.Connection, quote_id: str, side: str) -> None:
        self._quotes.mark_accepted_by(conn, quote_id, side, to_iso(self._clock()))

    def _accept(self, *, quote_id: str, actor_user_id: str, side: str) -> Quote:
        with self._db.transaction() as conn:
            quote = self._reload(conn, quote_id)
            request = self._requests.get(conn, quote.request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            owner = request.requester_id if side == "requester" else quote.provider_id
            if actor_user_id != owner:
                raise BrokerPermissionError(f"Only the quote's {side} can accept on that side")
            self.ensure_acceptable(quote)
            self.mark_accepted_by(conn, quote_id, side)
            return self._reload(conn, quote_id)

    def accept_by_requester(self, *, quote_id: str, actor_user_id: str) -> Quote:
        return self._accept(quote_id=quote_id, actor_user_id=actor_user_id, side="requester")

    def accept_by_provider(self, *, quote_id: str, actor_user_id: str) -> Quote:
        return self._accept(quote_id=quote_id, actor_user_id=actor_user_id, side="provider")

    def expire(self, *, quote_id: str, actor_user_id: Optional[str] = None) -> Quote:
        with self._db.transaction() as conn:
            quote = self._reload(conn, quote_id)
            if actor_user_id is not None:
                self._check_party(conn, quote, actor_user_id)
            if quote.status == "Expired":
                return quote
            if quote.status != "Pending":
                raise BrokerTransitionError(f"Cannot expire a quote in status {quote.status}")
            if not self._is_due(quote):
                raise BrokerTransitionError("Quote has not reached its expiry time")
            now_iso = to_iso(self._clock())
            self._quotes.set_status(conn, quote_id, "Expired", now_iso)
        return quote.model_copy(update={"status": "Expired", "updated_at": now_iso})

    def expire_due(self) -> List[Quote]:
        expired: List[Quote] = []
        with self._db.transaction() as conn:
            now_iso = to_iso(self._clock())
            for quote in self._quotes.list_pending_with_expiry(conn):
                if self._is_due(quote):
                    self._quotes.set_status(conn, quote.id, "Expired", now_iso)
                    expired.append(quote.model_copy(update={"status": "Expired", "updated_at": now_iso}))
        if expired:
            logger.info("Expired %d quote(s)", len(expired))
        return expired

    def retire_siblings(self, conn: sqlite3.Connection, request_id: str, winner_quote_id: str) -> List[str]:
        """Accept the winning quote and reject every other pending quote on the request."""
        now_iso = to_iso(self._clock())
        self._quotes.set_status(conn, winner_quote_id, "Accepted", now_iso)
        return self._quotes.retire_pending(conn, request_id, now_iso, keep_quote_id=winner_quote_id)
