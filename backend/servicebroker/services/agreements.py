import logging
import sqlite3
from typing import List, Optional, Tuple
from uuid import uuid4

from servicebroker.models import Agreement, ServiceRequest
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.conversations import ConversationScoping
from servicebroker.services.db import Database
from servicebroker.services.errors import (
    BrokerConflictError,
    BrokerNotFoundError,
    BrokerPermissionError,
    BrokerTransitionError,
    BrokerValidationError,
)
from servicebroker.services.events import AgreementFinalized, BrokerEvent, EventPublisher, RequestAssigned
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.quote_book import QuoteBook
from servicebroker.services.repositories import AgreementRepository, QuoteRepository, RequestRepository
from servicebroker.services.request_lifecycle import RequestLifecycle
from servicebroker.services.workflow import WorkflowTracker

logger = logging.getLogger(__name__)

ACTOR_ROLES = ("requester", "provider")

ACCEPT_TEXT = {
    "requester": "I have agreed to your proposal. Waiting for your agreement to finalize the deal.",
    "provider": "I have accepted your agreement. Looking forward to working with you!",
}
REJECT_TEXT = {
    "requester": "I have to decline your proposal. Thank you for your time.",
    "provider": "I cannot accept this agreement at this time. Thank you for considering me.",
}
FINALIZED_TEXT = "Both parties have agreed. The service is now confirmed."


class AgreementFinalizer:
    """Dual-acceptance protocol that turns one quote into the request's exclusive assignment."""

    def __init__(
        self,
        db: Database,
        agreements: AgreementRepository,
        quotes: QuoteRepository,
        requests: RequestRepository,
        lifecycle: RequestLifecycle,
        quote_book: QuoteBook,
        tracker: ProviderStatusTracker,
        workflow: WorkflowTracker,
        conversations: ConversationScoping,
        publisher: EventPublisher,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._agreements = agreements
        self._quotes = quotes
        self._requests = requests
        self._lifecycle = lifecycle
        self._quote_book = quote_book
        self._tracker = tracker
        self._workflow = workflow
        self._conversations = conversations
        self._publisher = publisher
        self._clock = clock

    def _load(self, conn: sqlite3.Connection, agreement_id: str) -> Tuple[Agreement, ServiceRequest]:
        agreement = self._reload(conn, agreement_id)
        request = self._requests.get(conn, agreement.request_id)
        if not request:
            raise BrokerNotFoundError("Service request not found")
        return agreement, request

    def _check_actor(self, agreement: Agreement, actor_user_id: str, actor_role: str) -> None:
        if actor_role not in ACTOR_ROLES:
            raise BrokerValidationError("Invalid actor_role. Allowed: requester, provider")
        party = agreement.requester_id if actor_role == "requester" else agreement.provider_id
        if actor_user_id != party:
            raise BrokerPermissionError(f"Actor is not the {actor_role} on this agreement")

    def _counterpart(self, agreement: Agreement, actor_role: str) -> Tuple[str, str]:
        if actor_role == "requester":
            return agreement.requester_id, agreement.provider_id
        return agreement.provider_id, agreement.requester_id

    def open(self, *, quote_id: str, requester_id: str, provider_id: Optional[str] = None) -> Agreement:
        with self._db.transaction() as conn:
            quote = self._quotes.get(conn, quote_id)
            if not quote:
                raise BrokerNotFoundError("Quote not found")
            if provider_id and provider_id != quote.provider_id:
                raise BrokerValidationError("provider_id does not match the quote")
            request = self._requests.get(conn, quote.request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id != requester_id:
                raise BrokerPermissionError("Only the requester can open an agreement on this quote")
            if request.status != "Open":
                raise BrokerTransitionError(f"Service request is not open (status {request.status})")
            self._quote_book.ensure_acceptable(quote)
            if self._agreements.get_for_quote(conn, quote_id, quote.provider_id):
                raise BrokerConflictError("An agreement already exists for this quote")

            now_iso = to_iso(self._clock())
            agreement = Agreement(
                id=f"agr_{uuid4().hex[:12]}",
                quote_id=quote_id,
                request_id=quote.request_id,
                requester_id=requester_id,
                provider_id=quote.provider_id,
                status="Pending",
                created_at=now_iso,
                updated_at=now_iso,
            )
            try:
                self._agreements.insert(conn, agreement)
            except sqlite3.IntegrityError as exc:
                raise BrokerConflictError("An agreement already exists for this quote") from exc
        return agreement

    def _reload(self, conn: sqlite3.Connection, agreement_id: str) -> Agreement:
        agreement = self._agreements.get(conn, agreement_id)
        if not agreement:
            raise BrokerNotFoundError("Agreement not found")
        return agreement

    def get(self, agreement_id: str) -> Agreement:
        with self._db.read() as conn:
            return self._reload(conn, agreement_id)

    def get_for_actor(self, *, agreement_id: str, actor_user_id: str) -> Agreement:
        agreement = self.get(agreement_id)
        if actor_user_id not in (agreement.requester_id, agreement.provider_id):
            raise BrokerPermissionError("Only the parties to an agreement can read it")
        return agreement

    def list_for_request(self, *, request_id: str, actor_user_id: str) -> List[Agreement]:
        with self._db.read() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            if request.requester_id == actor_user_id:
                return self._agreements.list_for_request(conn, request_id)
            return self._agreements.list_for_request(conn, request_id, provider_id=actor_user_id)

    def _finalize(self, conn: sqlite3.Connection, agreement: Agreement, sender_id: str, receiver_id: str) -> List[BrokerEvent]:
        # Runs inside the caller's transaction; every write here commits with the assignment or not at all.
        self._lifecycle.assign(conn, agreement.request_id, agreement.provider_id)
        now_iso = to_iso(self._clock())
        self._agreements.set_status(conn, agreement.id, "Accepted", now_iso, finalized_at=now_iso)
        retired = self._quote_book.retire_siblings(conn, agreement.request_id, agreement.quote_id)
        rejected = self._tracker.fan_out_assignment(
            conn, agreement.request_id, agreement.provider_id, agreement.quote_id
        )
        self._agreements.close_pending(
            conn, agreement.request_id, "Rejected", now_iso, keep_agreement_id=agreement.id
        )
        self._workflow.create(conn, agreement.request_id, agreement.provider_id)
        self._conversations.system_message(
            conn,
            sender_id=sender_id,
            receiver_id=receiver_id,
            request_id=agreement.request_id,
            quote_id=agreement.quote_id,
            text=FINALIZED_TEXT,
        )
        logger.info(
            "Agreement %s finalized: request %s -> provider %s (%d quote(s) retired, %d status row(s) rejected)",
            agreement.id,
            agreement.request_id,
            agreement.provider_id,
            len(retired),
            rejected,
        )
        return [
            AgreementFinalized(
                request_id=agreement.request_id,
                provider_id=agreement.provider_id,
                quote_id=agreement.quote_id,
            ),
            RequestAssigned(request_id=agreement.request_id, provider_id=agreement.provider_id),
        ]

    def accept(self, *, agreement_id: str, actor_user_id: str, actor_role: str) -> Agreement:
        events: List[BrokerEvent] = []
        lost_race = False
        with self._db.transaction() as conn:
            agreement, request = self._load(conn, agreement_id)
            self._check_actor(agreement, actor_user_id, actor_role)

            if request.assigned_provider_id and request.assigned_provider_id != agreement.provider_id:
                if agreement.status == "Pending":
                    self._agreements.set_status(conn, agreement.id, "Rejected", to_iso(self._clock()))
                lost_race = True
            else:
                if agreement.status != "Pending":
                    raise BrokerTransitionError(f"Agreement is already {agreement.status}")
                quote = self._quotes.get(conn, agreement.quote_id)
                if not quote:
                    raise BrokerNotFoundError("Quote not found")
                self._quote_book.ensure_acceptable(quote)

                sender_id, receiver_id = self._counterpart(agreement, actor_role)
                already_set = agreement.requester_accepted if actor_role == "requester" else agreement.provider_accepted
                if not already_set:
                    now_iso = to_iso(self._clock())
                    self._agreements.mark_accepted_by(conn, agreement.id, actor_role, now_iso)
                    self._quote_book.mark_accepted_by(conn, agreement.quote_id, actor_role)
                    self._conversations.system_message(
                        conn,
                        sender_id=sender_id,
                        receiver_id=receiver_id,
                        request_id=agreement.request_id,
                        quote_id=agreement.quote_id,
                        text=ACCEPT_TEXT[actor_role],
                    )
                    agreement = self._reload(conn, agreement.id)

                if agreement.requester_accepted and agreement.provider_accepted:
                    events = self._finalize(conn, agreement, sender_id, receiver_id)
            updated = self._reload(conn, agreement_id)

        if lost_race:
            logger.warning("Agreement %s lost the assignment for request %s", agreement_id, request.id)
            raise BrokerConflictError("Service request was already assigned to another provider; re-fetch the request")
        self._publisher.publish_all(events)
        return updated

    def reject(self, *, agreement_id: str, actor_user_id: str, actor_role: str) -> Agreement:
        with self._db.transaction() as conn:
            agreement, _ = self._load(conn, agreement_id)
            self._check_actor(agreement, actor_user_id, actor_role)
            if agreement.status != "Pending":
                raise BrokerTransitionError(f"Agreement is already {agreement.status}")
            self._agreements.set_status(conn, agreement.id, "Rejected", to_iso(self._clock()))
            sender_id, receiver_id = self._counterpart(agreement, actor_role)
            self._conversations.system_message(
                conn,
                sender_id=sender_id,
                receiver_id=receiver_id,
                request_id=agreement.request_id,
                quote_id=agreement.quote_id,
                text=REJECT_TEXT[actor_role],
            )
            return self._reload(conn, agreement_id)

    def cancel(self, *, agreement_id: str, actor_user_id: str) -> Agreement:
        with self._db.transaction() as conn:
            agreement, _ = self._load(conn, agreement_id)
            self._check_actor(agreement, actor_user_id, "requester")
            if agreement.status != "Pending":
                raise BrokerTransitionError(f"Agreement is already {agreement.status}")
            self._agreements.set_status(conn, agreement.id, "Cancelled", to_iso(self._clock()))
            return self._reload(conn, agreement_id)
