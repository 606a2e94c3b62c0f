import os
from pathlib import Path
from typing import Optional

from servicebroker.services.agreements import AgreementFinalizer
from servicebroker.services.clock import Clock, utc_now
from servicebroker.services.conversations import ConversationScoping
from servicebroker.services.db import Database
from servicebroker.services.events import EventPublisher, InProcessEventPublisher
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.quote_book import QuoteBook
from servicebroker.services.repositories import (
    AgreementRepository,
    HiddenRequestRepository,
    MessageRepository,
    ProviderStatusRepository,
    QuoteRepository,
    RequestRepository,
    WorkflowRepository,
)
from servicebroker.services.request_lifecycle import RequestLifecycle
from servicebroker.services.visibility import VisibilityLedger
from servicebroker.services.workflow import WorkflowTracker


class ServiceBroker:
    """Wires the negotiation components over one shared database."""

    def __init__(
        self,
        db_path: str,
        publisher: Optional[EventPublisher] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = Database(db_path)
        self.publisher = publisher or InProcessEventPublisher()
        self.clock = clock

        request_repo = RequestRepository()
        status_repo = ProviderStatusRepository()
        quote_repo = QuoteRepository()
        agreement_repo = AgreementRepository()

        self.statuses = ProviderStatusTracker(self.db, status_repo, request_repo, clock)
        self.visibility = VisibilityLedger(self.db, HiddenRequestRepository(), request_repo, self.statuses, clock)
        self.requests = RequestLifecycle(
            self.db,
            request_repo,
            status_repo,
            quote_repo,
            agreement_repo,
            HiddenRequestRepository(),
            self.statuses,
            clock,
        )
        self.quotes = QuoteBook(self.db, quote_repo, request_repo, self.statuses, self.publisher, clock)
        self.workflow = WorkflowTracker(
            self.db,
            WorkflowRepository(),
            request_repo,
            self.requests,
            self.statuses,
            self.publisher,
            clock,
        )
        self.conversations = ConversationScoping(
            self.db,
            MessageRepository(),
            request_repo,
            quote_repo,
            self.statuses,
            clock,
        )
        self.agreements = AgreementFinalizer(
            self.db,
            agreement_repo,
            quote_repo,
            request_repo,
            self.requests,
            self.quotes,
            self.statuses,
            self.workflow,
            self.conversations,
            self.publisher,
            clock,
        )


default_db = str(Path(__file__).resolve().parents[2] / "data" / "broker.sqlite3")
broker = ServiceBroker(db_path=os.getenv("BROKER_DB_PATH", default_db))
