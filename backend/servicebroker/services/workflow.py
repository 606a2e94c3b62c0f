import logging
import sqlite3
from typing import List
from uuid import uuid4

from servicebroker.models import WorkflowStatus
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import (
    BrokerNotFoundError,
    BrokerPermissionError,
    BrokerTransitionError,
    BrokerValidationError,
)
from servicebroker.services.events import BrokerEvent, EventPublisher, RequestCompleted, WorkflowMilestoneReached
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.repositories import MILESTONE_COLUMNS, RequestRepository, WorkflowRepository
from servicebroker.services.request_lifecycle import RequestLifecycle

logger = logging.getLogger(__name__)

MILESTONES = ("assigned", "in_progress", "checked_in", "completed")


class WorkflowTracker:
    def __init__(
        self,
        db: Database,
        workflows: WorkflowRepository,
        requests: RequestRepository,
        lifecycle: RequestLifecycle,
        tracker: ProviderStatusTracker,
        publisher: EventPublisher,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._workflows = workflows
        self._requests = requests
        self._lifecycle = lifecycle
        self._tracker = tracker
        self._publisher = publisher
        self._clock = clock

    def create(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> WorkflowStatus:
        now_iso = to_iso(self._clock())
        workflow = WorkflowStatus(
            id=f"wf_{uuid4().hex[:12]}",
            request_id=request_id,
            provider_id=provider_id,
            is_assigned=True,
            assigned_at=now_iso,
            created_at=now_iso,
            updated_at=now_iso,
        )
        self._workflows.insert(conn, workflow)
        return workflow

    def _reload(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> WorkflowStatus:
        workflow = self._workflows.get(conn, request_id, provider_id)
        if not workflow:
            raise BrokerNotFoundError("Workflow status not found")
        return workflow

    def get(self, *, request_id: str, provider_id: str) -> WorkflowStatus:
        with self._db.read() as conn:
            return self._reload(conn, request_id, provider_id)

    def get_for_actor(self, *, request_id: str, provider_id: str, actor_user_id: str) -> WorkflowStatus:
        with self._db.read() as conn:
            workflow = self._reload(conn, request_id, provider_id)
            request = self._requests.get(conn, request_id)
        if actor_user_id != provider_id and (not request or actor_user_id != request.requester_id):
            raise BrokerPermissionError("Only the requester and the assigned provider can read this workflow")
        return workflow

    def _next_milestone(self, workflow: WorkflowStatus) -> str:
        for milestone in MILESTONES:
            flag, _ = MILESTONE_COLUMNS[milestone]
            if not getattr(workflow, flag):
                return milestone
        return ""

    def advance(self, *, request_id: str, provider_id: str, milestone: str, actor_user_id: str) -> WorkflowStatus:
        if milestone not in MILESTONES:
            raise BrokerValidationError(f"Invalid milestone. Allowed: {', '.join(MILESTONES)}")
        if actor_user_id != provider_id:
            raise BrokerPermissionError("Only the assigned provider can advance the workflow")

        events: List[BrokerEvent] = []
        with self._db.transaction() as conn:
            workflow = self._reload(conn, request_id, provider_id)
            request = self._requests.get(conn, request_id)
            if not request or request.assigned_provider_id != provider_id:
                raise BrokerTransitionError("Request is no longer assigned to this provider")

            expected = self._next_milestone(workflow)
            if not expected:
                raise BrokerTransitionError("Workflow is already completed")
            if milestone != expected:
                raise BrokerTransitionError(f"Next milestone is {expected}, not {milestone}")

            self._workflows.set_milestone(conn, workflow.id, milestone, to_iso(self._clock()))
            if milestone == "in_progress":
                self._lifecycle.start(conn, request_id)
            elif milestone == "completed":
                self._lifecycle.complete(conn, request_id)
                self._tracker.mark_completed(conn, request_id, provider_id)
            events.append(WorkflowMilestoneReached(request_id=request_id, provider_id=provider_id, milestone=milestone))
            if milestone == "completed":
                events.append(RequestCompleted(request_id=request_id))
            updated = self._reload(conn, request_id, provider_id)

        logger.info("Request %s reached milestone %s", request_id, milestone)
        self._publisher.publish_all(events)
        return updated
