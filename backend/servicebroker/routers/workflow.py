from typing import Optional

from fastapi import APIRouter, Header, Query

from servicebroker.auth import assert_actor_authorized
from servicebroker.models import WorkflowAdvanceRequest, WorkflowStatus
from servicebroker.routers.common import raise_broker_http_error
from servicebroker.services.broker import broker
from servicebroker.services.errors import BrokerError

router = APIRouter(prefix="/workflow", tags=["workflow"])


@router.get("/{request_id}/{provider_id}", response_model=WorkflowStatus)
def get_workflow(
    request_id: str,
    provider_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return broker.workflow.get_for_actor(
            request_id=request_id,
            provider_id=provider_id,
            actor_user_id=actor_user_id,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{request_id}/{provider_id}/advance", response_model=WorkflowStatus)
def advance_workflow(
    request_id: str,
    provider_id: str,
    request: WorkflowAdvanceRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.workflow.advance(
            request_id=request_id,
            provider_id=provider_id,
            milestone=request.milestone,
            actor_user_id=request.actor_user_id,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)
