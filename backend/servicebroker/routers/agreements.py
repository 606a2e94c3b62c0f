from typing import Optional

from fastapi import APIRouter, Header, Query

from servicebroker.auth import assert_actor_authorized
from servicebroker.models import ActorRequest, Agreement, AgreementActionRequest, AgreementOpenRequest
from servicebroker.routers.common import raise_broker_http_error
from servicebroker.services.broker import broker
from servicebroker.services.errors import BrokerError

router = APIRouter(prefix="/agreements", tags=["agreements"])


@router.post("", response_model=Agreement)
def open_agreement(
    request: AgreementOpenRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.requester_id, authorization=authorization)
    try:
        return broker.agreements.open(quote_id=request.quote_id, requester_id=request.requester_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("", response_model=list[Agreement])
def list_agreements(
    request_id: str = Query(...),
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return broker.agreements.list_for_request(request_id=request_id, actor_user_id=actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("/{agreement_id}", response_model=Agreement)
def get_agreement(
    agreement_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return broker.agreements.get_for_actor(agreement_id=agreement_id, actor_user_id=actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{agreement_id}/accept", response_model=Agreement)
def accept_agreement(
    agreement_id: str,
    request: AgreementActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.agreements.accept(
            agreement_id=agreement_id,
            actor_user_id=request.actor_user_id,
            actor_role=request.actor_role,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{agreement_id}/reject", response_model=Agreement)
def reject_agreement(
    agreement_id: str,
    request: AgreementActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.agreements.reject(
            agreement_id=agreement_id,
            actor_user_id=request.actor_user_id,
            actor_role=request.actor_role,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{agreement_id}/cancel", response_model=Agreement)
def cancel_agreement(
    agreement_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.agreements.cancel(agreement_id=agreement_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)
