import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from servicebroker.auth import assert_actor_authorized, require_authenticated_user
from servicebroker.models import ActorRequest, AgreementActionRequest, Quote, QuoteSubmitRequest
from servicebroker.routers.common import raise_broker_http_error
from servicebroker.services.broker import broker
from servicebroker.services.errors import BrokerError

router = APIRouter(prefix="/quotes", tags=["quotes"])

SWEEP_ON_READ = os.getenv("QUOTE_SWEEP_ON_READ", "true").lower() in {"1", "true", "yes"}


def _sweep_expired_quotes() -> None:
    if SWEEP_ON_READ:
        broker.quotes.expire_due()


@router.post("", response_model=Quote)
def submit_quote(
    request: QuoteSubmitRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return broker.quotes.submit(
            request_id=request.request_id,
            provider_id=request.provider_id,
            price=request.price,
            message=request.message,
            expires_at=request.expires_at,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("", response_model=list[Quote])
def list_quotes(
    request_id: str = Query(...),
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    _sweep_expired_quotes()
    try:
        return broker.quotes.list_for_request(request_id=request_id, actor_user_id=actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/sweep", response_model=list[Quote], dependencies=[Depends(require_authenticated_user)])
def sweep_quotes():
    return broker.quotes.expire_due()


@router.get("/{quote_id}", response_model=Quote)
def get_quote(
    quote_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return broker.quotes.get_for_actor(quote_id=quote_id, actor_user_id=actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{quote_id}/accept", response_model=Quote)
def accept_quote(
    quote_id: str,
    request: AgreementActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        if request.actor_role == "requester":
            return broker.quotes.accept_by_requester(quote_id=quote_id, actor_user_id=request.actor_user_id)
        if request.actor_role == "provider":
            return broker.quotes.accept_by_provider(quote_id=quote_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)
    raise HTTPException(status_code=400, detail="Invalid actor_role. Allowed: requester, provider")


@router.post("/{quote_id}/expire", response_model=Quote)
def expire_quote(
    quote_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.quotes.expire(quote_id=quote_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)
