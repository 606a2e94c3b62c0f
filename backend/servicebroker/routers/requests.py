from typing import Optional

from fastapi import APIRouter, Header, Query

from servicebroker.auth import assert_actor_authorized
from servicebroker.models import (
    ActorRequest,
    HiddenRequest,
    ProviderFeedItem,
    ProviderRequestStatus,
    ServiceRequest,
    ServiceRequestCreate,
)
from servicebroker.routers.common import raise_broker_http_error
from servicebroker.services.broker import broker
from servicebroker.services.errors import BrokerError

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequest)
def create_request(
    request: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.requester_id, authorization=authorization)
    try:
        return broker.requests.create(
            requester_id=request.requester_id,
            booking_mode=request.booking_mode,
            category=request.category,
            subcategory=request.subcategory,
            location=request.location,
            latitude=request.latitude,
            longitude=request.longitude,
            date=request.date,
            time=request.time,
            title=request.title,
            description=request.description,
            notes=request.notes,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    requester_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    booking_mode: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=requester_id, authorization=authorization)
    try:
        return broker.requests.list_for_requester(
            requester_id=requester_id,
            status=status,
            booking_mode=booking_mode,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("/feed", response_model=list[ProviderFeedItem])
def provider_feed(
    provider_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=provider_id, authorization=authorization)
    return broker.requests.list_open_for_provider(provider_id=provider_id)


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(request_id: str):
    try:
        return broker.requests.get(request_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.put("/{request_id}", response_model=ServiceRequest)
def update_request(
    request_id: str,
    request: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.requester_id, authorization=authorization)
    try:
        return broker.requests.update(
            request_id=request_id,
            actor_user_id=request.requester_id,
            booking_mode=request.booking_mode,
            category=request.category,
            subcategory=request.subcategory,
            location=request.location,
            latitude=request.latitude,
            longitude=request.longitude,
            date=request.date,
            time=request.time,
            title=request.title,
            description=request.description,
            notes=request.notes,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.requests.cancel(request_id=request_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{request_id}/view", response_model=ProviderRequestStatus)
def view_request(
    request_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.statuses.record_view(request_id=request_id, provider_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{request_id}/hide", response_model=HiddenRequest)
def hide_request(
    request_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.visibility.hide(request_id=request_id, provider_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{request_id}/unhide")
def unhide_request(
    request_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    removed = broker.visibility.unhide(request_id=request_id, provider_id=request.actor_user_id)
    return {"request_id": request_id, "provider_id": request.actor_user_id, "unhidden": removed}


@router.get("/{request_id}/statuses", response_model=list[ProviderRequestStatus])
def list_provider_statuses(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return broker.statuses.list_for_request(request_id=request_id, actor_user_id=actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("/{request_id}/statuses/{provider_id}", response_model=ProviderRequestStatus)
def get_provider_status(request_id: str, provider_id: str):
    try:
        return broker.statuses.get(request_id=request_id, provider_id=provider_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)
