from typing import Optional

from fastapi import APIRouter, Header, Query

from servicebroker.auth import assert_actor_authorized
from servicebroker.models import ActorRequest, ChatList, Message, MessagePostRequest, MessageThread
from servicebroker.routers.common import raise_broker_http_error
from servicebroker.services.broker import broker
from servicebroker.services.errors import BrokerError

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", response_model=Message)
def post_message(
    request: MessagePostRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.sender_id, authorization=authorization)
    try:
        return broker.conversations.post(
            sender_id=request.sender_id,
            request_id=request.request_id,
            text=request.text,
            quote_id=request.quote_id,
            receiver_id=request.receiver_id,
        )
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.get("/chats", response_model=ChatList)
def list_chats(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return broker.conversations.list_chats(user_id=user_id)


@router.get("/thread", response_model=MessageThread)
def get_thread(
    request_id: str = Query(...),
    viewer_id: str = Query(...),
    quote_id: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=viewer_id, authorization=authorization)
    try:
        return broker.conversations.list_thread(request_id=request_id, viewer_id=viewer_id, quote_id=quote_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{message_id}/read", response_model=Message)
def mark_message_read(
    message_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.conversations.mark_read(message_id=message_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)


@router.post("/{message_id}/delivered", response_model=Message)
def mark_message_delivered(
    message_id: str,
    request: ActorRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return broker.conversations.mark_delivered(message_id=message_id, actor_user_id=request.actor_user_id)
    except BrokerError as exc:
        raise_broker_http_error(exc)
