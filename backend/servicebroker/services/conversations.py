import sqlite3
from typing import Dict, Optional, Tuple
from uuid import uuid4

from servicebroker.models import ChatList, ChatSummary, Message, MessageThread
from servicebroker.services.clock import Clock, to_iso, utc_now
from servicebroker.services.db import Database
from servicebroker.services.errors import BrokerNotFoundError, BrokerPermissionError, BrokerValidationError
from servicebroker.services.provider_status import ProviderStatusTracker
from servicebroker.services.repositories import MessageRepository, QuoteRepository, RequestRepository

MAX_TEXT_LENGTH = 2000


class ConversationScoping:
    """Binds chat messages to a request thread or to one quote's negotiation thread."""

    def __init__(
        self,
        db: Database,
        messages: MessageRepository,
        requests: RequestRepository,
        quotes: QuoteRepository,
        tracker: ProviderStatusTracker,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._messages = messages
        self._requests = requests
        self._quotes = quotes
        self._tracker = tracker
        self._clock = clock

    def _insert(
        self,
        conn: sqlite3.Connection,
        *,
        sender_id: str,
        receiver_id: str,
        request_id: str,
        quote_id: Optional[str],
        text: str,
        is_system: bool = False,
    ) -> Message:
        message = Message(
            id=f"msg_{uuid4().hex[:12]}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            request_id=request_id,
            quote_id=quote_id,
            text=text,
            created_at=to_iso(self._clock()),
            is_system=is_system,
        )
        self._messages.insert(conn, message)
        return message

    def system_message(
        self,
        conn: sqlite3.Connection,
        *,
        sender_id: str,
        receiver_id: str,
        request_id: str,
        quote_id: str,
        text: str,
    ) -> Message:
        return self._insert(
            conn,
            sender_id=sender_id,
            receiver_id=receiver_id,
            request_id=request_id,
            quote_id=quote_id,
            text=text,
            is_system=True,
        )

    def post(
        self,
        *,
        sender_id: str,
        request_id: str,
        text: str,
        quote_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
    ) -> Message:
        cleaned_text = text.strip()
        if not cleaned_text:
            raise BrokerValidationError("Message text is required")
        if len(cleaned_text) > MAX_TEXT_LENGTH:
            raise BrokerValidationError(f"Message text must be at most {MAX_TEXT_LENGTH} characters")

        with self._db.transaction() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            is_requester = sender_id == request.requester_id

            if quote_id:
                quote = self._quotes.get(conn, quote_id)
                if not quote:
                    raise BrokerNotFoundError("Quote not found")
                if quote.request_id != request_id:
                    raise BrokerValidationError("Quote does not belong to this request")
                if not is_requester and sender_id != quote.provider_id:
                    raise BrokerPermissionError("Only the requester and the quoting provider can use this thread")
                resolved_receiver = quote.provider_id if is_requester else request.requester_id
                if receiver_id and receiver_id != resolved_receiver:
                    raise BrokerValidationError("receiver_id does not match the quote thread")
                provider_id = quote.provider_id
            elif is_requester:
                resolved_receiver = receiver_id or request.assigned_provider_id or ""
                if not resolved_receiver:
                    raise BrokerValidationError("receiver_id is required while no provider is assigned")
                if resolved_receiver != request.assigned_provider_id and not self._tracker.current(
                    conn, request_id, resolved_receiver
                ):
                    raise BrokerValidationError("receiver_id has not engaged with this request")
                provider_id = resolved_receiver
            else:
                if request.status != "Open" and sender_id != request.assigned_provider_id:
                    raise BrokerPermissionError("Request is closed to providers other than the assigned one")
                resolved_receiver = request.requester_id
                provider_id = sender_id

            message = self._insert(
                conn,
                sender_id=sender_id,
                receiver_id=resolved_receiver,
                request_id=request_id,
                quote_id=quote_id,
                text=cleaned_text,
            )
            if request.status == "Open" and provider_id != request.requester_id:
                self._tracker.advance(conn, request_id, provider_id, "Negotiating")
        return message

    def list_thread(self, *, request_id: str, viewer_id: str, quote_id: Optional[str] = None) -> MessageThread:
        with self._db.read() as conn:
            request = self._requests.get(conn, request_id)
            if not request:
                raise BrokerNotFoundError("Service request not found")
            is_requester = viewer_id == request.requester_id
            if quote_id:
                quote = self._quotes.get(conn, quote_id)
                if not quote or quote.request_id != request_id:
                    raise BrokerNotFoundError("Quote not found for this request")
                if not is_requester and viewer_id != quote.provider_id:
                    raise BrokerPermissionError("Not a participant of this quote thread")
            messages = self._messages.list_thread(
                conn,
                request_id,
                quote_id,
                participant_id=None if is_requester else viewer_id,
            )
        unread = sum(1 for message in messages if message.receiver_id == viewer_id and not message.is_read)
        return MessageThread(
            request_id=request_id,
            quote_id=quote_id,
            messages=messages,
            total_count=len(messages),
            unread_count=unread,
        )

    def _reload(self, conn: sqlite3.Connection, message_id: str) -> Message:
        message = self._messages.get(conn, message_id)
        if not message:
            raise BrokerNotFoundError("Message not found")
        return message

    def _flag(self, *, message_id: str, actor_user_id: str, flag: str) -> Message:
        with self._db.transaction() as conn:
            message = self._reload(conn, message_id)
            if message.receiver_id != actor_user_id:
                raise BrokerPermissionError("Only the receiver can update message state")
            self._messages.set_flag(conn, message_id, flag)
            return self._reload(conn, message_id)

    def mark_read(self, *, message_id: str, actor_user_id: str) -> Message:
        return self._flag(message_id=message_id, actor_user_id=actor_user_id, flag="read")

    def mark_delivered(self, *, message_id: str, actor_user_id: str) -> Message:
        return self._flag(message_id=message_id, actor_user_id=actor_user_id, flag="delivered")

    def list_chats(self, *, user_id: str) -> ChatList:
        with self._db.read() as conn:
            rows = self._messages.list_for_participant(conn, user_id)
        chats: Dict[Tuple[str, str], ChatSummary] = {}
        for message, service_title in rows:
            other_user_id = message.receiver_id if message.sender_id == user_id else message.sender_id
            key = (message.request_id, other_user_id)
            summary = chats.get(key)
            if summary is None:
                summary = ChatSummary(
                    request_id=message.request_id,
                    other_user_id=other_user_id,
                    service_title=service_title,
                    last_message=message.text,
                    last_message_time=message.created_at,
                    unread_count=0,
                )
                chats[key] = summary
            # Rows arrive oldest first, so the last one seen per key wins.
            summary.last_message = message.text
            summary.last_message_time = message.created_at
            if message.receiver_id == user_id and not message.is_read:
                summary.unread_count += 1
        ordered = sorted(chats.values(), key=lambda chat: chat.last_message_time, reverse=True)
        return ChatList(chats=ordered, total_count=len(ordered))
