from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

BookingMode = Literal["immediate", "scheduled", "quote-only"]
RequestStatus = Literal["Open", "Assigned", "InProgress", "Completed", "Cancelled"]
ProviderStatus = Literal["Hidden", "Viewed", "Negotiating", "Quoted", "Assigned", "Rejected", "Completed"]
QuoteStatus = Literal["Pending", "Accepted", "Rejected", "Expired"]
AgreementStatus = Literal["Pending", "Accepted", "Rejected", "Cancelled"]
Milestone = Literal["assigned", "in_progress", "checked_in", "completed"]
ActorRole = Literal["requester", "provider"]


class ServiceRequest(BaseModel):
    id: str
    requester_id: str
    booking_mode: BookingMode
    category: str
    subcategory: str
    location: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    date: Optional[str] = None
    time: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    assigned_provider_id: Optional[str] = None
    status: RequestStatus = "Open"
    created_at: str
    updated_at: str


class ProviderFeedItem(BaseModel):
    request: ServiceRequest
    provider_status: ProviderStatus = "Viewed"


class ProviderRequestStatus(BaseModel):
    id: str
    request_id: str
    provider_id: str
    status: ProviderStatus
    quote_id: Optional[str] = None
    last_updated: str


class Quote(BaseModel):
    id: str
    request_id: str
    provider_id: str
    price: Decimal
    message: Optional[str] = None
    expires_at: Optional[str] = None
    status: QuoteStatus = "Pending"
    accepted_by_requester: bool = False
    requester_accepted_at: Optional[str] = None
    accepted_by_provider: bool = False
    provider_accepted_at: Optional[str] = None
    created_at: str
    updated_at: str


class Agreement(BaseModel):
    id: str
    quote_id: str
    request_id: str
    requester_id: str
    provider_id: str
    requester_accepted: bool = False
    requester_accepted_at: Optional[str] = None
    provider_accepted: bool = False
    provider_accepted_at: Optional[str] = None
    finalized_at: Optional[str] = None
    status: AgreementStatus = "Pending"
    created_at: str
    updated_at: str


class WorkflowStatus(BaseModel):
    id: str
    request_id: str
    provider_id: str
    is_assigned: bool = False
    assigned_at: Optional[str] = None
    is_in_progress: bool = False
    in_progress_at: Optional[str] = None
    is_checked_in: bool = False
    checked_in_at: Optional[str] = None
    is_completed: bool = False
    completed_at: Optional[str] = None
    created_at: str
    updated_at: str


class HiddenRequest(BaseModel):
    id: str
    provider_id: str
    service_request_id: str
    hidden_at: str


class Message(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    request_id: str
    quote_id: Optional[str] = None
    text: str
    created_at: str
    is_read: bool = False
    is_delivered: bool = False
    is_system: bool = False


class MessageThread(BaseModel):
    request_id: str
    quote_id: Optional[str] = None
    messages: list[Message]
    total_count: int
    unread_count: int


class ChatSummary(BaseModel):
    request_id: str
    other_user_id: str
    service_title: str
    last_message: str
    last_message_time: str
    unread_count: int


class ChatList(BaseModel):
    chats: list[ChatSummary]
    total_count: int


class ServiceRequestCreate(BaseModel):
    requester_id: str
    booking_mode: str
    category: str
    subcategory: str
    location: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    date: Optional[str] = None
    time: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class ActorRequest(BaseModel):
    actor_user_id: str


class QuoteSubmitRequest(BaseModel):
    request_id: str
    provider_id: str
    price: Decimal
    message: Optional[str] = None
    expires_at: Optional[str] = None


class AgreementOpenRequest(BaseModel):
    quote_id: str
    requester_id: str


class AgreementActionRequest(BaseModel):
    actor_user_id: str
    actor_role: str


class WorkflowAdvanceRequest(BaseModel):
    actor_user_id: str
    milestone: str


class MessagePostRequest(BaseModel):
    sender_id: str
    request_id: str
    text: str
    quote_id: Optional[str] = None
    receiver_id: Optional[str] = None


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["request", "quote", "agreement", "workflow", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
    payload: dict[str, str] = Field(default_factory=dict)
