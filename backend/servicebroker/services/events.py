import logging
from collections import deque
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Callable, ClassVar, Deque, Dict, Iterable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerEvent:
    name: ClassVar[str] = "BrokerEvent"

    def payload(self) -> Dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class RequestAssigned(BrokerEvent):
    name: ClassVar[str] = "RequestAssigned"
    request_id: str
    provider_id: str


@dataclass(frozen=True)
class QuoteReceived(BrokerEvent):
    name: ClassVar[str] = "QuoteReceived"
    request_id: str
    provider_id: str


@dataclass(frozen=True)
class AgreementFinalized(BrokerEvent):
    name: ClassVar[str] = "AgreementFinalized"
    request_id: str
    provider_id: str
    quote_id: str


@dataclass(frozen=True)
class WorkflowMilestoneReached(BrokerEvent):
    name: ClassVar[str] = "WorkflowMilestoneReached"
    request_id: str
    provider_id: str
    milestone: str


@dataclass(frozen=True)
class RequestCompleted(BrokerEvent):
    name: ClassVar[str] = "RequestCompleted"
    request_id: str


EventHandler = Callable[[BrokerEvent], None]


class EventPublisher:
    """Outbound contract for collaborators; implementations must not raise into callers."""

    def publish(self, event: BrokerEvent) -> None:
        raise NotImplementedError

    def publish_all(self, events: Iterable[BrokerEvent]) -> None:
        for event in events:
            self.publish(event)


class InProcessEventPublisher(EventPublisher):
    def __init__(self, history_size: int = 1000) -> None:
        self._lock = Lock()
        self._handlers: List[EventHandler] = []
        self.published: Deque[BrokerEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def publish(self, event: BrokerEvent) -> None:
        with self._lock:
            self.published.append(event)
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.name)
