"""
Call session data model and registry.

A CallSession is created when an outbound call is initiated (or an inbound
media leg connects) and is only mutated by the orchestrator and state machine
that own its id.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

import structlog

if TYPE_CHECKING:
    from src.dialer.orchestrator import StreamOrchestrator
    from src.dialer.state_machine import CallStateMachine

logger = structlog.get_logger(__name__)

MAX_RECOMMENDED_PRODUCTS = 3

# Per-subscriber backlog; one response_chunk arrives per streamed token
EVENT_QUEUE_SIZE = 256


class CallStatus(str, Enum):
    """Call lifecycle states."""
    IDLE = "idle"
    CALLING = "calling"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class SessionNotFound(KeyError):
    """Raised when a session id is not in the registry."""
    pass


@dataclass(frozen=True)
class ConversationMessage:
    """One transcript entry. Immutable once appended."""
    role: MessageRole
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, str]:
        """Format for the chat completion API."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class OrderLineItem:
    """A confirmed order line. `total` is always derived from its inputs."""
    product: str
    quantity: int
    price_per_case: Decimal

    def __post_init__(self):
        if not self.product:
            raise ValueError("product must not be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {self.quantity!r}")
        price = Decimal(str(self.price_per_case))
        if price <= 0:
            raise ValueError(f"price_per_case must be positive, got {self.price_per_case!r}")
        object.__setattr__(self, "price_per_case", price)

    @property
    def total(self) -> Decimal:
        return self.price_per_case * self.quantity


@dataclass
class OrderState:
    """Order captured during the call."""
    customer_name: str = ""
    hotel_name: str = ""
    products: List[OrderLineItem] = field(default_factory=list)
    recommended_products: Deque[str] = field(
        default_factory=lambda: deque(maxlen=MAX_RECOMMENDED_PRODUCTS)
    )

    @property
    def total(self) -> Decimal:
        return sum((item.total for item in self.products), Decimal("0"))

    def add_recommendation(self, product: str) -> None:
        """Remember a recommended product; the oldest drops out past the limit."""
        if product and product not in self.recommended_products:
            self.recommended_products.append(product)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_name": self.customer_name,
            "hotel_name": self.hotel_name,
            "products": [
                {
                    "product": item.product,
                    "quantity": item.quantity,
                    "price_per_case": str(item.price_per_case),
                    "total": str(item.total),
                }
                for item in self.products
            ],
            "total": str(self.total),
            "recommended_products": list(self.recommended_products),
        }


class SessionFlags:
    """
    Advisory conversation flags.

    Monotonic: a flag can go from False to True, never back.
    """

    __slots__ = ("reorder_confirmed", "upsell_attempted", "customer_done")

    def __init__(self):
        object.__setattr__(self, "reorder_confirmed", False)
        object.__setattr__(self, "upsell_attempted", False)
        object.__setattr__(self, "customer_done", False)

    def __setattr__(self, name: str, value: bool) -> None:
        if getattr(self, name) and not value:
            raise ValueError(f"Session flag '{name}' cannot be reset once set")
        object.__setattr__(self, name, bool(value))

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in self.__slots__}

    def __repr__(self) -> str:
        return f"SessionFlags({self.to_dict()})"


@dataclass(frozen=True)
class SessionEvent:
    """Outbound notification about a session (dashboard / observers)."""
    kind: str
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "session_id": self.session_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class EventChannel:
    """
    Fan-out of session events to live subscribers.

    Every subscriber gets its own bounded queue and sees every event. A
    subscriber that falls behind loses its oldest events. With nobody
    subscribed, events are dropped.
    """

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE):
        self.maxsize = maxsize
        self.dropped = 0
        self._subscribers: List["asyncio.Queue[SessionEvent]"] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[SessionEvent]":
        queue: "asyncio.Queue[SessionEvent]" = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[SessionEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: SessionEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                self.dropped += 1
            queue.put_nowait(event)


def new_session_id() -> str:
    return f"call_{uuid.uuid4().hex[:16]}"


@dataclass
class CallSession:
    """State for a single call attempt."""
    id: str = field(default_factory=new_session_id)
    status: CallStatus = CallStatus.IDLE
    start_time: float = field(default_factory=time.time)
    timeout_attempts: int = 0
    transcript: List[ConversationMessage] = field(default_factory=list)
    flags: SessionFlags = field(default_factory=SessionFlags)
    order: OrderState = field(default_factory=OrderState)

    phone_number: str = ""
    manager_name: str = ""
    call_sid: str = ""
    system_prompt: Optional[str] = None
    ended_reason: Optional[str] = None
    ended_at: Optional[float] = None
    artifacts: List[str] = field(default_factory=list)
    events: EventChannel = field(default_factory=EventChannel, repr=False)

    @property
    def is_ended(self) -> bool:
        return self.status == CallStatus.ENDED

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or time.time()
        return max(0.0, end - self.start_time)

    def append_message(self, role: MessageRole, content: str) -> ConversationMessage:
        """Append a transcript entry; entries are never reordered."""
        message = ConversationMessage(role=role, content=content)
        self.transcript.append(message)
        return message

    def emit(self, kind: str, **payload: Any) -> SessionEvent:
        """Publish an event to the session's subscribers."""
        event = SessionEvent(kind=kind, session_id=self.id, payload=payload)
        self.events.publish(event)
        return event

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "phone_number": self.phone_number,
            "call_sid": self.call_sid,
            "start_time": self.start_time,
            "duration_seconds": round(self.duration_seconds, 1),
            "timeout_attempts": self.timeout_attempts,
            "ended_reason": self.ended_reason,
            "flags": self.flags.to_dict(),
            "order": self.order.to_dict(),
        }


@dataclass
class CallContext:
    """Everything held for one call. Evicted from the registry as a unit."""
    session: CallSession
    machine: Optional["CallStateMachine"] = None
    orchestrator: Optional["StreamOrchestrator"] = None
    stream_watchdog: Optional[asyncio.Task] = None

    def cancel_watchdog(self) -> None:
        if self.stream_watchdog is not None and not self.stream_watchdog.done():
            self.stream_watchdog.cancel()
        self.stream_watchdog = None


class SessionRegistry:
    """In-memory index of live (and recently ended) calls, keyed by session id."""

    def __init__(self):
        self._calls: Dict[str, CallContext] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._calls

    def create(self, **kwargs: Any) -> CallSession:
        session = CallSession(**kwargs)
        if session.id in self._calls:
            raise ValueError(f"Duplicate session id: {session.id}")
        self._calls[session.id] = CallContext(session=session)
        logger.info("Session created", call_id=session.id, phone_number=session.phone_number)
        return session

    def context(self, session_id: str) -> CallContext:
        try:
            return self._calls[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def find_context(self, session_id: str) -> Optional[CallContext]:
        return self._calls.get(session_id)

    def get(self, session_id: str) -> CallSession:
        return self.context(session_id).session

    def find(self, session_id: str) -> Optional[CallSession]:
        context = self._calls.get(session_id)
        return context.session if context is not None else None

    def find_by_call_sid(self, call_sid: str) -> Optional[CallSession]:
        if not call_sid:
            return None
        for context in self._calls.values():
            if context.session.call_sid == call_sid:
                return context.session
        return None

    def remove(self, session_id: str) -> Optional[CallSession]:
        """Drop the call and everything attached to it."""
        context = self._calls.pop(session_id, None)
        if context is None:
            return None
        context.cancel_watchdog()
        logger.info("Session evicted", call_id=session_id)
        return context.session

    def all(self) -> List[CallSession]:
        return [context.session for context in self._calls.values()]
