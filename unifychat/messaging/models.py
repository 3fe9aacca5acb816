"""
models.py — Shared data structures for the message dispatcher.

Defines:
    • Channel          — delivery channel enum
    • Direction        — inbound / outbound
    • MessageStatus    — lifecycle state machine
    • Message          — the persisted unit of work
    • SendRequest / SendResult — adapter call contract
    • NormalizedMessage — channel-agnostic inbound shape
    • ChannelCapabilities — static per-channel metadata
    • DeliveryEvent    — notification emitted after each dispatch
    • ScheduledSummary — listing row for pending scheduled sends

═══════════════════════════════════════════════════════════════════════════
MESSAGE STATUS STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    SCHEDULED ──► SENT ──► DELIVERED ──► READ
        │          │           │
        └──► FAILED ◄──────────┘
    PENDING ──► SENT | FAILED

    • SCHEDULED and PENDING are the two entry states (deferred vs. now).
    • FAILED and READ are terminal; a resend creates a new Message.
    • Writing the current status again is always allowed, so repeated
      status writes from racing paths are harmless.
    • READ is channel-dependent; not every channel reports it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Available delivery channels."""
    SMS      = "sms"
    WHATSAPP = "whatsapp"
    EMAIL    = "email"


class Direction(str, Enum):
    INBOUND  = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """Lifecycle status of a message."""
    PENDING   = "pending"      # created for immediate send, not yet handed off
    SCHEDULED = "scheduled"    # deferred, waiting for its instant
    SENT      = "sent"         # accepted by the vendor
    DELIVERED = "delivered"    # vendor confirmed delivery
    READ      = "read"         # vendor confirmed read / open
    FAILED    = "failed"       # send failed or scheduled send cancelled


# ═══════════════════════════════════════════════════════════════════════════
# State Machine
# ═══════════════════════════════════════════════════════════════════════════

ALLOWED_TRANSITIONS: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.SCHEDULED: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.PENDING:   frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT:      frozenset({MessageStatus.DELIVERED, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ:      frozenset(),
    MessageStatus.FAILED:    frozenset(),
}

TERMINAL_STATUSES: FrozenSet[MessageStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses counted as a successful hand-off in reporting
SUCCESS_STATUSES: FrozenSet[MessageStatus] = frozenset(
    {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ}
)


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    """True if ``current → target`` is a legal move (or a no-op rewrite)."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: MessageStatus) -> bool:
    return status in TERMINAL_STATUSES


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Message:
    """
    A persisted message.

    Attributes
    ----------
    content : str
        Text body.
    channel : Channel
    to : str
        Channel address of the recipient (E.164 phone or email).
    direction : Direction
    status : MessageStatus
    from_address : str | None
        Sender address; adapters fall back to their configured sender.
    scheduled_at : datetime | None
        Present only for deferred sends.
    metadata : dict
        Channel artifacts: vendor_message_id, media_url, subject,
        integration response, raw inbound payload.
    contact_id, user_id, team_id : str | None
        Ownership keys used by listing filters.
    id : str | None
        Assigned by the message store on create.
    """
    content: str
    channel: Channel
    to: str
    direction: Direction = Direction.OUTBOUND
    status: MessageStatus = MessageStatus.PENDING
    from_address: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    metadata: Dict[str, Any] = field(default_factory=dict)
    contact_id: Optional[str] = None
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def vendor_message_id(self) -> Optional[str]:
        return self.metadata.get("vendor_message_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "channel": self.channel.value,
            "direction": self.direction.value,
            "status": self.status.value,
            "to": self.to,
            "from": self.from_address,
            "scheduled_at": _iso(self.scheduled_at),
            "created_at": _iso(self.created_at),
            "contact_id": self.contact_id,
            "user_id": self.user_id,
            "team_id": self.team_id,
            "metadata": self.metadata,
        }


@dataclass
class SendRequest:
    """Outbound send handed to an adapter."""
    channel: Channel
    to: str
    content: str
    from_address: Optional[str] = None
    media_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    """
    Outcome of one adapter send.

    ``message_id`` is the vendor's identifier (Twilio SID, SendGrid
    X-Message-Id), not the store id.
    """
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def cost(self) -> Optional[float]:
        """Actual vendor price when the transport reported one."""
        price = self.metadata.get("price")
        if price in (None, ""):
            return None
        try:
            return abs(float(price))
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class NormalizedMessage:
    """Channel-agnostic projection of an inbound webhook payload."""
    vendor_message_id: str
    channel: Channel
    direction: Direction
    from_address: str
    to: str
    content: str
    status: MessageStatus
    timestamp: datetime = field(default_factory=_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_message_id": self.vendor_message_id,
            "channel": self.channel.value,
            "direction": self.direction.value,
            "from": self.from_address,
            "to": self.to,
            "content": self.content,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ChannelCapabilities:
    """Static metadata describing a channel's cost and performance class."""
    display_name: str
    description: str
    cost_per_unit: float
    unit: str
    reliability_pct: float
    latency_class: str
    min_latency_seconds: float
    features: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "display_name": self.display_name,
            "description": self.description,
            "features": list(self.features),
            "pricing": {
                "cost": self.cost_per_unit,
                "unit": self.unit,
            },
            "reliability": self.reliability_pct,
            "latency": self.latency_class,
        }


@dataclass
class DeliveryEvent:
    """Notification emitted to the broadcaster after each completed dispatch."""
    event_type: str
    message_id: Optional[str]
    channel: Channel
    direction: Direction
    content: str
    status: MessageStatus
    recipient: Optional[str] = None
    contact_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def for_message(cls, message: Message) -> "DeliveryEvent":
        event_type = (
            "message_sent" if message.direction == Direction.OUTBOUND
            else "message_received"
        )
        return cls(
            event_type=event_type,
            message_id=message.id,
            channel=message.channel,
            direction=message.direction,
            content=message.content,
            status=message.status,
            recipient=message.to,
            contact_id=message.contact_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "message_id": self.message_id,
            "contact_id": self.contact_id,
            "recipient": self.recipient,
            "channel": self.channel.value,
            "direction": self.direction.value,
            "content": self.content,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ScheduledSummary:
    """Listing row for a scheduled message."""
    message_id: str
    channel: Channel
    to: str
    preview: str
    scheduled_at: Optional[datetime]
    contact_id: Optional[str] = None
    armed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "channel": self.channel.value,
            "to": self.to,
            "preview": self.preview,
            "scheduled_at": _iso(self.scheduled_at),
            "contact_id": self.contact_id,
            "armed": self.armed,
        }
