"""
service.py — Caller-facing facade over the dispatcher.

    service = MessagingService(store, registry, metrics, scheduler, broadcaster)

    await service.send_now(SendRequest(Channel.SMS, "+15551234567", "hi"))
    await service.schedule(request, scheduled_at=now + timedelta(hours=1))
    await service.cancel_scheduled(message_id)
    await service.list_scheduled(contact_id="c1")
    service.channel_info()
    service.analysis()
    await service.ingest("sms", webhook_payload)

``send_now`` / ``schedule`` report failures in their result objects so
the HTTP layer can choose a status code; they never raise for expected
problems (bad input, disabled channel, vendor rejection, store outage).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from unifychat.core.errors import (
    ChannelNotEnabledError,
    NotFoundError,
    ValidationError,
)
from unifychat.core.logging_config import dispatch_context, mask_recipient
from unifychat.messaging.broadcaster import Broadcaster
from unifychat.messaging.metrics import MetricsAggregator
from unifychat.messaging.models import (
    Channel,
    DeliveryEvent,
    Direction,
    Message,
    MessageStatus,
    NormalizedMessage,
    ScheduledSummary,
    SendRequest,
    SendResult,
    can_transition,
)
from unifychat.messaging.recommendations import generate_recommendations
from unifychat.messaging.registry import AdapterRegistry
from unifychat.messaging.scheduler import DeliveryScheduler
from unifychat.messaging.store import MessageStore

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


# ═══════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SendNowResult:
    success: bool
    message_id: Optional[str] = None
    vendor_message_id: Optional[str] = None
    status: Optional[MessageStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "vendor_message_id": self.vendor_message_id,
            "status": self.status.value if self.status else None,
            "error": self.error,
        }


@dataclass
class ScheduleResult:
    success: bool
    message_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "error": self.error,
        }


@dataclass
class IngestResult:
    """What the webhook path did with one payload."""
    action: str  # created | status_updated | ignored | duplicate | dropped
    message_id: Optional[str] = None
    status: Optional[MessageStatus] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.action != "dropped"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "accepted": self.accepted,
            "action": self.action,
            "message_id": self.message_id,
            "status": self.status.value if self.status else None,
        }
        if self.details:
            d["details"] = self.details
        return d


def _validation_failure(request: SendRequest) -> Optional[str]:
    if not request.content or not request.content.strip():
        return "content is required"
    if not request.to or not request.to.strip():
        return "recipient is required"
    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class MessagingService:

    def __init__(
        self,
        store: MessageStore,
        registry: AdapterRegistry,
        metrics: MetricsAggregator,
        scheduler: DeliveryScheduler,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.store = store
        self.registry = registry
        self.metrics = metrics
        self.scheduler = scheduler
        self.broadcaster = broadcaster

    # ── Outbound ──

    async def send_now(
        self,
        request: SendRequest,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> SendNowResult:
        """Persist, dispatch immediately, record metrics, broadcast."""
        problem = _validation_failure(request)
        if problem:
            return SendNowResult(success=False, error=problem, error_code="VALIDATION_ERROR")

        if not self.registry.is_enabled(request.channel):
            return SendNowResult(
                success=False,
                error=ChannelNotEnabledError(request.channel.value).message,
                error_code="CHANNEL_NOT_ENABLED",
            )

        metadata = dict(request.metadata)
        if request.media_url:
            metadata["media_url"] = request.media_url

        try:
            message = await self.store.create(Message(
                content=request.content,
                channel=request.channel,
                to=request.to,
                from_address=request.from_address,
                direction=Direction.OUTBOUND,
                status=MessageStatus.PENDING,
                metadata=metadata,
                contact_id=contact_id,
                user_id=user_id,
                team_id=team_id,
            ))
        except Exception as exc:
            logger.exception("Could not persist outbound message")
            return SendNowResult(success=False, error=str(exc), error_code="STORE_ERROR")

        with dispatch_context(message.id, request.channel.value):
            try:
                result = await self.metrics.measure_latency(
                    lambda: self.registry.dispatch(request),
                    request.channel,
                    message_id=message.id,
                )
            except Exception as exc:
                logger.exception("Send of message %s raised", message.id)
                result = SendResult(success=False, error=str(exc) or type(exc).__name__)

        status = MessageStatus.SENT if result.success else MessageStatus.FAILED
        updates: Dict[str, Any] = {}
        if result.message_id:
            updates["vendor_message_id"] = result.message_id
        if result.error:
            updates["error"] = result.error
        try:
            await self.store.update_status(message.id, status, updates)
        except Exception:
            logger.exception("Could not record status of message %s", message.id)

        logger.info(
            "Message %s to %s via %s → %s",
            message.id, mask_recipient(request.to), request.channel.value, status.value,
            extra={
                "message_id": message.id,
                "channel": request.channel.value,
                "status": status.value,
            },
        )

        message.status = status
        await self._broadcast(message)

        return SendNowResult(
            success=result.success,
            message_id=message.id,
            vendor_message_id=result.message_id,
            status=status,
            error=result.error,
            error_code=None if result.success else "TRANSPORT_ERROR",
        )

    async def schedule(
        self,
        request: SendRequest,
        scheduled_at: datetime,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> ScheduleResult:
        """Persist a SCHEDULED message; its send happens at ``scheduled_at``."""
        problem = _validation_failure(request)
        if problem:
            return ScheduleResult(success=False, error=problem, error_code="VALIDATION_ERROR")

        scheduled_at = _as_utc(scheduled_at)
        if scheduled_at <= datetime.now(timezone.utc):
            return ScheduleResult(
                success=False,
                error="scheduled_at must be in the future",
                error_code="VALIDATION_ERROR",
            )

        if not self.registry.is_enabled(request.channel):
            return ScheduleResult(
                success=False,
                error=ChannelNotEnabledError(request.channel.value).message,
                error_code="CHANNEL_NOT_ENABLED",
            )

        metadata = dict(request.metadata)
        if request.media_url:
            metadata["media_url"] = request.media_url

        try:
            message_id = await self.scheduler.schedule(Message(
                content=request.content,
                channel=request.channel,
                to=request.to,
                from_address=request.from_address,
                direction=Direction.OUTBOUND,
                scheduled_at=scheduled_at,
                metadata=metadata,
                contact_id=contact_id,
                user_id=user_id,
                team_id=team_id,
            ))
        except Exception as exc:
            logger.exception("Could not schedule message")
            return ScheduleResult(success=False, error=str(exc), error_code="STORE_ERROR")

        return ScheduleResult(success=True, message_id=message_id, scheduled_at=scheduled_at)

    async def cancel_scheduled(self, message_id: str) -> bool:
        return await self.scheduler.cancel(message_id)

    async def list_scheduled(
        self,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> List[ScheduledSummary]:
        messages = await self.store.find_scheduled_by_filters(
            contact_id=contact_id, user_id=user_id, team_id=team_id,
        )
        return [
            ScheduledSummary(
                message_id=m.id,
                channel=m.channel,
                to=m.to,
                preview=m.content[:PREVIEW_LENGTH],
                scheduled_at=m.scheduled_at,
                contact_id=m.contact_id,
                armed=self.scheduler.is_armed(m.id),
            )
            for m in messages
        ]

    async def get_message(self, message_id: str) -> Message:
        message = await self.store.find_by_id(message_id)
        if message is None:
            raise NotFoundError("Message", id=message_id)
        return message

    async def update_status(self, message_id: str, status: MessageStatus) -> Message:
        """Manual status patch; illegal transitions are rejected."""
        message = await self.get_message(message_id)
        if not can_transition(message.status, status):
            raise ValidationError(
                f"Cannot move message from {message.status.value} to {status.value}",
                field="status",
                current=message.status.value,
            )
        await self.store.update_status(message_id, status)
        message.status = status
        return message

    # ── Reporting ──

    def channel_info(self) -> List[Dict[str, Any]]:
        rows = []
        for channel, caps in self.registry.capabilities().items():
            enabled = self.registry.is_enabled(channel)
            row: Dict[str, Any] = {
                "channel": channel.value,
                "enabled": enabled,
                "capabilities": caps.to_dict(),
                "metrics": self.metrics.channel_metrics(channel).to_dict(),
            }
            if not enabled:
                row["reason"] = self.registry.config_error(channel)
            rows.append(row)
        return rows

    def analysis(self) -> Dict[str, Any]:
        overview = self.metrics.overall_metrics()
        comparison = self.metrics.comparison()
        recommendations = generate_recommendations(
            comparison,
            overview,
            self.registry.capabilities(),
            channels=self.registry.enabled_channels(),
        )
        return {
            "overview": overview,
            "comparison": comparison,
            "recommendations": [r.to_dict() for r in recommendations],
            "cost_breakdown": self.metrics.cost_breakdown(),
            "enabled_channels": [c.value for c in self.registry.enabled_channels()],
        }

    # ── Inbound ──

    async def ingest(self, channel: Union[Channel, str], payload: Any) -> IngestResult:
        """
        Apply one webhook payload.

        A payload whose vendor id matches a stored outbound message is a
        delivery receipt: the status moves forward only if the state
        machine allows it. Otherwise an inbound message is stored and
        broadcast. Malformed payloads are dropped.
        """
        normalized = self.registry.ingest(channel, payload)
        if normalized is None:
            return IngestResult(action="dropped")

        existing = await self.store.find_by_vendor_message_id(
            normalized.channel, normalized.vendor_message_id,
        )

        if existing is not None and existing.direction == Direction.OUTBOUND:
            return await self._apply_receipt(existing, normalized)

        if existing is not None:
            return IngestResult(action="duplicate", message_id=existing.id, status=existing.status)

        if normalized.direction == Direction.OUTBOUND:
            logger.info(
                "Receipt for unknown %s message %s ignored",
                normalized.channel.value, normalized.vendor_message_id,
            )
            return IngestResult(action="ignored", status=normalized.status)

        message = await self.store.create(Message(
            content=normalized.content,
            channel=normalized.channel,
            to=normalized.to,
            from_address=normalized.from_address,
            direction=Direction.INBOUND,
            status=normalized.status,
            created_at=normalized.timestamp,
            metadata={**normalized.metadata, "vendor_message_id": normalized.vendor_message_id},
        ))
        logger.info(
            "Inbound %s message %s from %s stored",
            normalized.channel.value, message.id, mask_recipient(normalized.from_address),
            extra={"message_id": message.id, "channel": normalized.channel.value},
        )
        await self._broadcast(message)
        return IngestResult(action="created", message_id=message.id, status=message.status)

    async def _apply_receipt(self, message: Message, normalized: NormalizedMessage) -> IngestResult:
        target = normalized.status
        if target == message.status or not can_transition(message.status, target):
            logger.debug(
                "Receipt %s → %s for message %s ignored",
                message.status.value, target.value, message.id,
            )
            return IngestResult(
                action="ignored",
                message_id=message.id,
                status=message.status,
                details={"receipt_status": target.value},
            )

        await self.store.update_status(
            message.id, target,
            {"vendor_status": normalized.metadata.get("vendor_status")
             or normalized.metadata.get("event_type")},
        )
        logger.info(
            "Message %s %s → %s (receipt)",
            message.id, message.status.value, target.value,
            extra={"message_id": message.id, "status": target.value},
        )
        return IngestResult(action="status_updated", message_id=message.id, status=target)

    async def _broadcast(self, message: Message) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.publish(DeliveryEvent.for_message(message))
        except Exception:
            logger.exception("Broadcast for message %s failed", message.id)
