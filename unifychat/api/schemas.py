"""
Pydantic schemas for the messaging API.

Separated from the route handlers so they are reusable across
the codebase (webhook handlers, tests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from unifychat.messaging.models import Channel, MessageStatus, SendRequest


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SendMessageInput(BaseModel):
    """An outbound message for immediate delivery."""
    channel: Channel = Field(..., examples=["sms"])
    to: str = Field(
        ..., min_length=1, max_length=320,
        description="E.164 phone number or email address",
        examples=["+15551234567"],
    )
    content: str = Field(..., min_length=1, max_length=1600, examples=["Your order shipped"])
    from_address: Optional[str] = Field(
        None, description="Override the channel's configured sender",
    )
    media_url: Optional[str] = Field(None, description="MMS / WhatsApp attachment URL")
    subject: Optional[str] = Field(None, description="Email subject line")
    contact_id: Optional[str] = None
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("channel", mode="before")
    @classmethod
    def lowercase_channel(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("to", "content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    def to_send_request(self) -> SendRequest:
        metadata = dict(self.metadata)
        if self.subject:
            metadata["subject"] = self.subject
        return SendRequest(
            channel=self.channel,
            to=self.to.strip(),
            content=self.content,
            from_address=self.from_address,
            media_url=self.media_url,
            metadata=metadata,
        )


class ScheduleMessageInput(SendMessageInput):
    """An outbound message deferred to ``scheduled_at``."""
    scheduled_at: datetime = Field(
        ..., description="ISO-8601 instant; naive values are read as UTC",
        examples=["2030-01-01T09:00:00Z"],
    )

    @field_validator("scheduled_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class StatusUpdateInput(BaseModel):
    status: MessageStatus = Field(..., examples=["delivered"])

    @field_validator("status", mode="before")
    @classmethod
    def lowercase_status(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v
