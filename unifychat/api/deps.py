"""
Request dependencies — resolve the instances built in the app lifespan.
"""

from __future__ import annotations

from typing import Optional, Union

from fastapi import Request

from unifychat.core.errors import (
    ChannelNotEnabledError,
    TransportError,
    UnifyChatError,
    ValidationError,
)
from unifychat.messaging.service import MessagingService, ScheduleResult, SendNowResult


def get_service(request: Request) -> MessagingService:
    return request.app.state.service


def raise_for_result(result: Union[SendNowResult, ScheduleResult], channel: str) -> None:
    """Translate a failed facade result into the matching API error."""
    if result.success:
        return
    message_id: Optional[str] = result.message_id
    code = result.error_code
    if code == "VALIDATION_ERROR":
        raise ValidationError(result.error or "invalid request")
    if code == "CHANNEL_NOT_ENABLED":
        raise ChannelNotEnabledError(channel)
    if code == "TRANSPORT_ERROR":
        raise TransportError(channel, result.error or "send failed", message_id=message_id)
    raise UnifyChatError(
        result.error or "Message store unavailable",
        status_code=503,
        error_code="STORE_UNAVAILABLE",
    )
