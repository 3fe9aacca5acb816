"""
FastAPI route: outbound messages and scheduled sends.

Provides endpoints to:
    POST   /api/v1/messages/send                  — send immediately
    POST   /api/v1/messages/schedule              — schedule for later
    GET    /api/v1/messages/schedule              — list pending scheduled sends
    DELETE /api/v1/messages/schedule/{id}         — cancel a scheduled send
    GET    /api/v1/messages/{id}                  — fetch one message
    PATCH  /api/v1/messages/{id}/status           — manual status update
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from unifychat.api.deps import get_service, raise_for_result
from unifychat.api.schemas import ScheduleMessageInput, SendMessageInput, StatusUpdateInput
from unifychat.core.errors import NotCancellableError, UnifyChatError
from unifychat.messaging.models import MessageStatus
from unifychat.messaging.service import MessagingService

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


@router.post("/send", summary="Send a message now")
async def send_message(
    body: SendMessageInput,
    service: MessagingService = Depends(get_service),
):
    result = await service.send_now(
        body.to_send_request(),
        contact_id=body.contact_id,
        user_id=body.user_id,
        team_id=body.team_id,
    )
    raise_for_result(result, body.channel.value)
    return result.to_dict()


@router.post("/schedule", status_code=201, summary="Schedule a message")
async def schedule_message(
    body: ScheduleMessageInput,
    service: MessagingService = Depends(get_service),
):
    result = await service.schedule(
        body.to_send_request(),
        body.scheduled_at,
        contact_id=body.contact_id,
        user_id=body.user_id,
        team_id=body.team_id,
    )
    raise_for_result(result, body.channel.value)
    return result.to_dict()


@router.get("/schedule", summary="List scheduled messages")
async def list_scheduled(
    contact_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    team_id: Optional[str] = Query(None),
    service: MessagingService = Depends(get_service),
):
    summaries = await service.list_scheduled(
        contact_id=contact_id, user_id=user_id, team_id=team_id,
    )
    return {
        "count": len(summaries),
        "scheduled": [s.to_dict() for s in summaries],
    }


@router.delete("/schedule/{message_id}", summary="Cancel a scheduled message")
async def cancel_scheduled(
    message_id: str,
    service: MessagingService = Depends(get_service),
):
    message = await service.get_message(message_id)
    if message.status != MessageStatus.SCHEDULED:
        raise NotCancellableError(message_id, message.status.value)

    if not await service.cancel_scheduled(message_id):
        raise UnifyChatError(
            "Failed to cancel scheduled message",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"message_id": message_id},
        )
    return {"success": True, "message_id": message_id, "status": MessageStatus.FAILED.value}


@router.get("/{message_id}", summary="Get a message")
async def get_message(
    message_id: str,
    service: MessagingService = Depends(get_service),
):
    message = await service.get_message(message_id)
    return message.to_dict()


@router.patch("/{message_id}/status", summary="Update message status")
async def update_status(
    message_id: str,
    body: StatusUpdateInput,
    service: MessagingService = Depends(get_service),
):
    message = await service.update_status(message_id, body.status)
    return message.to_dict()
