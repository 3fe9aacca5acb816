"""
FastAPI route: vendor webhooks.

    POST /api/v1/webhooks/{channel}

Twilio posts ``application/x-www-form-urlencoded``; SendGrid posts JSON
(a single object or an event batch). Payloads an adapter cannot parse
are acknowledged with ``accepted: false`` so the vendor does not retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request

from unifychat.api.deps import get_service
from unifychat.core.errors import NotFoundError
from unifychat.core.middleware import annotate_request
from unifychat.messaging.models import Channel
from unifychat.messaging.service import MessagingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> Any:
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.info("Webhook form body is not valid UTF-8")
            return None
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        return json.loads(raw or b"null")
    except ValueError:
        logger.info("Webhook body is neither form nor JSON (%s)", content_type or "no content-type")
        return None


@router.post("/{channel}", summary="Receive a vendor webhook")
async def receive_webhook(
    channel: str,
    request: Request,
    service: MessagingService = Depends(get_service),
):
    try:
        parsed = Channel(channel.lower())
    except ValueError:
        raise NotFoundError("Channel", channel=channel)

    payload = await _read_payload(request)
    result = await service.ingest(parsed, payload)
    annotate_request(
        request, channel=parsed.value, action=result.action, message_id=result.message_id,
    )
    return result.to_dict()
