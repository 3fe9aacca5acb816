"""
sms.py — SMS/MMS delivery through the Twilio Messages REST API.

    App  →  POST /2010-04-01/Accounts/{sid}/Messages.json  →  Carrier  →  Handset
                  │
                  └── status callback / inbound webhook (form-encoded)

Credentials: account_sid, auth_token (HTTP basic auth), phone_number
(default sender). A non-2xx response carries Twilio's error JSON
``{"code": 21211, "message": "...", "status": 400}``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

import httpx

from unifychat.core.errors import TransportError
from unifychat.messaging.channels.base import ChannelAdapter, FieldRule, extract_fields
from unifychat.messaging.models import (
    Channel,
    ChannelCapabilities,
    Direction,
    MessageStatus,
    NormalizedMessage,
    SendRequest,
    SendResult,
)

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

TWILIO_STATUS_MAP: Dict[str, MessageStatus] = {
    "queued":      MessageStatus.PENDING,
    "accepted":    MessageStatus.PENDING,
    "sending":     MessageStatus.PENDING,
    "scheduled":   MessageStatus.PENDING,
    "sent":        MessageStatus.SENT,
    "received":    MessageStatus.DELIVERED,
    "delivered":   MessageStatus.DELIVERED,
    "read":        MessageStatus.READ,
    "failed":      MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
    "canceled":    MessageStatus.FAILED,
}

# Statuses Twilio reports on a message it received for us
INBOUND_STATUSES = frozenset({"", "received", "receiving"})

TWILIO_RULES = (
    FieldRule("vendor_message_id", ("MessageSid", "SmsMessageSid", "SmsSid"), required=True),
    FieldRule("from_address", ("From",), required=True),
    FieldRule("to", ("To",), required=True),
    FieldRule("content", ("Body",), default=""),
    FieldRule("vendor_status", ("MessageStatus", "SmsStatus"), default=""),
    FieldRule("direction", ("Direction",), default=""),
    FieldRule("num_media", ("NumMedia",), default="0"),
    FieldRule("media_url", ("MediaUrl0",)),
    FieldRule("media_type", ("MediaContentType0",)),
)


def map_twilio_status(vendor_status: str) -> MessageStatus:
    """Unknown or missing statuses map to PENDING."""
    return TWILIO_STATUS_MAP.get((vendor_status or "").lower(), MessageStatus.PENDING)


def _is_status_callback(fields: Mapping[str, Any], has_media: bool) -> bool:
    """
    Status callbacks for outbound sends often carry no ``Direction``.

    Anything explicitly outbound, carrying a non-inbound status, or with
    neither body nor media is treated as a receipt, never as a new
    inbound message.
    """
    if str(fields["direction"] or "").startswith("outbound"):
        return True
    if str(fields["vendor_status"] or "").lower() not in INBOUND_STATUSES:
        return True
    return not fields["content"] and not has_media


def _media_count(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class SmsAdapter(ChannelAdapter):
    """Twilio SMS/MMS."""

    channel = Channel.SMS
    name = "Twilio SMS"
    REQUIRED_CREDENTIALS = ("account_sid", "auth_token", "phone_number")
    CAPABILITIES = ChannelCapabilities(
        display_name="SMS",
        description="Traditional text messaging via Twilio",
        cost_per_unit=0.0075,
        unit="per message",
        reliability_pct=95.0,
        latency_class="1-5 seconds",
        min_latency_seconds=1.0,
        features=[
            "Text messages up to 1600 characters",
            "Media sharing (images, documents) - MMS",
            "Delivery receipts",
            "Global reach",
        ],
    )

    # Address formatting hooks (WhatsApp prefixes numbers)
    def format_address(self, address: str) -> str:
        return address

    def clean_address(self, address: str) -> str:
        return address

    @property
    def messages_url(self) -> str:
        base = self.config.settings.get("api_base_url", TWILIO_API_BASE).rstrip("/")
        return f"{base}/Accounts/{self.credential('account_sid')}/Messages.json"

    async def _send(self, request: SendRequest) -> SendResult:
        form: Dict[str, Any] = {
            "To": self.format_address(request.to),
            "From": self.format_address(request.from_address or self.credential("phone_number")),
            "Body": request.content,
        }
        if request.media_url:
            form["MediaUrl"] = [request.media_url]

        client = await self._get_client()
        response = await client.post(
            self.messages_url,
            data=form,
            auth=(self.credential("account_sid"), self.credential("auth_token")),
            timeout=self._timeout,
        )

        body = _json_or_empty(response)
        if response.is_error:
            raise TransportError(
                self.channel.value,
                body.get("message") or f"Twilio returned HTTP {response.status_code}",
                status_code=response.status_code,
                code=body.get("code"),
            )

        sid = body.get("sid")
        logger.info(
            "%s accepted by Twilio: sid=%s status=%s",
            self.channel.value, sid, body.get("status"),
            extra={"channel": self.channel.value, "status_code": response.status_code},
        )
        metadata: Dict[str, Any] = {
            "status": body.get("status"),
            "direction": body.get("direction"),
            "price": body.get("price"),
            "price_unit": body.get("price_unit"),
            "channel": self.channel.value,
        }
        if request.media_url:
            metadata["media_url"] = request.media_url
        return SendResult(success=True, message_id=sid, metadata=metadata)

    def _normalize(self, payload: Any) -> NormalizedMessage:
        fields = extract_fields(payload, TWILIO_RULES, self.channel.value)

        content = fields["content"]
        has_media = _media_count(fields["num_media"]) > 0
        if has_media and fields["media_url"]:
            note = f"📎 Media: {fields['media_url']}"
            content = f"{content}\n\n{note}" if content else note

        direction = (
            Direction.OUTBOUND
            if _is_status_callback(fields, has_media)
            else Direction.INBOUND
        )
        return NormalizedMessage(
            vendor_message_id=fields["vendor_message_id"],
            channel=self.channel,
            direction=direction,
            from_address=self.clean_address(fields["from_address"]),
            to=self.clean_address(fields["to"]),
            content=content,
            status=map_twilio_status(fields["vendor_status"]),
            metadata={
                "vendor_status": fields["vendor_status"],
                "has_media": has_media,
                "media_url": fields["media_url"],
                "media_type": fields["media_type"],
                "raw_payload": dict(payload),
            },
        )


def _json_or_empty(response: httpx.Response) -> Mapping[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
