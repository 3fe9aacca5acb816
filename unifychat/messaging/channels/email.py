"""
email.py — Email delivery through the SendGrid v3 Mail Send API.

    POST https://api.sendgrid.com/v3/mail/send   (Bearer API key)
        → 202 Accepted, message id in the ``X-Message-Id`` header

Webhooks arrive as JSON: either an Event Webhook batch (a list of
``{event, email, sg_message_id, timestamp}`` receipts) or an inbound
message (``event == "inbound"``). Only the first event of a batch is
normalized.

SendGrid event ids carry a ``.filter…`` suffix after the X-Message-Id
prefix; the suffix is dropped so receipts match the id stored at send.
"""

from __future__ import annotations

import html
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict

from unifychat.core.errors import MalformedInboundError, TransportError
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

SENDGRID_API_BASE = "https://api.sendgrid.com/v3"
DEFAULT_SUBJECT = "Message from UnifyChat"

SENDGRID_STATUS_MAP: Dict[str, MessageStatus] = {
    "delivered":  MessageStatus.DELIVERED,
    "open":       MessageStatus.READ,
    "bounce":     MessageStatus.FAILED,
    "dropped":    MessageStatus.FAILED,
    "blocked":    MessageStatus.FAILED,
    "spamreport": MessageStatus.FAILED,
    "deferred":   MessageStatus.PENDING,
    "processed":  MessageStatus.PENDING,
}

_ID_KEYS = ("sg_message_id", "smtp_id", "smtp-id")

INBOUND_RULES = (
    FieldRule("event", ("event",), required=True),
    FieldRule("vendor_message_id", _ID_KEYS),
    FieldRule("from_address", ("from", "email"), required=True),
    FieldRule("to", ("to",)),
    FieldRule("text", ("text",)),
    FieldRule("html", ("html",)),
    FieldRule("subject", ("subject",)),
    FieldRule("timestamp", ("timestamp",)),
)

RECEIPT_RULES = (
    FieldRule("event", ("event",), required=True),
    FieldRule("vendor_message_id", _ID_KEYS, required=True),
    FieldRule("to", ("email",), required=True),
    FieldRule("subject", ("subject",)),
    FieldRule("timestamp", ("timestamp",)),
)

_TAG_RE = re.compile(r"<[^>]*>")


def map_sendgrid_status(event: str) -> MessageStatus:
    """Unknown events map to SENT; only delivered/open confirm more."""
    return SENDGRID_STATUS_MAP.get((event or "").lower(), MessageStatus.SENT)


def strip_html(markup: str) -> str:
    if not markup:
        return ""
    return html.unescape(_TAG_RE.sub("", markup)).strip()


def format_html(text: str) -> str:
    """Render plain text as a minimal HTML email body."""
    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>" if line.strip() else "<br>"
        for line in text.split("\n")
    )
    return (
        '<div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
        f"{paragraphs}"
        '<hr style="margin: 20px 0; border: none; border-top: 1px solid #eee;">'
        '<p style="font-size: 12px; color: #666;">Sent via UnifyChat</p>'
        "</div>"
    )


def _event_id(value: str) -> str:
    return value.split(".filter", 1)[0]


def _timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


class EmailAdapter(ChannelAdapter):
    """SendGrid email."""

    channel = Channel.EMAIL
    name = "SendGrid Email"
    REQUIRED_CREDENTIALS = ("api_key", "from_email")
    CAPABILITIES = ChannelCapabilities(
        display_name="Email",
        description="Professional email communication via SendGrid",
        cost_per_unit=0.0006,
        unit="per email",
        reliability_pct=99.0,
        latency_class="5-30 seconds",
        min_latency_seconds=5.0,
        features=[
            "Rich HTML formatting",
            "Delivery tracking",
            "Open/click analytics",
            "Global delivery",
        ],
    )

    @property
    def send_url(self) -> str:
        base = self.config.settings.get("api_base_url", SENDGRID_API_BASE).rstrip("/")
        return f"{base}/mail/send"

    async def _send(self, request: SendRequest) -> SendResult:
        subject = request.metadata.get("subject") or DEFAULT_SUBJECT
        body = {
            "personalizations": [{"to": [{"email": request.to}]}],
            "from": {"email": request.from_address or self.credential("from_email")},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": request.content},
                {"type": "text/html", "value": format_html(request.content)},
            ],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

        client = await self._get_client()
        response = await client.post(
            self.send_url,
            json=body,
            headers={"Authorization": f"Bearer {self.credential('api_key')}"},
            timeout=self._timeout,
        )

        if response.is_error:
            raise TransportError(
                self.channel.value,
                _sendgrid_error(response),
                status_code=response.status_code,
            )

        message_id = response.headers.get("X-Message-Id") or "unknown"
        logger.info(
            "email accepted by SendGrid: id=%s", message_id,
            extra={"channel": self.channel.value, "status_code": response.status_code},
        )
        return SendResult(
            success=True,
            message_id=message_id,
            metadata={
                "status_code": response.status_code,
                "subject": subject,
                "channel": self.channel.value,
            },
        )

    def _normalize(self, payload: Any) -> NormalizedMessage:
        events = payload if isinstance(payload, list) else [payload]
        if not events:
            raise MalformedInboundError(self.channel.value, "empty event batch")
        event = events[0]

        if isinstance(event, dict) and str(event.get("event", "")).lower() == "inbound":
            fields = extract_fields(event, INBOUND_RULES, self.channel.value)
            return NormalizedMessage(
                vendor_message_id=(
                    _event_id(fields["vendor_message_id"])
                    if fields["vendor_message_id"]
                    else f"email_{int(time.time() * 1000)}"
                ),
                channel=self.channel,
                direction=Direction.INBOUND,
                from_address=fields["from_address"],
                to=fields["to"] or self.credential("from_email"),
                content=fields["text"] or strip_html(fields["html"] or ""),
                status=MessageStatus.DELIVERED,
                timestamp=_timestamp(fields["timestamp"]),
                metadata={
                    "subject": fields["subject"],
                    "event_type": fields["event"],
                    "raw_payload": event,
                },
            )

        fields = extract_fields(event, RECEIPT_RULES, self.channel.value)
        return NormalizedMessage(
            vendor_message_id=_event_id(fields["vendor_message_id"]),
            channel=self.channel,
            direction=Direction.OUTBOUND,
            from_address=self.credential("from_email"),
            to=fields["to"],
            content="",
            status=map_sendgrid_status(fields["event"]),
            timestamp=_timestamp(fields["timestamp"]),
            metadata={
                "event_type": fields["event"],
                "subject": fields["subject"],
                "raw_payload": event,
            },
        )


def _sendgrid_error(response) -> str:
    try:
        errors = response.json().get("errors") or []
    except (ValueError, AttributeError):
        errors = []
    messages = [e.get("message") for e in errors if isinstance(e, dict) and e.get("message")]
    if messages:
        return "; ".join(messages)
    return f"SendGrid returned HTTP {response.status_code}"
