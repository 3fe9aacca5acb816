"""
whatsapp.py — WhatsApp Business messaging through Twilio.

Same Messages API as SMS; Twilio routes on the ``whatsapp:`` address
prefix. Outbound numbers are prefixed, inbound numbers are stripped back
to plain E.164 so contacts match across channels.
"""

from __future__ import annotations

from unifychat.messaging.channels.sms import SmsAdapter
from unifychat.messaging.models import Channel, ChannelCapabilities

WHATSAPP_PREFIX = "whatsapp:"


class WhatsAppAdapter(SmsAdapter):
    """Twilio WhatsApp (sandbox or approved business sender)."""

    channel = Channel.WHATSAPP
    name = "Twilio WhatsApp"
    CAPABILITIES = ChannelCapabilities(
        display_name="WhatsApp",
        description="Rich messaging via WhatsApp Business API",
        cost_per_unit=0.005,
        unit="per message (varies by country)",
        reliability_pct=98.0,
        latency_class="1-3 seconds",
        min_latency_seconds=1.0,
        features=[
            "Text messages",
            "Media sharing (images, documents)",
            "Read receipts",
            "Rich formatting",
            "High engagement rates",
        ],
    )

    def format_address(self, address: str) -> str:
        return f"{WHATSAPP_PREFIX}{self.clean_address(address)}"

    def clean_address(self, address: str) -> str:
        if address.startswith(WHATSAPP_PREFIX):
            return address[len(WHATSAPP_PREFIX):]
        return address
