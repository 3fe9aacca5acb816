"""
channels — Per-channel delivery adapters.

Each adapter exposes:
    send(request) → SendResult
    normalize_inbound(payload) → NormalizedMessage | None
    capabilities() → ChannelCapabilities

Adapters hold no per-message state. Routing lives in the registry.
"""

from unifychat.messaging.channels.base import ChannelAdapter, FieldRule, extract_fields
from unifychat.messaging.channels.email import EmailAdapter
from unifychat.messaging.channels.sms import SmsAdapter
from unifychat.messaging.channels.whatsapp import WhatsAppAdapter

__all__ = [
    "ChannelAdapter",
    "EmailAdapter",
    "FieldRule",
    "SmsAdapter",
    "WhatsAppAdapter",
    "extract_fields",
]
