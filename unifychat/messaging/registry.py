"""
registry.py — Adapter Registry: the single routing point to channels.

    registry = AdapterRegistry(build_channel_configs(settings))
    result = await registry.dispatch(SendRequest(channel=Channel.SMS, ...))

Adapters are constructed lazily, once per channel, the first time a
channel is requested, and cached for the registry's lifetime. Neither
the scheduler nor any caller branches on channel type; they go through
``dispatch`` / ``ingest``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Type, Union

import httpx

from unifychat.core.config import ChannelConfig
from unifychat.core.errors import ChannelNotEnabledError
from unifychat.messaging.channels.base import ChannelAdapter
from unifychat.messaging.channels.email import EmailAdapter
from unifychat.messaging.channels.sms import SmsAdapter
from unifychat.messaging.channels.whatsapp import WhatsAppAdapter
from unifychat.messaging.models import (
    Channel,
    ChannelCapabilities,
    NormalizedMessage,
    SendRequest,
    SendResult,
)

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[Channel, Type[ChannelAdapter]] = {
    Channel.SMS: SmsAdapter,
    Channel.WHATSAPP: WhatsAppAdapter,
    Channel.EMAIL: EmailAdapter,
}


def _coerce(channel: Union[Channel, str]) -> Optional[Channel]:
    try:
        return Channel(str(channel.value if isinstance(channel, Channel) else channel).lower())
    except ValueError:
        return None


class AdapterRegistry:
    """
    Lazily builds and caches one adapter per channel.

    Parameters
    ----------
    configs : mapping
        Channel identifier (``"sms"`` or ``Channel.SMS``) → ChannelConfig.
        A channel without a config is treated as disabled.
    http_client : httpx.AsyncClient, optional
        Shared client handed to every adapter (tests inject a
        ``MockTransport``-backed client here).
    adapter_classes : mapping, optional
        Override the channel → adapter class table.
    """

    def __init__(
        self,
        configs: Mapping[Union[Channel, str], ChannelConfig],
        http_client: Optional[httpx.AsyncClient] = None,
        adapter_classes: Optional[Mapping[Channel, Type[ChannelAdapter]]] = None,
    ):
        self._configs: Dict[Channel, ChannelConfig] = {}
        for key, config in configs.items():
            channel = _coerce(key)
            if channel is None:
                logger.warning("Ignoring config for unknown channel %r", key)
                continue
            self._configs[channel] = config
        self._http_client = http_client
        self._classes: Dict[Channel, Type[ChannelAdapter]] = dict(adapter_classes or ADAPTER_CLASSES)
        self._adapters: Dict[Channel, ChannelAdapter] = {}

    def get_adapter(self, channel: Union[Channel, str]) -> Optional[ChannelAdapter]:
        """Return the cached adapter, constructing it on first use."""
        ch = _coerce(channel)
        if ch is None or ch not in self._classes:
            return None

        adapter = self._adapters.get(ch)
        if adapter is None:
            config = self._configs.get(ch, ChannelConfig(enabled=False))
            adapter = self._classes[ch](config, http_client=self._http_client)
            self._adapters[ch] = adapter
            logger.info(
                "Constructed %s adapter (enabled=%s)", adapter.name, adapter.is_initialized,
                extra={"channel": ch.value},
            )
        return adapter

    def is_enabled(self, channel: Union[Channel, str]) -> bool:
        adapter = self.get_adapter(channel)
        return bool(adapter and adapter.is_initialized)

    def enabled_channels(self) -> List[Channel]:
        return [ch for ch in self._classes if self.is_enabled(ch)]

    def capabilities(self) -> Dict[Channel, ChannelCapabilities]:
        """Static capabilities of every known channel, enabled or not."""
        return {ch: cls.CAPABILITIES for ch, cls in self._classes.items()}

    def config_error(self, channel: Union[Channel, str]) -> Optional[str]:
        adapter = self.get_adapter(channel)
        if adapter is None:
            return f"Unsupported channel: {channel}"
        return adapter.config_error

    async def dispatch(self, request: SendRequest) -> SendResult:
        """Send through the channel's adapter, or fail with channel-not-enabled."""
        adapter = self.get_adapter(request.channel)
        if adapter is None or not adapter.is_initialized:
            channel = request.channel.value if isinstance(request.channel, Channel) else request.channel
            return SendResult(success=False, error=ChannelNotEnabledError(channel).message)
        return await adapter.send(request)

    def ingest(self, channel: Union[Channel, str], payload: Any) -> Optional[NormalizedMessage]:
        """
        Normalize an inbound webhook payload.

        Inbound parsing needs no vendor credentials, so it works for any
        known channel even when sending is disabled.
        """
        adapter = self.get_adapter(channel)
        if adapter is None:
            logger.error("No adapter found for channel: %s", channel)
            return None
        return adapter.normalize_inbound(payload)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
