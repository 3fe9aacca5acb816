"""
test_registry.py — Adapter Registry routing.

Covers:
    • Lazy, memoized adapter construction
    • Enabled / disabled channel reporting
    • dispatch() on a disabled channel
    • ingest() routing, including disabled channels

Run with:
    pytest tests/test_registry.py -v
"""

from __future__ import annotations

from typing import List

import httpx
import pytest

from unifychat.core.config import ChannelConfig, Settings, build_channel_configs
from unifychat.messaging.channels.email import EmailAdapter
from unifychat.messaging.channels.sms import SmsAdapter
from unifychat.messaging.models import Channel, SendRequest
from unifychat.messaging.registry import AdapterRegistry


def _make_registry(handler=None, seen: List[httpx.Request] = None) -> AdapterRegistry:
    seen = seen if seen is not None else []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if handler is not None:
            return handler(request)
        return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

    return AdapterRegistry(
        {
            "sms": ChannelConfig(credentials={
                "account_sid": "AC1", "auth_token": "t", "phone_number": "+1555",
            }),
            "email": ChannelConfig(enabled=False),
        },
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_record)),
    )


class TestConstruction:

    def test_adapter_is_built_once(self):
        registry = _make_registry()
        first = registry.get_adapter(Channel.SMS)
        assert isinstance(first, SmsAdapter)
        assert registry.get_adapter("sms") is first
        assert registry.get_adapter("SMS") is first

    def test_unknown_channel(self):
        registry = _make_registry()
        assert registry.get_adapter("fax") is None
        assert registry.is_enabled("fax") is False
        assert registry.config_error("fax") == "Unsupported channel: fax"

    def test_unknown_config_keys_are_ignored(self):
        registry = AdapterRegistry({"pager": ChannelConfig()})
        assert registry.enabled_channels() == []

    def test_missing_config_means_disabled(self):
        registry = _make_registry()
        assert registry.is_enabled(Channel.WHATSAPP) is False
        assert "disabled" in registry.config_error(Channel.WHATSAPP)

    def test_enabled_channels(self):
        registry = _make_registry()
        assert registry.enabled_channels() == [Channel.SMS]

    def test_capabilities_cover_every_channel(self):
        caps = _make_registry().capabilities()
        assert set(caps) == set(Channel)
        assert caps[Channel.EMAIL] is EmailAdapter.CAPABILITIES


class TestSettingsWiring:

    def test_channels_without_credentials_are_disabled(self):
        configs = build_channel_configs(Settings(_env_file=None))
        assert all(not c.enabled for c in configs.values())

    def test_twilio_credentials_enable_sms(self):
        settings = Settings(
            _env_file=None,
            TWILIO_ACCOUNT_SID="AC1",
            TWILIO_AUTH_TOKEN="tok",
            TWILIO_PHONE_NUMBER="+1555",
        )
        registry = AdapterRegistry(build_channel_configs(settings))
        assert registry.is_enabled(Channel.SMS)
        # WhatsApp sender number not configured
        assert not registry.is_enabled(Channel.WHATSAPP)
        assert not registry.is_enabled(Channel.EMAIL)


class TestDispatch:

    @pytest.mark.asyncio
    async def test_routes_to_adapter(self):
        seen: List[httpx.Request] = []
        registry = _make_registry(seen=seen)

        result = await registry.dispatch(SendRequest(Channel.SMS, "+1666", "hi"))

        assert result.success
        assert result.message_id == "SM1"
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_disabled_channel_fails_without_transport_call(self):
        seen: List[httpx.Request] = []
        registry = _make_registry(seen=seen)

        result = await registry.dispatch(SendRequest(Channel.EMAIL, "a@b.c", "hi"))

        assert result.success is False
        assert result.error == "Channel email is not configured or enabled"
        assert seen == []


class TestIngest:

    def test_routes_to_channel_parser(self):
        registry = _make_registry()
        msg = registry.ingest("sms", {"MessageSid": "SM1", "From": "+1", "To": "+2"})
        assert msg.channel == Channel.SMS

    def test_disabled_channel_still_parses(self):
        registry = _make_registry()
        msg = registry.ingest(Channel.EMAIL, [{
            "event": "delivered", "email": "a@b.c", "sg_message_id": "x1",
        }])
        assert msg is not None
        assert msg.vendor_message_id == "x1"

    def test_unknown_channel(self):
        assert _make_registry().ingest("fax", {}) is None

    @pytest.mark.asyncio
    async def test_close_drops_cached_adapters(self):
        registry = _make_registry()
        first = registry.get_adapter(Channel.SMS)
        await registry.close()
        assert registry.get_adapter(Channel.SMS) is not first
