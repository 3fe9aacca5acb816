"""
test_service.py — MessagingService facade.

Covers:
    • send_now: persist → dispatch → metrics → broadcast
    • schedule validation (past instant, disabled channel, blank input)
    • Scheduled listing and cancel
    • Webhook ingest: inbound create, duplicates, receipts, dropped payloads
    • Guarded manual status updates
    • channel_info / analysis reports

Run with:
    pytest tests/test_service.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import httpx
import pytest

from unifychat.core.config import ChannelConfig
from unifychat.core.errors import NotFoundError, ValidationError
from unifychat.messaging.broadcaster import InMemoryBroadcaster
from unifychat.messaging.metrics import MetricsAggregator
from unifychat.messaging.models import Channel, Direction, MessageStatus, SendRequest
from unifychat.messaging.registry import AdapterRegistry
from unifychat.messaging.scheduler import DeliveryScheduler
from unifychat.messaging.service import MessagingService
from unifychat.messaging.store import InMemoryMessageStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _twilio(requests: List[httpx.Request], status_code: int = 201):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if status_code >= 400:
            return httpx.Response(status_code, json={"code": 21610, "message": "Unsubscribed recipient"})
        return httpx.Response(status_code, json={
            "sid": f"SM{len(requests)}", "status": "queued", "price": "-0.0079",
        })
    return handler


def _make_service(status_code: int = 201):
    requests: List[httpx.Request] = []
    store = InMemoryMessageStore()
    registry = AdapterRegistry(
        {
            "sms": ChannelConfig(credentials={
                "account_sid": "AC1", "auth_token": "t", "phone_number": "+15550000000",
            }),
        },
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_twilio(requests, status_code))),
    )
    metrics = MetricsAggregator(registry.capabilities())
    broadcaster = InMemoryBroadcaster()
    scheduler = DeliveryScheduler(store, registry, metrics, broadcaster)
    service = MessagingService(store, registry, metrics, scheduler, broadcaster)
    return service, requests


def _sms(content: str = "Your code is 1234", **overrides) -> SendRequest:
    data = dict(channel=Channel.SMS, to="+15551234567", content=content)
    data.update(overrides)
    return SendRequest(**data)


def _in(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


# ═══════════════════════════════════════════════════════════════════════════
# Immediate Send
# ═══════════════════════════════════════════════════════════════════════════

class TestSendNow:

    @pytest.mark.asyncio
    async def test_successful_send(self):
        service, requests = _make_service()

        result = await service.send_now(_sms(), contact_id="c1")

        assert result.success
        assert result.status == MessageStatus.SENT
        assert result.vendor_message_id == "SM1"
        assert len(requests) == 1

        message = await service.get_message(result.message_id)
        assert message.status == MessageStatus.SENT
        assert message.vendor_message_id == "SM1"
        assert message.contact_id == "c1"

        m = service.metrics.channel_metrics(Channel.SMS)
        assert m.successful_messages == 1
        assert m.total_cost == pytest.approx(0.0079)

        event = service.broadcaster.history()[0]
        assert event.event_type == "message_sent"
        assert event.contact_id == "c1"

    @pytest.mark.asyncio
    async def test_vendor_rejection(self):
        service, _ = _make_service(status_code=400)

        result = await service.send_now(_sms())

        assert result.success is False
        assert result.error_code == "TRANSPORT_ERROR"
        assert result.error == "Unsubscribed recipient"
        message = await service.get_message(result.message_id)
        assert message.status == MessageStatus.FAILED
        assert service.metrics.channel_metrics(Channel.SMS).failed_messages == 1

    @pytest.mark.asyncio
    async def test_disabled_channel(self):
        service, requests = _make_service()

        result = await service.send_now(_sms(channel=Channel.WHATSAPP))

        assert result.success is False
        assert result.error_code == "CHANNEL_NOT_ENABLED"
        assert result.message_id is None
        assert requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [{"content": "  "}, {"to": ""}])
    async def test_validation(self, overrides):
        service, requests = _make_service()
        result = await service.send_now(_sms(**overrides))
        assert result.error_code == "VALIDATION_ERROR"
        assert requests == []


# ═══════════════════════════════════════════════════════════════════════════
# Scheduling
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedule:

    @pytest.mark.asyncio
    async def test_schedule_persists_message(self):
        service, requests = _make_service()
        at = _in(3600)

        result = await service.schedule(_sms(media_url="https://x.test/a.png"), at, user_id="u1")

        assert result.success
        assert result.scheduled_at == at
        message = await service.get_message(result.message_id)
        assert message.status == MessageStatus.SCHEDULED
        assert message.metadata["media_url"] == "https://x.test/a.png"
        assert requests == []

    @pytest.mark.asyncio
    async def test_naive_instant_is_utc(self):
        service, _ = _make_service()
        naive = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(tzinfo=None)

        result = await service.schedule(_sms(), naive)

        assert result.scheduled_at.tzinfo == timezone.utc

    @pytest.mark.asyncio
    async def test_past_instant_rejected(self):
        service, _ = _make_service()
        result = await service.schedule(_sms(), _in(-60))
        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_disabled_channel_rejected(self):
        service, _ = _make_service()
        result = await service.schedule(
            _sms(channel=Channel.EMAIL, to="ann@example.com"), _in(60),
        )
        assert result.error_code == "CHANNEL_NOT_ENABLED"

    @pytest.mark.asyncio
    async def test_list_and_cancel(self):
        service, _ = _make_service()
        long_text = "x" * 80
        first = await service.schedule(_sms(long_text), _in(60), contact_id="c1")
        await service.schedule(_sms(), _in(120), contact_id="c2")

        rows = await service.list_scheduled(contact_id="c1")
        assert [r.message_id for r in rows] == [first.message_id]
        assert rows[0].preview == "x" * 50
        assert rows[0].armed is False

        assert await service.cancel_scheduled(first.message_id) is True
        assert await service.list_scheduled(contact_id="c1") == []
        assert len(await service.list_scheduled()) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Status Updates
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_legal_transition(self):
        service, _ = _make_service()
        sent = await service.send_now(_sms())
        message = await service.update_status(sent.message_id, MessageStatus.DELIVERED)
        assert message.status == MessageStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_illegal_transition(self):
        service, _ = _make_service()
        sent = await service.send_now(_sms())
        with pytest.raises(ValidationError):
            await service.update_status(sent.message_id, MessageStatus.SCHEDULED)

    @pytest.mark.asyncio
    async def test_unknown_message(self):
        service, _ = _make_service()
        with pytest.raises(NotFoundError):
            await service.update_status("nope", MessageStatus.SENT)


# ═══════════════════════════════════════════════════════════════════════════
# Webhook Ingest
# ═══════════════════════════════════════════════════════════════════════════

class TestIngest:

    @pytest.mark.asyncio
    async def test_inbound_message_created_and_broadcast(self):
        service, _ = _make_service()
        payload = {"MessageSid": "SMin1", "From": "+15551234567", "To": "+15550000000", "Body": "STOP"}

        result = await service.ingest("sms", payload)

        assert result.action == "created"
        assert result.accepted
        message = await service.get_message(result.message_id)
        assert message.direction == Direction.INBOUND
        assert message.content == "STOP"
        assert message.vendor_message_id == "SMin1"
        assert service.broadcaster.history()[-1].event_type == "message_received"

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_duplicate(self):
        service, _ = _make_service()
        payload = {"MessageSid": "SMin1", "From": "+1555", "To": "+1666", "Body": "hi"}

        first = await service.ingest("sms", payload)
        second = await service.ingest("sms", payload)

        assert second.action == "duplicate"
        assert second.message_id == first.message_id

    @pytest.mark.asyncio
    async def test_receipt_advances_outbound_status(self):
        service, _ = _make_service()
        sent = await service.send_now(_sms())

        result = await service.ingest("sms", {
            "MessageSid": "SM1", "From": "+15550000000", "To": "+15551234567",
            "MessageStatus": "delivered", "Direction": "outbound-api",
        })

        assert result.action == "status_updated"
        assert result.status == MessageStatus.DELIVERED
        message = await service.get_message(sent.message_id)
        assert message.status == MessageStatus.DELIVERED
        assert message.metadata["vendor_status"] == "delivered"

    @pytest.mark.asyncio
    async def test_out_of_order_receipt_is_ignored(self):
        service, _ = _make_service()
        sent = await service.send_now(_sms())
        await service.update_status(sent.message_id, MessageStatus.DELIVERED)

        result = await service.ingest("sms", {
            "MessageSid": "SM1", "From": "+1", "To": "+2",
            "MessageStatus": "sent", "Direction": "outbound-api",
        })

        assert result.action == "ignored"
        assert result.details == {"receipt_status": "sent"}
        assert (await service.get_message(sent.message_id)).status == MessageStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_receipt_for_unknown_message_is_ignored(self):
        service, _ = _make_service()
        result = await service.ingest("email", [{
            "event": "delivered", "email": "a@b.c", "sg_message_id": "unknown.filter1",
        }])
        assert result.action == "ignored"
        assert result.message_id is None

    @pytest.mark.asyncio
    async def test_twilio_callback_for_unknown_sid_is_ignored(self):
        service, _ = _make_service()
        result = await service.ingest("sms", {
            "MessageSid": "SMunknown", "MessageStatus": "delivered",
            "From": "+15550000000", "To": "+15551234567",
        })
        assert result.action == "ignored"
        assert result.message_id is None
        assert await service.store.find_by_vendor_message_id(Channel.SMS, "SMunknown") is None
        assert not [e for e in service.broadcaster.history() if e.event_type == "message_received"]

    @pytest.mark.asyncio
    async def test_malformed_payload_is_dropped(self):
        service, _ = _make_service()
        result = await service.ingest("sms", {"Body": "no sid"})
        assert result.action == "dropped"
        assert result.to_dict()["accepted"] is False


# ═══════════════════════════════════════════════════════════════════════════
# Reports
# ═══════════════════════════════════════════════════════════════════════════

class TestReports:

    def test_channel_info(self):
        service, _ = _make_service()
        rows = {r["channel"]: r for r in service.channel_info()}

        assert rows["sms"]["enabled"] is True
        assert "reason" not in rows["sms"]
        assert rows["email"]["enabled"] is False
        assert "disabled" in rows["email"]["reason"]
        assert rows["whatsapp"]["capabilities"]["pricing"]["cost"] == 0.005

    @pytest.mark.asyncio
    async def test_analysis(self):
        service, _ = _make_service()
        await service.send_now(_sms())

        report = service.analysis()

        assert report["overview"]["total_messages"] == 1
        assert report["enabled_channels"] == ["sms"]
        titles = [r["title"] for r in report["recommendations"]]
        # Only one usable channel, so no cross-channel insights
        assert "Cheapest Channel" not in titles
        assert "Channel Diversity" in titles
        assert report["cost_breakdown"]["total_cost"] == pytest.approx(0.0079)


# ═══════════════════════════════════════════════════════════════════════════
# Broadcaster
# ═══════════════════════════════════════════════════════════════════════════

class TestBroadcaster:

    @pytest.mark.asyncio
    async def test_subscribers_receive_events(self):
        service, _ = _make_service()
        queue = service.broadcaster.subscribe()

        result = await service.send_now(_sms())

        event = queue.get_nowait()
        assert event.message_id == result.message_id
        service.broadcaster.unsubscribe(queue)
        assert service.broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_skips_that_subscriber(self):
        broadcaster = InMemoryBroadcaster(queue_size=1)
        slow = broadcaster.subscribe()
        fast = broadcaster.subscribe()
        service, _ = _make_service()
        service.broadcaster = broadcaster

        await service.send_now(_sms())
        fast.get_nowait()
        await service.send_now(_sms())

        assert slow.qsize() == 1
        assert fast.qsize() == 1
        assert len(broadcaster.history()) == 2
