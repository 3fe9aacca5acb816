"""
test_metrics.py — Metrics Aggregator and recommendations.

Covers:
    • Counter conservation (total = successful + failed)
    • Incremental mean latency and reliability
    • Zero-traffic defaults
    • measure_latency success / failure / exception paths
    • Comparison ordering and cost percentages
    • Recommendation rules

Run with:
    pytest tests/test_metrics.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from unifychat.messaging.channels.email import EmailAdapter
from unifychat.messaging.channels.sms import SmsAdapter
from unifychat.messaging.channels.whatsapp import WhatsAppAdapter
from unifychat.messaging.metrics import MetricsAggregator
from unifychat.messaging.models import Channel, SendResult
from unifychat.messaging.recommendations import generate_recommendations


CAPABILITIES = {
    Channel.SMS: SmsAdapter.CAPABILITIES,
    Channel.WHATSAPP: WhatsAppAdapter.CAPABILITIES,
    Channel.EMAIL: EmailAdapter.CAPABILITIES,
}


def _make_aggregator(**kwargs) -> MetricsAggregator:
    return MetricsAggregator(CAPABILITIES, **kwargs)


def _titles(recs):
    return [r.title for r in recs]


# ═══════════════════════════════════════════════════════════════════════════
# Recording
# ═══════════════════════════════════════════════════════════════════════════

class TestRecording:

    def test_conservation(self):
        agg = _make_aggregator()
        for success in (True, True, False, True, False):
            agg.record(Channel.SMS, success, 100)

        m = agg.channel_metrics(Channel.SMS)
        assert m.total_messages == 5
        assert m.successful_messages == 3
        assert m.failed_messages == 2
        assert m.total_messages == m.successful_messages + m.failed_messages
        assert m.reliability_pct == pytest.approx(60.0)

    def test_running_mean_latency(self):
        agg = _make_aggregator()
        for latency in (100, 200, 600):
            agg.record(Channel.EMAIL, True, latency)
        assert agg.channel_metrics(Channel.EMAIL).average_latency_ms == pytest.approx(300.0)

    def test_default_cost_used_when_no_price(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 10)
        agg.record(Channel.SMS, True, 10, cost=0.01)
        m = agg.channel_metrics(Channel.SMS)
        assert m.total_cost == pytest.approx(0.0075 + 0.01)

    def test_zero_traffic_defaults(self):
        agg = _make_aggregator()
        m = agg.channel_metrics(Channel.WHATSAPP)
        assert m.total_messages == 0
        assert m.reliability_pct == 100.0
        assert m.average_latency_ms == 0.0
        assert m.cost_per_message == 0.005

        overview = agg.overall_metrics()
        assert overview["total_messages"] == 0
        assert overview["overall_reliability_pct"] == 100.0
        assert overview["cost_per_message"] == 0.0

    def test_snapshots_are_copies(self):
        agg = _make_aggregator()
        snapshot = agg.channel_metrics(Channel.SMS)
        agg.record(Channel.SMS, True, 5)
        assert snapshot.total_messages == 0

    def test_string_channel_is_accepted(self):
        agg = _make_aggregator()
        agg.record("email", False, 5, error="bounced")
        assert agg.channel_metrics(Channel.EMAIL).failed_messages == 1

    def test_recent_events_newest_first_and_bounded(self):
        agg = _make_aggregator(max_events=3)
        for i in range(5):
            agg.record(Channel.SMS, True, i, message_id=f"m{i}")

        events = agg.recent_events()
        assert [e.message_id for e in events] == ["m4", "m3", "m2"]
        assert [e.message_id for e in agg.recent_events(1)] == ["m4"]
        assert agg.recent_events(0) == []

    def test_reset(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 5)
        agg.reset()
        assert agg.overall_metrics()["total_messages"] == 0
        assert agg.recent_events() == []


# ═══════════════════════════════════════════════════════════════════════════
# Latency Measurement
# ═══════════════════════════════════════════════════════════════════════════

class TestMeasureLatency:

    @pytest.mark.asyncio
    async def test_records_success_and_vendor_price(self):
        agg = _make_aggregator()

        async def send():
            await asyncio.sleep(0.01)
            return SendResult(success=True, message_id="SM1", metadata={"price": "-0.0079"})

        result = await agg.measure_latency(send, Channel.SMS, message_id="m1")

        assert result.message_id == "SM1"
        m = agg.channel_metrics(Channel.SMS)
        assert m.successful_messages == 1
        assert m.average_latency_ms > 0
        assert m.total_cost == pytest.approx(0.0079)
        assert agg.recent_events()[0].message_id == "m1"

    @pytest.mark.asyncio
    async def test_failed_result_counts_as_failure(self):
        agg = _make_aggregator()

        async def send():
            return SendResult(success=False, error="rejected")

        await agg.measure_latency(send, Channel.EMAIL)

        assert agg.channel_metrics(Channel.EMAIL).failed_messages == 1
        assert agg.recent_events()[0].error == "rejected"

    @pytest.mark.asyncio
    async def test_exception_is_recorded_and_reraised(self):
        agg = _make_aggregator()

        async def send():
            raise RuntimeError("socket closed")

        with pytest.raises(RuntimeError, match="socket closed"):
            await agg.measure_latency(send, Channel.WHATSAPP)

        m = agg.channel_metrics(Channel.WHATSAPP)
        assert m.total_messages == 1
        assert m.failed_messages == 1

    @pytest.mark.asyncio
    async def test_custom_success_predicate(self):
        agg = _make_aggregator()

        async def op():
            return 204

        await agg.measure_latency(op, Channel.SMS, is_success=lambda code: code < 300)
        assert agg.channel_metrics(Channel.SMS).successful_messages == 1


# ═══════════════════════════════════════════════════════════════════════════
# Reporting
# ═══════════════════════════════════════════════════════════════════════════

class TestReporting:

    def test_comparison_sorted_by_volume(self):
        agg = _make_aggregator()
        agg.record(Channel.EMAIL, True, 5)
        for _ in range(3):
            agg.record(Channel.WHATSAPP, True, 5)

        rows = agg.comparison()
        assert [r["channel"] for r in rows[:2]] == ["whatsapp", "email"]
        assert rows[0]["status"] == "active"
        assert rows[-1]["status"] == "inactive"
        assert rows[0]["name"] == "WhatsApp"

    def test_cost_pct_guards_zero_total(self):
        rows = _make_aggregator().comparison()
        assert all(r["cost_pct"] == 0.0 for r in rows)

    def test_cost_breakdown_percentages(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 1, cost=0.03)
        agg.record(Channel.EMAIL, True, 1, cost=0.01)

        breakdown = agg.cost_breakdown()
        assert breakdown["total_cost"] == pytest.approx(0.04)
        pct = {c["channel"]: c["percentage"] for c in breakdown["channels"]}
        assert pct == {"sms": 75.0, "email": 25.0, "whatsapp": 0.0}

    def test_overall_latency_is_message_weighted(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 100)
        agg.record(Channel.SMS, True, 100)
        agg.record(Channel.EMAIL, True, 400)
        overview = agg.overall_metrics()
        assert overview["average_latency_ms"] == 200.0
        assert overview["total_channels"] == 2

    def test_export_shape(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 5)
        export = agg.export()
        assert set(export) == {
            "overview", "channels", "cost_analysis", "recent_events", "exported_at",
        }
        assert export["recent_events"][0]["channel"] == "sms"


# ═══════════════════════════════════════════════════════════════════════════
# Recommendations
# ═══════════════════════════════════════════════════════════════════════════

class TestRecommendations:

    def _recommend(self, agg, channels=None):
        return generate_recommendations(
            agg.comparison(), agg.overall_metrics(), CAPABILITIES, channels,
        )

    def test_no_traffic(self):
        titles = _titles(self._recommend(_make_aggregator()))
        assert titles[:3] == ["Cheapest Channel", "Most Reliable Channel", "Fastest Channel"]
        assert "Getting Started" in titles
        assert "Channel Diversity" in titles

    def test_rated_values_used_without_traffic(self):
        recs = self._recommend(_make_aggregator())
        cheapest, reliable, fastest = recs[:3]
        assert cheapest.description.startswith("Email")
        assert reliable.description.startswith("Email")
        assert fastest.description.startswith("SMS")

    def test_single_channel_gets_no_insights(self):
        titles = _titles(self._recommend(_make_aggregator(), channels=[Channel.SMS]))
        assert "Cheapest Channel" not in titles

    def test_reliability_warning(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 5)
        agg.record(Channel.SMS, False, 5)
        agg.record(Channel.EMAIL, True, 5)
        titles = _titles(self._recommend(agg))
        assert "Reliability Warning" in titles

    def test_email_volume_and_whatsapp_reliability(self):
        agg = _make_aggregator()
        agg.record(Channel.SMS, True, 5)
        agg.record(Channel.SMS, False, 5)
        agg.record(Channel.WHATSAPP, True, 5)
        titles = _titles(self._recommend(agg))
        assert "Cost Optimization" in titles
        assert "Reliability Improvement" in titles

    def test_all_good(self):
        agg = _make_aggregator()
        for ch in (Channel.SMS, Channel.EMAIL, Channel.WHATSAPP):
            agg.record(ch, True, 5)
        recs = self._recommend(agg)
        assert recs[-1].title == "All Good"
        assert recs[-1].to_dict()["type"] == "general"
