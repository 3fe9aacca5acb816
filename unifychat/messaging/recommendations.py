"""
recommendations.py — Rule-based advice over channel metrics.

Rules run in a fixed order over the metrics comparison rows, the overall
summary and static channel capabilities, so the same inputs always yield
the same list.

    Insights (always reported when two or more channels are available):
        • cheapest channel         — lowest cost per message
        • most reliable channel    — highest observed (or rated) reliability
        • fastest channel          — lowest observed (or rated) latency

    Actions:
        • email volume below SMS volume  → shift non-urgent traffic to email
        • WhatsApp beats SMS reliability → prefer WhatsApp
        • overall reliability < 95%      → review failures
        • fewer than two active channels → diversify
        • no traffic yet                 → start sending

    When no action fires, a single "performing well" entry is added.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from unifychat.messaging.models import Channel, ChannelCapabilities

RELIABILITY_WARNING_PCT = 95.0


@dataclass
class Recommendation:
    type: str
    title: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "title": self.title,
            "description": self.description,
        }


def _row(comparison: Sequence[Dict[str, Any]], channel: Channel) -> Optional[Dict[str, Any]]:
    for row in comparison:
        if row["channel"] == channel.value:
            return row
    return None


def _name(channel: Channel, capabilities: Mapping[Channel, ChannelCapabilities]) -> str:
    caps = capabilities.get(channel)
    return caps.display_name if caps else channel.value


def _cost(row: Dict[str, Any], caps: Optional[ChannelCapabilities]) -> float:
    if row["total_messages"] or caps is None:
        return row["cost_per_message"]
    return caps.cost_per_unit


def _reliability(row: Dict[str, Any], caps: Optional[ChannelCapabilities]) -> float:
    if row["total_messages"] or caps is None:
        return row["reliability_pct"]
    return caps.reliability_pct


def _latency_ms(row: Dict[str, Any], caps: Optional[ChannelCapabilities]) -> float:
    if row["total_messages"] or caps is None:
        return row["average_latency_ms"]
    return caps.min_latency_seconds * 1000


def _insights(
    comparison: Sequence[Dict[str, Any]],
    capabilities: Mapping[Channel, ChannelCapabilities],
    channels: Sequence[Channel],
) -> List[Recommendation]:
    rows = [(ch, _row(comparison, ch)) for ch in channels]
    rows = [(ch, row) for ch, row in rows if row is not None]
    if len(rows) < 2:
        return []

    cheapest = min(rows, key=lambda r: _cost(r[1], capabilities.get(r[0])))
    most_reliable = max(rows, key=lambda r: _reliability(r[1], capabilities.get(r[0])))
    fastest = min(rows, key=lambda r: _latency_ms(r[1], capabilities.get(r[0])))

    return [
        Recommendation(
            type="cost_optimization",
            title="Cheapest Channel",
            description=(
                f"{_name(cheapest[0], capabilities)} has the lowest cost at "
                f"${_cost(cheapest[1], capabilities.get(cheapest[0])):.4f} per message"
            ),
        ),
        Recommendation(
            type="reliability",
            title="Most Reliable Channel",
            description=(
                f"{_name(most_reliable[0], capabilities)} has the highest reliability at "
                f"{_reliability(most_reliable[1], capabilities.get(most_reliable[0])):.1f}%"
            ),
        ),
        Recommendation(
            type="performance",
            title="Fastest Channel",
            description=(
                f"{_name(fastest[0], capabilities)} has the lowest delivery latency"
            ),
        ),
    ]


def generate_recommendations(
    comparison: Sequence[Dict[str, Any]],
    overview: Dict[str, Any],
    capabilities: Mapping[Channel, ChannelCapabilities],
    channels: Optional[Sequence[Channel]] = None,
) -> List[Recommendation]:
    """
    Build the recommendation list.

    ``channels`` limits the insight rules to the channels that are
    actually usable; it defaults to every channel in ``comparison``.
    """
    if channels is None:
        channels = [Channel(row["channel"]) for row in comparison]

    recs = _insights(comparison, capabilities, channels)
    actions: List[Recommendation] = []

    sms = _row(comparison, Channel.SMS)
    email = _row(comparison, Channel.EMAIL)
    whatsapp = _row(comparison, Channel.WHATSAPP)

    if email and sms and email["total_messages"] < sms["total_messages"]:
        actions.append(Recommendation(
            type="cost_optimization",
            title="Cost Optimization",
            description="Consider using email for non-urgent communications to reduce costs",
        ))

    if (
        whatsapp and sms
        and whatsapp["total_messages"] and sms["total_messages"]
        and whatsapp["reliability_pct"] > sms["reliability_pct"]
    ):
        actions.append(Recommendation(
            type="reliability",
            title="Reliability Improvement",
            description="WhatsApp shows higher reliability than SMS for your use case",
        ))

    total = overview.get("total_messages", 0)
    if total and overview.get("overall_reliability_pct", 100.0) < RELIABILITY_WARNING_PCT:
        actions.append(Recommendation(
            type="reliability",
            title="Reliability Warning",
            description=(
                "Overall reliability is below 95% - consider reviewing "
                "failed message patterns"
            ),
        ))

    active = [row for row in comparison if row["total_messages"] > 0]
    if len(active) < 2:
        actions.append(Recommendation(
            type="general",
            title="Channel Diversity",
            description="Consider diversifying communication channels for better reach",
        ))

    if not total:
        actions.append(Recommendation(
            type="general",
            title="Getting Started",
            description="Start sending messages to see analytics and performance metrics",
        ))

    if not actions:
        actions.append(Recommendation(
            type="general",
            title="All Good",
            description="Your integration setup is performing well across all metrics",
        ))

    return recs + actions
