"""
metrics.py — Per-channel dispatch metrics.

Every dispatch attempt, scheduled or immediate, flows through
``MetricsAggregator.record`` (usually via ``measure_latency``). The
aggregator keeps one running ``ChannelMetrics`` per channel plus a
bounded log of recent attempts.

═══════════════════════════════════════════════════════════════════════════
AGGREGATION RULES
═══════════════════════════════════════════════════════════════════════════

    total        = successful + failed            (every attempt counts once)
    mean latency = (old_mean * (n - 1) + x) / n    (incremental running mean)
    reliability  = successful / total * 100        (100 with zero attempts)
    cost         = actual vendor price, else the channel's default unit cost

Each ``record`` call updates one channel's counters under a lock, so a
reader never sees a half-applied attempt.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from unifychat.messaging.models import Channel, ChannelCapabilities

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_EVENTS = 10_000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pct(part: float, whole: float, default: float = 0.0) -> float:
    return (part / whole) * 100 if whole else default


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AttemptEvent:
    """One recorded dispatch attempt."""
    channel: Channel
    success: bool
    latency_ms: float
    cost: float
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "success": self.success,
            "latency_ms": round(self.latency_ms, 1),
            "cost": self.cost,
            "message_id": self.message_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ChannelMetrics:
    """Running aggregate for one channel."""
    channel: Channel
    default_cost: float = 0.0
    total_messages: int = 0
    successful_messages: int = 0
    failed_messages: int = 0
    average_latency_ms: float = 0.0
    total_cost: float = 0.0
    reliability_pct: float = 100.0
    last_updated: datetime = field(default_factory=_now)

    @property
    def cost_per_message(self) -> float:
        if self.total_messages:
            return self.total_cost / self.total_messages
        return self.default_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "total_messages": self.total_messages,
            "successful_messages": self.successful_messages,
            "failed_messages": self.failed_messages,
            "average_latency_ms": round(self.average_latency_ms, 1),
            "total_cost": round(self.total_cost, 6),
            "cost_per_message": round(self.cost_per_message, 6),
            "reliability_pct": round(self.reliability_pct, 2),
            "last_updated": self.last_updated.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Aggregator
# ═══════════════════════════════════════════════════════════════════════════

class MetricsAggregator:
    """
    Records dispatch attempts and produces cross-channel statistics.

    Usage:
        metrics = MetricsAggregator(registry.capabilities())

        result = await metrics.measure_latency(
            lambda: registry.dispatch(request), Channel.SMS,
        )
        metrics.overall_metrics()
    """

    def __init__(
        self,
        capabilities: Optional[Mapping[Channel, ChannelCapabilities]] = None,
        max_events: int = DEFAULT_MAX_EVENTS,
    ):
        self._capabilities: Dict[Channel, ChannelCapabilities] = dict(capabilities or {})
        self._max_events = max_events
        self._lock = threading.Lock()
        self._metrics: Dict[Channel, ChannelMetrics] = {}
        self._events: Deque[AttemptEvent] = deque(maxlen=max_events)
        self._init_metrics()

    def _init_metrics(self) -> None:
        self._metrics = {
            channel: ChannelMetrics(channel=channel, default_cost=self.default_cost(channel))
            for channel in Channel
        }

    def default_cost(self, channel: Channel) -> float:
        caps = self._capabilities.get(channel)
        return caps.cost_per_unit if caps else 0.0

    def display_name(self, channel: Channel) -> str:
        caps = self._capabilities.get(channel)
        return caps.display_name if caps else channel.value

    # ── Recording ──

    def record(
        self,
        channel: Union[Channel, str],
        success: bool,
        latency_ms: float,
        cost: Optional[float] = None,
        *,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> AttemptEvent:
        """Apply one attempt to the channel's counters."""
        channel = Channel(channel)
        with self._lock:
            m = self._metrics[channel]
            event = AttemptEvent(
                channel=channel,
                success=success,
                latency_ms=max(float(latency_ms), 0.0),
                cost=m.default_cost if cost is None else float(cost),
                message_id=message_id,
                error=error,
            )

            m.total_messages += 1
            if success:
                m.successful_messages += 1
            else:
                m.failed_messages += 1

            n = m.total_messages
            m.average_latency_ms = (m.average_latency_ms * (n - 1) + event.latency_ms) / n
            m.total_cost += event.cost
            m.reliability_pct = _pct(m.successful_messages, n, default=100.0)
            m.last_updated = event.timestamp

            self._events.append(event)

        logger.debug(
            "Recorded %s attempt on %s (%.1fms)",
            "successful" if success else "failed", channel.value, event.latency_ms,
            extra={"channel": channel.value, "latency_ms": event.latency_ms},
        )
        return event

    async def measure_latency(
        self,
        operation: Callable[[], Awaitable[T]],
        channel: Union[Channel, str],
        *,
        message_id: Optional[str] = None,
        cost: Optional[float] = None,
        is_success: Optional[Callable[[T], bool]] = None,
    ) -> T:
        """
        Time ``operation`` and record the outcome.

        Success defaults to the result's ``success`` attribute (a
        ``SendResult``); the actual cost defaults to its ``cost``. If the
        operation raises, a failed attempt is recorded and the original
        exception propagates unchanged.
        """
        start = time.perf_counter()
        try:
            result = await operation()
        except Exception as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            self.record(
                channel, False, latency_ms, cost,
                message_id=message_id, error=str(exc) or type(exc).__name__,
            )
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        if is_success is not None:
            success = bool(is_success(result))
        else:
            success = bool(getattr(result, "success", True))
        actual_cost = cost if cost is not None else getattr(result, "cost", None)
        self.record(
            channel, success, latency_ms, actual_cost,
            message_id=message_id,
            error=None if success else getattr(result, "error", None),
        )
        return result

    # ── Reporting ──

    def channel_metrics(self, channel: Union[Channel, str]) -> ChannelMetrics:
        with self._lock:
            m = self._metrics[Channel(channel)]
            return ChannelMetrics(**vars(m))

    def all_metrics(self) -> List[ChannelMetrics]:
        with self._lock:
            return [ChannelMetrics(**vars(m)) for m in self._metrics.values()]

    def overall_metrics(self) -> Dict[str, Any]:
        snapshot = self.all_metrics()
        total = sum(m.total_messages for m in snapshot)
        successful = sum(m.successful_messages for m in snapshot)
        total_cost = sum(m.total_cost for m in snapshot)
        weighted_latency = sum(m.average_latency_ms * m.total_messages for m in snapshot)

        return {
            "total_channels": sum(1 for m in snapshot if m.total_messages > 0),
            "total_messages": total,
            "successful_messages": successful,
            "failed_messages": total - successful,
            "overall_reliability_pct": round(_pct(successful, total, default=100.0), 2),
            "average_latency_ms": round(weighted_latency / total, 1) if total else 0.0,
            "total_cost": round(total_cost, 6),
            "cost_per_message": round(total_cost / total, 6) if total else 0.0,
        }

    def comparison(self) -> List[Dict[str, Any]]:
        """Per-channel snapshot, busiest channel first."""
        snapshot = self.all_metrics()
        total_cost = sum(m.total_cost for m in snapshot)

        rows = []
        for m in snapshot:
            rows.append({
                "channel": m.channel.value,
                "name": self.display_name(m.channel),
                "total_messages": m.total_messages,
                "successful_messages": m.successful_messages,
                "failed_messages": m.failed_messages,
                "reliability_pct": round(m.reliability_pct, 2),
                "average_latency_ms": round(m.average_latency_ms, 1),
                "total_cost": round(m.total_cost, 6),
                "cost_per_message": round(m.cost_per_message, 6),
                "cost_pct": round(_pct(m.total_cost, total_cost), 2),
                "status": "active" if m.total_messages > 0 else "inactive",
            })
        rows.sort(key=lambda r: r["total_messages"], reverse=True)
        return rows

    def cost_breakdown(self) -> Dict[str, Any]:
        snapshot = self.all_metrics()
        total_cost = sum(m.total_cost for m in snapshot)
        return {
            "total_cost": round(total_cost, 6),
            "channels": [
                {
                    "channel": m.channel.value,
                    "name": self.display_name(m.channel),
                    "total_cost": round(m.total_cost, 6),
                    "message_count": m.total_messages,
                    "cost_per_message": round(m.cost_per_message, 6),
                    "percentage": round(_pct(m.total_cost, total_cost), 2),
                }
                for m in snapshot
            ],
        }

    def recent_events(self, limit: int = 100) -> List[AttemptEvent]:
        """Most recent attempts, newest first."""
        with self._lock:
            events = list(self._events)
        if limit <= 0:
            return []
        return list(reversed(events[-limit:]))

    def export(self) -> Dict[str, Any]:
        return {
            "overview": self.overall_metrics(),
            "channels": self.comparison(),
            "cost_analysis": self.cost_breakdown(),
            "recent_events": [e.to_dict() for e in self.recent_events(50)],
            "exported_at": _now().isoformat(),
        }

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._init_metrics()
        logger.info("Metrics reset")
