"""
Health check aggregation — deep health probe for the dispatcher.

Checks:
    • Message store connectivity
    • Channel availability (which adapters validated their credentials)
    • Delivery scheduler state

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from unifychat.core.config import Settings, get_settings

if TYPE_CHECKING:
    from unifychat.messaging.registry import AdapterRegistry
    from unifychat.messaging.scheduler import DeliveryScheduler
    from unifychat.messaging.store import MessageStore

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = ""
    environment: str = ""
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_store(store: "MessageStore") -> ComponentHealth:
    comp = ComponentHealth(name="message_store")
    start = time.monotonic()
    try:
        if await store.ping():
            comp.message = "Store reachable"
        else:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "Store ping failed"
        comp.details = {"backend": type(store).__name__}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(registry: "AdapterRegistry") -> ComponentHealth:
    """No enabled channel means nothing can be sent."""
    comp = ComponentHealth(name="channels")
    start = time.monotonic()

    enabled = [c.value for c in registry.enabled_channels()]
    disabled = [
        c.value for c in registry.capabilities() if c.value not in enabled
    ]

    if not enabled:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No delivery channels configured"
    elif disabled:
        comp.status = HealthStatus.HEALTHY
        comp.message = f"Disabled channels: {', '.join(disabled)}"
    else:
        comp.message = "All channels enabled"

    comp.details = {"enabled": enabled, "disabled": disabled}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


# Missed reconcile passes before the loop counts as stalled
STALL_FACTOR = 3


async def check_scheduler(scheduler: "DeliveryScheduler") -> ComponentHealth:
    """Stopped, or running without a recent reconciliation pass, is degraded."""
    comp = ComponentHealth(name="scheduler")
    start = time.monotonic()
    snapshot = scheduler.snapshot()
    comp.details = {
        "state": snapshot["state"],
        "armed_count": snapshot["armed_count"],
        "in_flight": len(snapshot["in_flight"]),
        "last_reconcile_at": snapshot["last_reconcile_at"],
    }

    last = scheduler.last_reconcile_at
    if not scheduler.is_running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler is stopped; deferred sends will wait for start"
    elif last is not None and (
        datetime.now(timezone.utc) - last
    ).total_seconds() > STALL_FACTOR * scheduler.reconcile_interval:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"No reconciliation since {last.isoformat()}"
    else:
        comp.message = f"{snapshot['armed_count']} timers armed"

    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    store: "MessageStore",
    registry: "AdapterRegistry",
    scheduler: "DeliveryScheduler",
    settings: Optional[Settings] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    settings = settings or get_settings()
    report = HealthReport(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(store),
        check_channels(registry),
        check_scheduler(scheduler),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
