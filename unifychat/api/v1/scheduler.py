"""
FastAPI route: scheduler diagnostics.

    GET  /api/v1/scheduler/debug      — state, armed timers, overdue messages
    POST /api/v1/scheduler/reconcile  — run one reconciliation pass now
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from unifychat.api.deps import get_service
from unifychat.messaging.models import MessageStatus
from unifychat.messaging.service import MessagingService

router = APIRouter(prefix="/api/v1/scheduler", tags=["scheduler"])


@router.get("/debug", summary="Scheduler state")
async def debug(service: MessagingService = Depends(get_service)):
    now = datetime.now(timezone.utc)
    overdue = await service.store.find_by_status_and_scheduled_before(
        MessageStatus.SCHEDULED, now,
    )
    scheduled = await service.store.find_scheduled_by_filters()
    return {
        **service.scheduler.snapshot(),
        "total_scheduled": len(scheduled),
        "overdue_count": len(overdue),
        "overdue": [
            {
                "message_id": m.id,
                "channel": m.channel.value,
                "scheduled_at": m.scheduled_at.isoformat(),
                "minutes_overdue": int((now - m.scheduled_at).total_seconds() // 60),
            }
            for m in overdue
        ],
    }


@router.post("/reconcile", summary="Run a reconciliation pass")
async def reconcile(service: MessagingService = Depends(get_service)):
    ids = await service.scheduler.reconcile()
    snapshot = service.scheduler.snapshot()
    return {
        "success": True,
        "message": f"Reconciled {len(ids)} overdue messages",
        "message_ids": ids,
        "state": snapshot["state"],
        "armed_count": snapshot["armed_count"],
    }
