"""
FastAPI route: channel information and cross-channel analysis.

    GET /api/v1/integrations/channels   — per-channel capabilities + metrics
    GET /api/v1/integrations/analysis   — overview, comparison, recommendations
    GET /api/v1/integrations/metrics    — full metrics export
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from unifychat.api.deps import get_service
from unifychat.messaging.service import MessagingService

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])


@router.get("/channels", summary="List channels")
async def list_channels(service: MessagingService = Depends(get_service)):
    channels = service.channel_info()
    return {
        "channels": channels,
        "enabled_count": sum(1 for c in channels if c["enabled"]),
    }


@router.get("/analysis", summary="Integration analysis")
async def analysis(service: MessagingService = Depends(get_service)):
    return service.analysis()


@router.get("/metrics", summary="Export dispatch metrics")
async def export_metrics(service: MessagingService = Depends(get_service)):
    return service.metrics.export()
