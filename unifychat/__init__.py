"""
unifychat — multi-channel message dispatch with deferred delivery.

Sub-packages:
    core/       — configuration, logging, errors, database, health
    messaging/  — channel adapters, scheduler, metrics, service facade
    api/        — FastAPI routers
"""

__version__ = "1.0.0"
