"""
messaging — Multi-channel dispatch with deferred delivery.

Modules:
    • models           — enums, status state machine, data classes
    • store            — message persistence (in-memory and SQLAlchemy)
    • broadcaster      — delivery event fan-out
    • metrics          — per-channel reliability / latency / cost
    • recommendations  — rule-based channel advice
    • channels/        — SMS, WhatsApp and email adapters
    • registry         — lazy per-channel adapter cache and routing
    • scheduler        — timer queue with store-backed recovery
    • service          — caller-facing facade
"""
