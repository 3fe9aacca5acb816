"""
scheduler.py — Delivery Scheduler: deferred sends with store-backed recovery.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    STOPPED ──start()──► RUNNING ──stop()──► STOPPED

    start():
        1. Recovery load   — every SCHEDULED message due within the
                             look-ahead window (overdue ones included) is
                             enqueued.
        2. Reconciliation  — overdue SCHEDULED messages are dispatched and
                             awaited before start() returns.
        3. Periodic pass   — a background task repeats step 2 every
                             ``reconcile_interval`` seconds and arms timers
                             for messages that entered the window.

    stop():
        cancels the periodic task and every armed timer, then waits for
        dispatches already talking to a vendor to finish.

═══════════════════════════════════════════════════════════════════════════
TIMERS AND DISPATCH
═══════════════════════════════════════════════════════════════════════════

    _entries   : message_id → ScheduledEntry(fires_at, handle)
                 handle is an asyncio.Task sleeping until fires_at.
    _in_flight : message_id → asyncio.Task running one dispatch.

    A timer removes its own entry before dispatching, so cancel() can
    only interrupt a timer that has not fired. Concurrent dispatch()
    calls for one id join the task already in flight, so a firing timer
    and a reconciliation pass never produce two vendor calls. A dispatch
    re-reads the message and does nothing unless it is still SCHEDULED.

    Both maps are mutated only from the event loop thread, between
    awaits, which serializes every change to them.

The store is the source of truth; the maps are disposable indexes
rebuilt by start(). Running more than one scheduler against the same
store can dispatch a message twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from unifychat.core.errors import NotFoundError
from unifychat.core.logging_config import dispatch_context
from unifychat.messaging.broadcaster import Broadcaster
from unifychat.messaging.metrics import MetricsAggregator
from unifychat.messaging.models import (
    DeliveryEvent,
    Message,
    MessageStatus,
    SendRequest,
)
from unifychat.messaging.registry import AdapterRegistry
from unifychat.messaging.store import MessageStore

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = timedelta(hours=24)
DEFAULT_RECONCILE_INTERVAL_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class ScheduledEntry:
    """In-memory index entry for one armed timer."""
    message_id: str
    fires_at: datetime
    handle: asyncio.Task

    def to_dict(self) -> Dict[str, Any]:
        return {"message_id": self.message_id, "fires_at": self.fires_at.isoformat()}


class DeliveryScheduler:
    """
    Owns the timer queue of not-yet-sent scheduled messages.

    Usage:
        scheduler = DeliveryScheduler(store, registry, metrics, broadcaster)
        await scheduler.start()
        message_id = await scheduler.schedule(message)
        await scheduler.cancel(message_id)
        await scheduler.stop()
    """

    def __init__(
        self,
        store: MessageStore,
        registry: AdapterRegistry,
        metrics: MetricsAggregator,
        broadcaster: Optional[Broadcaster] = None,
        *,
        lookahead: timedelta = DEFAULT_LOOKAHEAD,
        reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._registry = registry
        self._metrics = metrics
        self._broadcaster = broadcaster
        self._lookahead = lookahead
        self._reconcile_interval = reconcile_interval
        self._clock = clock

        self._state = SchedulerState.STOPPED
        self._lifecycle_lock = asyncio.Lock()
        self._entries: Dict[str, ScheduledEntry] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._reconcile_task: Optional[asyncio.Task] = None
        self._last_reconcile_at: Optional[datetime] = None

    # ── Introspection ──

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def armed_ids(self) -> List[str]:
        return list(self._entries)

    @property
    def reconcile_interval(self) -> float:
        return self._reconcile_interval

    @property
    def last_reconcile_at(self) -> Optional[datetime]:
        return self._last_reconcile_at

    def is_armed(self, message_id: str) -> bool:
        return message_id in self._entries

    def snapshot(self) -> Dict[str, Any]:
        entries = sorted(self._entries.values(), key=lambda e: e.fires_at)
        return {
            "state": self._state.value,
            "running": self.is_running,
            "armed_count": len(entries),
            "armed": [e.to_dict() for e in entries],
            "in_flight": sorted(self._in_flight),
            "lookahead_seconds": self._lookahead.total_seconds(),
            "reconcile_interval_seconds": self._reconcile_interval,
            "last_reconcile_at": (
                self._last_reconcile_at.isoformat() if self._last_reconcile_at else None
            ),
        }

    # ── Lifecycle ──

    async def start(self) -> None:
        async with self._lifecycle_lock:
            if self._state == SchedulerState.RUNNING:
                return
            self._state = SchedulerState.RUNNING
            logger.info(
                "Delivery scheduler starting (lookahead=%s, interval=%.0fs)",
                self._lookahead, self._reconcile_interval,
            )

            await self._arm_window()
            await self.reconcile()

            self._reconcile_task = asyncio.create_task(
                self._reconcile_loop(), name="scheduler-reconcile",
            )
            logger.info("Delivery scheduler started with %d armed timers", len(self._entries))

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            if self._state == SchedulerState.STOPPED:
                return
            self._state = SchedulerState.STOPPED

            if self._reconcile_task:
                self._reconcile_task.cancel()
                try:
                    await self._reconcile_task
                except asyncio.CancelledError:
                    pass
                self._reconcile_task = None

            timers = [e.handle for e in self._entries.values()]
            self._entries.clear()
            for handle in timers:
                handle.cancel()
            if timers:
                await asyncio.gather(*timers, return_exceptions=True)

            in_flight = list(self._in_flight.values())
            if in_flight:
                logger.info("Waiting for %d in-flight dispatches", len(in_flight))
                await asyncio.gather(*in_flight, return_exceptions=True)

            logger.info("Delivery scheduler stopped (%d timers cancelled)", len(timers))

    # ── Scheduling ──

    async def schedule(self, message: Message) -> str:
        """
        Persist a SCHEDULED message and arm its timer.

        The message is durable once this returns; if the scheduler is not
        running it is picked up by the next start().
        """
        if message.scheduled_at is None:
            raise ValueError("scheduled message requires scheduled_at")
        message.status = MessageStatus.SCHEDULED
        created = await self._store.create(message)
        logger.info(
            "Message %s scheduled for %s via %s",
            created.id, created.scheduled_at.isoformat(), created.channel.value,
            extra={"message_id": created.id, "channel": created.channel.value},
        )
        if self.is_running and created.scheduled_at <= self._clock() + self._lookahead:
            self.enqueue(created.id, created.scheduled_at)
        return created.id

    def enqueue(self, message_id: str, fires_at: datetime) -> bool:
        """
        Track ``message_id`` for dispatch at ``fires_at``.

        Returns False if the scheduler is stopped or the id is already
        armed or dispatching. An overdue ``fires_at`` starts the dispatch
        right away instead of arming a timer.
        """
        if not self.is_running:
            return False
        if message_id in self._entries or message_id in self._in_flight:
            return False

        delay = (fires_at - self._clock()).total_seconds()
        if delay <= 0:
            self._ensure_dispatch(message_id)
            return True

        handle = asyncio.create_task(
            self._fire_after(message_id, delay), name=f"scheduled-send:{message_id}",
        )
        self._entries[message_id] = ScheduledEntry(message_id, fires_at, handle)
        logger.debug("Armed timer for %s in %.1fs", message_id, delay)
        return True

    async def cancel(self, message_id: str) -> bool:
        """
        Disarm the timer (if any) and mark the message FAILED.

        The status write happens even when no timer is armed here; it is
        what stops a dispatch that has not yet re-read the message.
        Returns False when the store has no such message (logged at INFO)
        or the store write fails; True otherwise, armed or not.
        """
        entry = self._entries.pop(message_id, None)
        if entry is not None:
            entry.handle.cancel()

        try:
            await self._store.update_status(
                message_id, MessageStatus.FAILED, {"cancelled": True},
            )
        except NotFoundError:
            logger.info("Cancel requested for unknown message %s", message_id)
            return False
        except Exception:
            logger.exception("Failed to cancel scheduled message %s", message_id)
            return False

        logger.info(
            "Scheduled message %s cancelled (timer %s)",
            message_id, "disarmed" if entry else "not armed",
            extra={"message_id": message_id, "status": MessageStatus.FAILED.value},
        )
        return True

    # ── Reconciliation ──

    async def reconcile(self) -> List[str]:
        """
        Dispatch every overdue SCHEDULED message and arm newly due timers.

        On a stopped scheduler only the overdue dispatch happens, and it is
        awaited here; no timer is armed, so nothing outlives the call.
        Returns the ids that were overdue. Store errors are logged, never
        raised.
        """
        now = self._clock()
        self._last_reconcile_at = now
        try:
            overdue = await self._store.find_by_status_and_scheduled_before(
                MessageStatus.SCHEDULED, now,
            )
        except Exception:
            logger.exception("Reconciliation query failed")
            return []

        ids = [m.id for m in overdue]
        if ids:
            logger.info("Reconciliation found %d overdue messages", len(ids))
        for message_id in ids:
            entry = self._entries.pop(message_id, None)
            if entry is not None:
                entry.handle.cancel()
            await self.dispatch(message_id)

        await self._arm_window()
        return ids

    async def _arm_window(self) -> None:
        if not self.is_running:
            return
        horizon = self._clock() + self._lookahead
        try:
            due = await self._store.find_by_status_and_scheduled_before(
                MessageStatus.SCHEDULED, horizon,
            )
        except Exception:
            logger.exception("Look-ahead query failed")
            return
        for message in due:
            self.enqueue(message.id, message.scheduled_at)

    async def _reconcile_loop(self) -> None:
        while self._state == SchedulerState.RUNNING:
            try:
                await asyncio.sleep(self._reconcile_interval)
                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation pass failed")

    # ── Dispatch ──

    async def dispatch(self, message_id: str) -> Optional[MessageStatus]:
        """
        Send one scheduled message, or join the send already in flight.

        Returns the final status written, or None when the message was
        missing or no longer SCHEDULED.
        """
        return await asyncio.shield(self._ensure_dispatch(message_id))

    def _ensure_dispatch(self, message_id: str) -> asyncio.Task:
        task = self._in_flight.get(message_id)
        if task is not None:
            return task

        task = asyncio.create_task(
            self._dispatch_once(message_id), name=f"dispatch:{message_id}",
        )
        self._in_flight[message_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._in_flight.get(message_id) is t:
                del self._in_flight[message_id]

        task.add_done_callback(_done)
        return task

    async def _fire_after(self, message_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        entry = self._entries.get(message_id)
        if entry is not None and entry.handle is asyncio.current_task():
            del self._entries[message_id]
        await self.dispatch(message_id)

    async def _dispatch_once(self, message_id: str) -> Optional[MessageStatus]:
        try:
            message = await self._store.find_by_id(message_id)
        except Exception:
            logger.exception("Could not load scheduled message %s", message_id)
            return None

        if message is None or message.status != MessageStatus.SCHEDULED:
            logger.debug(
                "Skipping dispatch of %s (%s)", message_id,
                "missing" if message is None else message.status.value,
            )
            return None

        request = SendRequest(
            channel=message.channel,
            to=message.to,
            content=message.content,
            from_address=message.from_address,
            media_url=message.metadata.get("media_url"),
            metadata=dict(message.metadata),
        )

        with dispatch_context(message_id, message.channel.value):
            status = await self._send_and_record(message_id, message, request)
            logger.info(
                "Scheduled message %s via %s → %s",
                message_id, message.channel.value, status.value,
                extra={"status": status.value},
            )

        message.status = status
        await self._notify(message)
        return status

    async def _send_and_record(
        self, message_id: str, message: Message, request: SendRequest,
    ) -> MessageStatus:
        try:
            result = await self._metrics.measure_latency(
                lambda: self._registry.dispatch(request),
                message.channel,
                message_id=message_id,
            )
            status = MessageStatus.SENT if result.success else MessageStatus.FAILED
            updates: Dict[str, Any] = {}
            if result.message_id:
                updates["vendor_message_id"] = result.message_id
            if result.error:
                updates["error"] = result.error
            await self._store.update_status(message_id, status, updates)
            return status
        except Exception:
            logger.exception("Dispatch of scheduled message %s failed", message_id)
            try:
                await self._store.update_status(message_id, MessageStatus.FAILED)
            except Exception:
                logger.exception("Could not mark message %s failed", message_id)
            return MessageStatus.FAILED

    async def _notify(self, message: Message) -> None:
        if self._broadcaster is None:
            return
        try:
            await self._broadcaster.publish(DeliveryEvent.for_message(message))
        except Exception:
            logger.exception("Delivery notification for %s failed", message.id)
