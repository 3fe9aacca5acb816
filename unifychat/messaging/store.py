"""
store.py — Message Store: the durable record of every message.

The store is the single source of truth for message status. The
scheduler's in-memory timer map is only an index into it and is rebuilt
from ``find_by_status_and_scheduled_before`` on every start.

Implementations:
    • InMemoryMessageStore — dict-backed (tests, local development)
    • SqlMessageStore      — SQLAlchemy 2.0 async ORM (production)

All status writes are unconditional (last write wins). Callers that need
state-machine guarding check ``can_transition`` before writing.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import JSON, DateTime, Index, String, Text, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from unifychat.core.database import Base
from unifychat.core.errors import NotFoundError
from unifychat.messaging.models import (
    Channel,
    Direction,
    Message,
    MessageStatus,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@runtime_checkable
class MessageStore(Protocol):
    """Interface the dispatcher consumes from persistent storage."""

    async def create(self, message: Message) -> Message: ...

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def find_by_id(self, message_id: str) -> Optional[Message]: ...

    async def find_by_status_and_scheduled_before(
        self, status: MessageStatus, instant: datetime,
    ) -> List[Message]: ...

    async def find_scheduled_by_filters(
        self,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> List[Message]: ...

    async def find_by_vendor_message_id(
        self, channel: Channel, vendor_message_id: str,
    ) -> Optional[Message]: ...

    async def ping(self) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryMessageStore:
    """Dict-backed store. Returns copies so callers cannot mutate rows."""

    def __init__(self) -> None:
        self._rows: Dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._rows)

    async def create(self, message: Message) -> Message:
        row = copy.deepcopy(message)
        row.id = row.id or _new_id()
        self._rows[row.id] = row
        return copy.deepcopy(row)

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        row = self._rows.get(message_id)
        if row is None:
            raise NotFoundError("Message", id=message_id)
        row.status = status
        if metadata:
            row.metadata.update(copy.deepcopy(metadata))

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        row = self._rows.get(message_id)
        return copy.deepcopy(row) if row else None

    async def find_by_status_and_scheduled_before(
        self, status: MessageStatus, instant: datetime,
    ) -> List[Message]:
        rows = [
            r for r in self._rows.values()
            if r.status == status
            and r.scheduled_at is not None
            and r.scheduled_at <= instant
        ]
        rows.sort(key=lambda r: r.scheduled_at)
        return [copy.deepcopy(r) for r in rows]

    async def find_scheduled_by_filters(
        self,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> List[Message]:
        rows = []
        for r in self._rows.values():
            if r.status != MessageStatus.SCHEDULED:
                continue
            if contact_id and r.contact_id != contact_id:
                continue
            if user_id and r.user_id != user_id:
                continue
            if team_id and r.team_id != team_id:
                continue
            rows.append(r)
        rows.sort(key=lambda r: r.scheduled_at or r.created_at)
        return [copy.deepcopy(r) for r in rows]

    async def find_by_vendor_message_id(
        self, channel: Channel, vendor_message_id: str,
    ) -> Optional[Message]:
        for r in self._rows.values():
            if r.channel == channel and r.vendor_message_id == vendor_message_id:
                return copy.deepcopy(r)
        return None

    async def ping(self) -> bool:
        return True


# ═══════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementation
# ═══════════════════════════════════════════════════════════════════════════

class MessageRecord(Base):
    """ORM row for the ``messages`` table."""
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_messages_channel_vendor_id", "channel", "vendor_message_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    content: Mapped[str] = mapped_column(Text)
    channel: Mapped[str] = mapped_column(String(16))
    direction: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16))
    to_address: Mapped[str] = mapped_column(String(320))
    from_address: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    vendor_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            content=self.content,
            channel=Channel(self.channel),
            direction=Direction(self.direction),
            status=MessageStatus(self.status),
            to=self.to_address,
            from_address=self.from_address,
            scheduled_at=_aware(self.scheduled_at),
            created_at=_aware(self.created_at),
            metadata=dict(self.meta or {}),
            contact_id=self.contact_id,
            user_id=self.user_id,
            team_id=self.team_id,
        )

    @classmethod
    def from_message(cls, message: Message, message_id: str) -> "MessageRecord":
        return cls(
            id=message_id,
            content=message.content,
            channel=message.channel.value,
            direction=message.direction.value,
            status=message.status.value,
            to_address=message.to,
            from_address=message.from_address,
            scheduled_at=message.scheduled_at,
            created_at=message.created_at,
            meta=dict(message.metadata),
            vendor_message_id=message.vendor_message_id,
            contact_id=message.contact_id,
            user_id=message.user_id,
            team_id=message.team_id,
        )


class SqlMessageStore:
    """
    Message store backed by an async SQLAlchemy session factory.

    Each operation runs in its own short session so concurrent dispatch
    coroutines never share a session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, message: Message) -> Message:
        record = MessageRecord.from_message(message, message.id or _new_id())
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            return record.to_message()

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session_factory() as session:
            record = await session.get(MessageRecord, message_id)
            if record is None:
                raise NotFoundError("Message", id=message_id)
            record.status = status.value
            if metadata:
                # Reassign so the JSON column is flagged dirty
                record.meta = {**(record.meta or {}), **metadata}
                if metadata.get("vendor_message_id"):
                    record.vendor_message_id = metadata["vendor_message_id"]
            await session.commit()

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            record = await session.get(MessageRecord, message_id)
            return record.to_message() if record else None

    async def find_by_status_and_scheduled_before(
        self, status: MessageStatus, instant: datetime,
    ) -> List[Message]:
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.status == status.value)
            .where(MessageRecord.scheduled_at.is_not(None))
            .where(MessageRecord.scheduled_at <= instant)
            .order_by(MessageRecord.scheduled_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [r.to_message() for r in result.scalars().all()]

    async def find_scheduled_by_filters(
        self,
        *,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> List[Message]:
        stmt = select(MessageRecord).where(
            MessageRecord.status == MessageStatus.SCHEDULED.value
        )
        if contact_id:
            stmt = stmt.where(MessageRecord.contact_id == contact_id)
        if user_id:
            stmt = stmt.where(MessageRecord.user_id == user_id)
        if team_id:
            stmt = stmt.where(MessageRecord.team_id == team_id)
        stmt = stmt.order_by(MessageRecord.scheduled_at)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [r.to_message() for r in result.scalars().all()]

    async def find_by_vendor_message_id(
        self, channel: Channel, vendor_message_id: str,
    ) -> Optional[Message]:
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.channel == channel.value)
            .where(MessageRecord.vendor_message_id == vendor_message_id)
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            record = result.scalars().first()
            return record.to_message() if record else None

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Message store ping failed: %s", exc)
            return False
