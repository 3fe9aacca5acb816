"""
test_store.py — Message Store implementations.

Every behavioural test runs against both the in-memory store and the
SQLAlchemy store (aiosqlite file database).

Covers:
    • create / find_by_id round trip
    • Unconditional status writes with metadata merge
    • Due-message query ordering and boundary
    • Scheduled listing filters
    • Vendor id lookup
    • Durability across store instances

Run with:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from unifychat.core.database import close_db, create_engine, create_session_factory, init_db
from unifychat.core.errors import NotFoundError
from unifychat.messaging.models import Channel, Direction, Message, MessageStatus
from unifychat.messaging.store import InMemoryMessageStore, MessageStore, SqlMessageStore

NOW = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)


def _make_message(**overrides) -> Message:
    data = dict(
        content="Reminder: appointment tomorrow",
        channel=Channel.SMS,
        to="+15551234567",
        status=MessageStatus.SCHEDULED,
        scheduled_at=NOW + timedelta(hours=1),
        created_at=NOW,
    )
    data.update(overrides)
    return Message(**data)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryMessageStore()
        return
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'messages.db'}")
    await init_db(engine)
    yield SqlMessageStore(create_session_factory(engine))
    await close_db(engine)


# ═══════════════════════════════════════════════════════════════════════════
# Basic Operations
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAndFind:

    @pytest.mark.asyncio
    async def test_create_assigns_id(self, store):
        assert isinstance(store, MessageStore)
        created = await store.create(_make_message(contact_id="c1"))

        assert created.id
        found = await store.find_by_id(created.id)
        assert found.content == "Reminder: appointment tomorrow"
        assert found.channel == Channel.SMS
        assert found.direction == Direction.OUTBOUND
        assert found.status == MessageStatus.SCHEDULED
        assert found.scheduled_at == NOW + timedelta(hours=1)
        assert found.contact_id == "c1"

    @pytest.mark.asyncio
    async def test_missing_id(self, store):
        assert await store.find_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True


class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_metadata_is_merged(self, store):
        created = await store.create(_make_message(metadata={"subject": "Hi"}))

        await store.update_status(
            created.id, MessageStatus.SENT, {"vendor_message_id": "SM42"},
        )

        found = await store.find_by_id(created.id)
        assert found.status == MessageStatus.SENT
        assert found.metadata == {"subject": "Hi", "vendor_message_id": "SM42"}

    @pytest.mark.asyncio
    async def test_writes_are_unconditional(self, store):
        created = await store.create(_make_message(status=MessageStatus.FAILED))
        await store.update_status(created.id, MessageStatus.SENT)
        assert (await store.find_by_id(created.id)).status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_status("nope", MessageStatus.FAILED)


# ═══════════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestDueQuery:

    @pytest.mark.asyncio
    async def test_sorted_and_inclusive(self, store):
        late = await store.create(_make_message(scheduled_at=NOW))
        early = await store.create(_make_message(scheduled_at=NOW - timedelta(minutes=5)))
        await store.create(_make_message(scheduled_at=NOW + timedelta(seconds=1)))
        await store.create(_make_message(
            scheduled_at=NOW - timedelta(hours=1), status=MessageStatus.SENT,
        ))

        due = await store.find_by_status_and_scheduled_before(MessageStatus.SCHEDULED, NOW)

        assert [m.id for m in due] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_immediate_messages_are_never_due(self, store):
        await store.create(_make_message(scheduled_at=None, status=MessageStatus.SCHEDULED))
        due = await store.find_by_status_and_scheduled_before(
            MessageStatus.SCHEDULED, NOW + timedelta(days=365),
        )
        assert due == []


class TestScheduledListing:

    @pytest.mark.asyncio
    async def test_filters(self, store):
        a = await store.create(_make_message(contact_id="c1", user_id="u1", team_id="t1"))
        b = await store.create(_make_message(contact_id="c2", user_id="u1", team_id="t1"))
        await store.create(_make_message(contact_id="c1", status=MessageStatus.SENT))

        assert {m.id for m in await store.find_scheduled_by_filters()} == {a.id, b.id}
        assert [m.id for m in await store.find_scheduled_by_filters(contact_id="c1")] == [a.id]
        assert len(await store.find_scheduled_by_filters(user_id="u1", team_id="t1")) == 2
        assert await store.find_scheduled_by_filters(team_id="other") == []


class TestVendorLookup:

    @pytest.mark.asyncio
    async def test_lookup_is_channel_scoped(self, store):
        created = await store.create(_make_message(status=MessageStatus.PENDING))
        await store.update_status(
            created.id, MessageStatus.SENT, {"vendor_message_id": "SM7"},
        )

        found = await store.find_by_vendor_message_id(Channel.SMS, "SM7")
        assert found.id == created.id
        assert await store.find_by_vendor_message_id(Channel.WHATSAPP, "SM7") is None
        assert await store.find_by_vendor_message_id(Channel.SMS, "SM8") is None


# ═══════════════════════════════════════════════════════════════════════════
# Implementation Details
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryIsolation:

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self):
        store = InMemoryMessageStore()
        created = await store.create(_make_message())
        created.status = MessageStatus.FAILED
        created.metadata["x"] = 1

        found = await store.find_by_id(created.id)
        assert found.status == MessageStatus.SCHEDULED
        assert found.metadata == {}
        assert len(store) == 1


class TestSqlDurability:

    @pytest.mark.asyncio
    async def test_rows_survive_a_new_engine(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'restart.db'}"

        engine = create_engine(url)
        await init_db(engine)
        created = await SqlMessageStore(create_session_factory(engine)).create(_make_message())
        await close_db(engine)

        engine = create_engine(url)
        await init_db(engine)
        try:
            store = SqlMessageStore(create_session_factory(engine))
            due = await store.find_by_status_and_scheduled_before(
                MessageStatus.SCHEDULED, NOW + timedelta(days=1),
            )
            assert [m.id for m in due] == [created.id]
            assert due[0].scheduled_at.tzinfo is not None
        finally:
            await close_db(engine)
