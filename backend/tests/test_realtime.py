"""
即時同步測試（記憶體 SQLite 當遠端與本機）。
覆蓋：訂閱後全量對帳、遠端新增 / 修改 / 刪除冪等套用、處理中丟棄新事件、清潔員篩選、
重連延遲遞增與次數用盡、手動重新同步、本機寫入不會被即時事件重複套用。
"""
import uuid
from datetime import date

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from schedule_sync.database import Base, LocalBase
from schedule_sync.errors import RealtimeConnectionError
from schedule_sync.schemas import ChangeEvent, ScheduleEntry
from schedule_sync.services.change_feed import ChangeFeed
from schedule_sync.services.entry_codec import to_wire
from schedule_sync.services.local_store import LocalScheduleStore
from schedule_sync.services.realtime import RealtimeIngestor, SubscriptionState
from schedule_sync.services.remote_sync import RemoteSyncClient
from schedule_sync.services.remote_table import RemoteScheduleTable
from schedule_sync.services.schedule_engine import ScheduleEngine


def _memory_engine():
    return create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
async def sessions():
    remote = _memory_engine()
    local = _memory_engine()
    async with remote.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with local.begin() as conn:
        await conn.run_sync(LocalBase.metadata.create_all)
    yield (
        async_sessionmaker(remote, class_=AsyncSession, expire_on_commit=False),
        async_sessionmaker(local, class_=AsyncSession, expire_on_commit=False),
    )
    await remote.dispose()
    await local.dispose()


class Harness:
    def __init__(self, sessions, cleaner_filter=None, with_sync=False):
        remote_sessions, local_sessions = sessions
        self.feed = ChangeFeed()
        self.table = RemoteScheduleTable(remote_sessions, feed=self.feed)
        # 另一台裝置：寫同一張遠端表
        self.other = RemoteScheduleTable(remote_sessions, feed=self.feed)
        self.delays = []
        self.errors = []

        async def fake_sleep(seconds):
            self.delays.append(seconds)

        sync_client = RemoteSyncClient(self.table, sleep=fake_sleep) if with_sync else None
        self.store = LocalScheduleStore(local_sessions, debounce_ms=10)
        self.engine = ScheduleEngine(self.store, sync_client=sync_client)
        self.ingestor = RealtimeIngestor(
            self.engine,
            self.feed,
            self.table,
            cleaner_filter=cleaner_filter,
            reconnect_delay=1.0,
            max_reconnect_attempts=3,
            sleep=fake_sleep,
            on_error=self.errors.append,
        )

    async def start(self):
        await self.engine.load()
        await self.ingestor.start()
        await self.ingestor.wait_idle()

    async def settle(self):
        # 推送成功會再觸發事件，多輪直到都處理完
        for _ in range(2):
            await self.engine.drain()
            await self.feed.drain()
            await self.ingestor.wait_idle()

    def local_ids(self, week_id=None):
        schedule = self.store.snapshot()
        weeks = [week_id] if week_id else list(schedule)
        return sorted(e.id for w in weeks for e in schedule.get(w, []))


def _entry(**kw) -> ScheduleEntry:
    data = dict(
        id=str(uuid.uuid4()),
        client_name="大安物業",
        building_name="A 棟",
        cleaner_names=["Amy"],
        hours=4,
        date="2025-01-15",
    )
    data.update(kw)
    return ScheduleEntry(**data)


@pytest.mark.asyncio
async def test_subscribe_runs_full_reconcile(sessions):
    h = Harness(sessions)
    existing = _entry()
    await RemoteScheduleTable(sessions[0]).insert(to_wire(existing))
    await h.start()
    assert h.ingestor.state == SubscriptionState.SUBSCRIBED
    assert h.engine.status.is_connected
    assert h.engine.status.realtime_state == "subscribed"
    assert h.local_ids("2025-01-13") == [existing.id]
    assert h.engine.status.last_sync_time is not None


@pytest.mark.asyncio
async def test_remote_insert_is_applied_once(sessions):
    h = Harness(sessions)
    await h.start()
    e = _entry()
    row = await h.other.insert(to_wire(e))
    await h.settle()
    assert h.local_ids("2025-01-13") == [e.id]

    # 同一筆事件重送：不產生重複
    h.feed.publish(ChangeEvent(event_type="INSERT", table="schedule_entries", new=row))
    await h.settle()
    assert h.local_ids() == [e.id]
    assert h.ingestor.applied_events == 1


@pytest.mark.asyncio
async def test_event_dropped_while_previous_is_processing(sessions):
    h = Harness(sessions)
    await h.start()
    first, second = _entry(), _entry()
    h.feed.publish(ChangeEvent(event_type="INSERT", table="schedule_entries", new=to_wire(first)))
    h.feed.publish(ChangeEvent(event_type="INSERT", table="schedule_entries", new=to_wire(second)))
    await h.settle()
    assert h.ingestor.dropped_events == 1
    assert h.engine.status.dropped_events == 1
    assert h.local_ids() == [first.id]


@pytest.mark.asyncio
async def test_remote_update_moves_entry_to_new_week(sessions):
    h = Harness(sessions)
    await h.start()
    e = _entry(date="2025-01-15")
    await h.other.insert(to_wire(e))
    await h.settle()

    moved = e.model_copy(update={"date": date(2025, 1, 22), "day": None, "week_id": ""})
    await h.other.update(e.id, to_wire(moved))
    await h.settle()
    assert h.local_ids("2025-01-13") == []
    assert h.local_ids("2025-01-20") == [e.id]
    assert h.store.snapshot()["2025-01-20"][0].day == "wednesday"


@pytest.mark.asyncio
async def test_remote_delete_without_week_is_ignored(sessions):
    h = Harness(sessions)
    await h.start()
    e = _entry()
    await h.other.insert(to_wire(e))
    await h.settle()

    h.feed.publish(ChangeEvent(event_type="DELETE", table="schedule_entries", old={"id": e.id}))
    await h.settle()
    assert h.local_ids() == [e.id]

    await h.other.delete(e.id)
    await h.settle()
    assert h.local_ids() == []


@pytest.mark.asyncio
async def test_cleaner_filter_skips_other_cleaners(sessions):
    h = Harness(sessions, cleaner_filter="Amy")
    await h.start()
    amy = _entry(cleaner_names=["Amy", "Ben"])
    ben = _entry(cleaner_names=["Ben"])
    await h.other.insert(to_wire(ben))
    await h.settle()
    await h.other.insert(to_wire(amy))
    await h.settle()
    assert h.local_ids() == [amy.id]
    assert h.ingestor.dropped_events == 0


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(sessions):
    """重連延遲 1、2、3 秒；第三次仍失敗後為 DISCONNECTED 並回報錯誤"""
    h = Harness(sessions)
    await h.start()
    h.feed.disconnect()
    await h.ingestor.wait_idle()
    assert h.delays == [1.0, 2.0, 3.0]
    assert h.ingestor.state == SubscriptionState.DISCONNECTED
    assert not h.engine.status.is_connected
    assert len(h.errors) == 1
    assert isinstance(h.errors[0], RealtimeConnectionError)
    assert h.engine.status.error

    # 手動重新同步
    h.feed.reconnect()
    remote = _entry()
    await RemoteScheduleTable(sessions[0]).insert(to_wire(remote))
    await h.ingestor.resync()
    await h.ingestor.wait_idle()
    assert h.ingestor.state == SubscriptionState.SUBSCRIBED
    assert h.ingestor.reconnect_attempts == 0
    assert h.local_ids() == [remote.id]


@pytest.mark.asyncio
async def test_reconnect_succeeds_when_feed_returns(sessions):
    h = Harness(sessions)
    await h.start()
    h.feed.disconnect()
    h.feed.reconnect()
    await h.ingestor.wait_idle()
    assert h.delays == [1.0]
    assert h.ingestor.state == SubscriptionState.SUBSCRIBED
    assert h.ingestor.reconnect_attempts == 0

    e = _entry()
    await h.other.insert(to_wire(e))
    await h.settle()
    assert h.local_ids() == [e.id]


@pytest.mark.asyncio
async def test_stop_closes_subscription(sessions):
    h = Harness(sessions)
    await h.start()
    await h.ingestor.stop()
    assert h.ingestor.state == SubscriptionState.CLOSED
    assert not h.engine.status.is_connected
    assert h.feed.subscriber_count == 0

    await h.other.insert(to_wire(_entry()))
    await h.settle()
    assert h.local_ids() == []


@pytest.mark.asyncio
async def test_local_write_echo_is_not_applied_twice(sessions):
    """本機新增推到遠端後收到自己的 INSERT 事件：不重複、不再推回"""
    h = Harness(sessions, with_sync=True)
    await h.start()
    e = await h.engine.add_entry("2025-01-13", _entry())
    await h.settle()
    assert h.local_ids() == [e.id]
    assert h.ingestor.applied_events == 0
    assert [r["id"] for r in await h.table.select()] == [e.id]
    assert not h.engine.is_unsynced(e.id)
