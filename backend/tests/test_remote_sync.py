"""
遠端同步測試（記憶體 SQLite 當遠端）。
覆蓋：重試與指數退避、用盡拋 SyncFailedError、主鍵重複視為成功、id 錯誤不重試、
update 找不到改 insert、同一條目同時只送一次、單次請求逾時。
"""
import asyncio
import uuid

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from schedule_sync.database import Base
from schedule_sync.errors import InvalidEntryIdError, RemoteError, SyncFailedError
from schedule_sync.schemas import ScheduleEntry
from schedule_sync.services.entry_codec import to_wire
from schedule_sync.services.remote_sync import RemoteSyncClient
from schedule_sync.services.remote_table import RemoteScheduleTable
from schedule_sync.utils.single_flight import SingleFlight


@pytest.fixture
async def remote_sessions():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield async_session
    await engine.dispose()


def _entry(**kw) -> ScheduleEntry:
    data = dict(
        id=str(uuid.uuid4()),
        client_name="大安物業",
        building_name="A 棟",
        cleaner_names=["王小明"],
        hours=4,
        date="2025-01-15",
    )
    data.update(kw)
    return ScheduleEntry(**data)


class FlakyTable(RemoteScheduleTable):
    """前 failures 次 insert 丟暫時性錯誤"""

    def __init__(self, session_factory, failures: int = 0, code=None):
        super().__init__(session_factory)
        self.failures = failures
        self.code = code
        self.insert_calls = 0

    async def insert(self, values):
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise RemoteError("connection reset", code=self.code)
        return await super().insert(values)


class SlowTable(RemoteScheduleTable):
    def __init__(self, session_factory, delay: float):
        super().__init__(session_factory)
        self.delay = delay
        self.insert_calls = 0

    async def select_one(self, entry_id):
        await asyncio.sleep(self.delay)
        return await super().select_one(entry_id)

    async def insert(self, values):
        self.insert_calls += 1
        return await super().insert(values)


def _client(table, sleeps: list, **kw) -> RemoteSyncClient:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    kw.setdefault("max_retries", 3)
    kw.setdefault("backoff_base", 2.0)
    return RemoteSyncClient(table, sleep=fake_sleep, **kw)


@pytest.mark.asyncio
async def test_insert_retries_with_exponential_backoff(remote_sessions):
    """前兩次失敗、第三次成功：退避 2 秒、4 秒，遠端只有一筆"""
    table = FlakyTable(remote_sessions, failures=2)
    sleeps = []
    e = _entry()
    row = await _client(table, sleeps).sync(e, "insert")
    assert row["id"] == e.id
    assert sleeps == [2.0, 4.0]
    assert len(await table.select()) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_raise_sync_failed(remote_sessions):
    table = FlakyTable(remote_sessions, failures=99)
    sleeps = []
    with pytest.raises(SyncFailedError) as exc_info:
        await _client(table, sleeps).sync(_entry(), "insert")
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, RemoteError)
    assert table.insert_calls == 3
    assert sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_duplicate_key_counts_as_success(remote_sessions):
    table = FlakyTable(remote_sessions, failures=1, code="23505")
    sleeps = []
    assert await _client(table, sleeps).sync(_entry(), "insert") is None
    assert table.insert_calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_invalid_identifier_is_not_retried(remote_sessions):
    table = FlakyTable(remote_sessions, failures=5, code="22P02")
    sleeps = []
    with pytest.raises(InvalidEntryIdError):
        await _client(table, sleeps).sync(_entry(), "insert")
    assert table.insert_calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_non_uuid_id_rejected_before_request(remote_sessions):
    table = FlakyTable(remote_sessions)
    with pytest.raises(InvalidEntryIdError):
        await _client(table, []).sync(_entry(id="e1"), "insert")
    with pytest.raises(InvalidEntryIdError):
        await _client(table, []).sync(_entry(id="e1"), "delete")
    assert table.insert_calls == 0


@pytest.mark.asyncio
async def test_insert_existing_row_is_success(remote_sessions):
    table = FlakyTable(remote_sessions)
    client = _client(table, [])
    e = _entry()
    await client.sync(e, "insert")
    row = await client.sync(e, "insert")
    assert row["id"] == e.id
    assert table.insert_calls == 1


@pytest.mark.asyncio
async def test_update_falls_back_to_insert(remote_sessions):
    table = RemoteScheduleTable(remote_sessions)
    client = _client(table, [])
    e = _entry(hours=4)
    row = await client.sync(e, "update")
    assert row["hours"] == 4

    row = await client.sync(e.model_copy(update={"hours": 6.5}), "update")
    assert row["hours"] == 6.5
    rows = await table.select()
    assert [r["id"] for r in rows] == [e.id]


@pytest.mark.asyncio
async def test_delete_missing_row_succeeds(remote_sessions):
    table = RemoteScheduleTable(remote_sessions)
    client = _client(table, [])
    assert await client.sync(_entry(), "delete") is None

    e = _entry()
    await client.sync(e, "insert")
    old = await client.sync(e, "delete")
    assert old["id"] == e.id
    assert await table.select() == []


@pytest.mark.asyncio
async def test_concurrent_sync_for_same_entry_is_coalesced(remote_sessions):
    table = SlowTable(remote_sessions, delay=0.05)
    client = _client(table, [])
    e = _entry()
    first = asyncio.create_task(client.sync(e, "insert"))
    second = asyncio.create_task(client.sync(e, "insert"))
    await asyncio.sleep(0.01)
    assert client.is_syncing(e.id)
    r1, r2 = await asyncio.gather(first, second)
    assert r1 == r2
    assert table.insert_calls == 1
    assert not client.is_syncing()


@pytest.mark.asyncio
async def test_request_timeout_is_retried(remote_sessions):
    table = SlowTable(remote_sessions, delay=1.0)
    sleeps = []
    client = _client(table, sleeps, max_retries=2, request_timeout=0.05)
    with pytest.raises(SyncFailedError) as exc_info:
        await client.sync(_entry(), "insert")
    assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_unknown_operation_rejected(remote_sessions):
    with pytest.raises(ValueError):
        await _client(RemoteScheduleTable(remote_sessions), []).sync(_entry(), "upsert")


# ---------- 遠端資料表 ----------


@pytest.mark.asyncio
async def test_table_duplicate_and_constraint_errors(remote_sessions):
    table = RemoteScheduleTable(remote_sessions)
    row = to_wire(_entry())
    await table.insert(row)
    with pytest.raises(RemoteError) as exc_info:
        await table.insert(row)
    assert exc_info.value.is_duplicate_key

    # 缺 NOT NULL 欄位不能當成主鍵重複
    with pytest.raises(RemoteError) as exc_info:
        await table.insert({"id": str(uuid.uuid4())})
    assert not exc_info.value.is_duplicate_key

    with pytest.raises(RemoteError) as exc_info:
        await table.select_one("e1")
    assert exc_info.value.is_invalid_identifier


@pytest.mark.asyncio
async def test_table_select_filters(remote_sessions):
    table = RemoteScheduleTable(remote_sessions)
    amy = _entry(cleaner_names=["Amy", "Ben"], date="2025-01-14")
    ben = _entry(cleaner_names=["Ben"], date="2025-01-21")
    await table.insert(to_wire(amy))
    await table.insert(to_wire(ben))

    assert [r["id"] for r in await table.select(contains={"cleaner_names": ["Amy"]})] == [amy.id]
    assert [r["id"] for r in await table.select(filters={"week_id": "2025-01-20"})] == [ben.id]
    assert len(await table.select(contains={"cleaner_names": ["Ben"]})) == 2
    assert await table.update(str(uuid.uuid4()), {"hours": 1}) is None
    assert len(await table.delete_many([amy.id, ben.id])) == 2


# ---------- single-flight ----------


@pytest.mark.asyncio
async def test_single_flight_try_run_drops_when_busy():
    flight = SingleFlight()
    gate = asyncio.Event()

    async def work():
        await gate.wait()
        return "done"

    running = asyncio.create_task(flight.run("k", work))
    await asyncio.sleep(0)
    assert flight.is_running("k")
    assert await flight.try_run("k", work) == (False, None)
    gate.set()
    assert await running == "done"
    assert await flight.try_run("k", work) == (True, "done")


@pytest.mark.asyncio
async def test_single_flight_shares_exception():
    flight = SingleFlight()
    calls = []

    async def boom():
        calls.append(1)
        await asyncio.sleep(0.01)
        raise RuntimeError("x")

    results = await asyncio.gather(flight.run("k", boom), flight.run("k", boom), return_exceptions=True)
    assert all(isinstance(r, RuntimeError) for r in results)
    assert calls == [1]
    assert flight.running_keys == []
