"""排班同步引擎 API：本機持久層 + 記憶體快取 + 遠端同步 + 即時異動。"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from schedule_sync import config as app_config
from schedule_sync.database import (
    LocalSessionLocal,
    RemoteSessionLocal,
    init_local_db,
    init_remote_db,
    local_engine,
    remote_engine,
)
from schedule_sync.errors import RemoteError
from schedule_sync.routers import schedules
from schedule_sync.services.change_feed import ChangeFeed
from schedule_sync.services.change_log import ChangeLogger
from schedule_sync.services.local_store import LocalScheduleStore
from schedule_sync.services.realtime import RealtimeIngestor
from schedule_sync.services.remote_sync import RemoteSyncClient
from schedule_sync.services.remote_table import RemoteScheduleTable
from schedule_sync.services.schedule_cache import ScheduleCache
from schedule_sync.services.schedule_engine import ScheduleEngine

logger = logging.getLogger(__name__)
_scheduler: AsyncIOScheduler | None = None


async def build_services(
    remote_sessions: async_sessionmaker,
    local_sessions: async_sessionmaker,
    feed: Optional[ChangeFeed] = None,
) -> tuple[ScheduleEngine, RealtimeIngestor]:
    """組裝引擎與即時同步（各建一個，之後以參照傳遞）；尚未訂閱"""
    feed = feed or ChangeFeed()
    table = RemoteScheduleTable(remote_sessions, feed)
    engine = ScheduleEngine(
        store=LocalScheduleStore(local_sessions),
        cache=ScheduleCache(),
        sync_client=RemoteSyncClient(table),
        change_logger=ChangeLogger(remote_sessions),
    )
    await engine.load()
    ingestor = RealtimeIngestor(engine, feed, table)
    return engine, ingestor


async def _reconcile_job(ingestor: RealtimeIngestor):
    try:
        await ingestor.reconcile()
    except RemoteError as exc:
        logger.warning("定期對帳失敗：%s", exc)
    except Exception:
        logger.exception("定期對帳排程執行失敗")


async def _retry_unsynced_job(engine: ScheduleEngine):
    try:
        await engine.retry_unsynced()
    except Exception:
        logger.exception("未同步條目重送排程執行失敗")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 本機資料表跟著 App 建立；遠端正式環境由 Alembic 管理，這裡只補開發用 SQLite
    await init_local_db(local_engine)
    if remote_engine.dialect.name == "sqlite":
        await init_remote_db(remote_engine)
    engine, ingestor = await build_services(RemoteSessionLocal, LocalSessionLocal)
    app.state.engine = engine
    app.state.ingestor = ingestor
    await ingestor.start()

    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _reconcile_job,
        "interval",
        minutes=app_config.settings.reconcile_interval_minutes,
        args=[ingestor],
        id="schedule_reconcile",
        replace_existing=True,
    )
    _scheduler.add_job(
        _retry_unsynced_job,
        "interval",
        minutes=app_config.settings.retry_unsynced_interval_minutes,
        args=[engine],
        id="schedule_retry_unsynced",
        replace_existing=True,
    )
    _scheduler.start()
    yield
    if _scheduler:
        _scheduler.shutdown(wait=False)
    await ingestor.stop()
    await engine.drain()
    await engine.store.flush()


app = FastAPI(
    title=app_config.settings.app_name,
    description="Schedule sync engine",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8081"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(schedules.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc):
    if isinstance(exc, HTTPException):
        raise exc
    detail = str(exc) if exc else "Internal Server Error"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
    )


@app.get("/")
def home():
    return {"message": "排班同步引擎運行中"}
