"""
本機持久層：整份週排班文件（weekId → [條目]）序列化成 JSON，存在 local_kv_store 單一 key。

- save_all：立即覆寫，條目異動一律走這條；會取消尚未寫出的去抖動文件；寫入成功才更新工作階段狀態
- save_debounced：靜默期內多次呼叫只寫最後一份
- load_all：讀不到或內容壞掉回傳 {}；缺必填欄位的條目直接略過（記 warning）
- 寫入後可讀回比對（verify_after_save），不一致只記 log
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schedule_sync.config import settings
from schedule_sync.errors import LocalStoreError
from schedule_sync.models import LocalKeyValue
from schedule_sync.schemas import ScheduleEntry
from schedule_sync.services.entry_codec import from_local_many, to_local

logger = logging.getLogger(__name__)

WeeklySchedule = Dict[str, List[ScheduleEntry]]


def copy_schedule(schedule: WeeklySchedule) -> WeeklySchedule:
    """淺拷貝到清單層；條目本身視為不可變，異動時整筆替換"""
    return {week_id: list(entries) for week_id, entries in (schedule or {}).items()}


def dump_schedule(schedule: WeeklySchedule) -> str:
    doc = {week_id: [to_local(e) for e in entries] for week_id, entries in schedule.items()}
    return json.dumps(doc, ensure_ascii=False, sort_keys=True)


def parse_schedule(text: Optional[str]) -> WeeklySchedule:
    """JSON 文件 → WeeklySchedule；條目依推算出的 week_id 重新分組"""
    if not text:
        return {}
    try:
        doc = json.loads(text)
    except (TypeError, ValueError):
        logger.warning("本機排班文件無法解析，視為空白")
        return {}
    if not isinstance(doc, dict):
        logger.warning("本機排班文件格式不符（%s），視為空白", type(doc).__name__)
        return {}
    out: WeeklySchedule = {}
    for week_id, raws in doc.items():
        if not isinstance(raws, list):
            continue
        for entry in from_local_many(raws, week_id=week_id):
            out.setdefault(entry.week_id or week_id, []).append(entry)
    return out


class LocalScheduleStore:
    """本機 key-value 持久層（local_kv_store）。一個 App 一個實例，啟動時建立後注入。"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage_key: Optional[str] = None,
        debounce_ms: Optional[int] = None,
        verify_after_save: Optional[bool] = None,
    ):
        self._session_factory = session_factory
        self.storage_key = storage_key or settings.storage_key
        self.debounce_seconds = (settings.save_debounce_ms if debounce_ms is None else debounce_ms) / 1000.0
        self.verify_after_save = settings.verify_after_save if verify_after_save is None else verify_after_save
        self._schedule: WeeklySchedule = {}
        self._pending: Optional[WeeklySchedule] = None
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    # ---------- 讀 ----------

    async def load_all(self) -> WeeklySchedule:
        """先寫出尚未落地的去抖動文件，再從資料庫重讀"""
        await self.flush()
        try:
            async with self._session_factory() as db:
                text = await self._read_value(db, self.storage_key)
        except SQLAlchemyError:
            # 讀取失敗不覆蓋目前狀態，避免下一次存檔把資料清空
            logger.exception("讀取本機排班文件失敗，沿用目前工作階段的資料")
            return copy_schedule(self._schedule)
        self._schedule = parse_schedule(text)
        return copy_schedule(self._schedule)

    def snapshot(self) -> WeeklySchedule:
        """目前工作階段的狀態（最後一次 load / save 的內容），不碰資料庫"""
        return copy_schedule(self._schedule)

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None

    # ---------- 寫 ----------

    async def save_all(self, schedule: WeeklySchedule) -> None:
        """立即覆寫；失敗拋 LocalStoreError（該次異動視為失敗，工作階段狀態維持原樣）"""
        self._cancel_timer()
        self._pending = None
        doc = copy_schedule(schedule)
        await self._write(doc)
        self._schedule = doc

    def save_debounced(self, schedule: WeeklySchedule) -> None:
        """靜默期後才寫；需在事件迴圈內呼叫"""
        self._schedule = copy_schedule(schedule)
        self._pending = self._schedule
        self._cancel_timer()
        self._timer = asyncio.create_task(self._debounce_then_write())

    async def flush(self) -> None:
        """把尚未寫出的去抖動文件立刻寫出；若正在寫，等它寫完"""
        self._cancel_timer()
        doc, self._pending = self._pending, None
        if self._inflight is not None and not self._inflight.done():
            await self._inflight
        if doc is not None:
            await self._write(doc)

    async def reset(self) -> None:
        """管理用：清空本機所有 key"""
        self._cancel_timer()
        self._pending = None
        if self._inflight is not None and not self._inflight.done():
            await self._inflight
        async with self._write_lock:
            try:
                async with self._session_factory() as db:
                    await db.execute(delete(LocalKeyValue))
                    await db.commit()
            except SQLAlchemyError as exc:
                raise LocalStoreError(f"清空本機資料失敗：{exc}") from exc
        self._schedule = {}

    # ---------- 小型設定值（最後同步時間等） ----------

    async def get_meta(self, key: str) -> Optional[str]:
        try:
            async with self._session_factory() as db:
                return await self._read_value(db, key)
        except SQLAlchemyError:
            logger.exception("讀取本機設定失敗：%s", key)
            return None

    async def set_meta(self, key: str, value: str) -> None:
        async with self._write_lock:
            try:
                async with self._session_factory() as db:
                    await self._upsert(db, key, value)
                    await db.commit()
            except SQLAlchemyError as exc:
                raise LocalStoreError(f"寫入本機設定失敗：{key}") from exc

    # ---------- 內部 ----------

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounce_then_write(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        doc, self._pending = self._pending, None
        if doc is None:
            return
        # 已開始的寫入不因後續 save 而中斷
        self._inflight = asyncio.ensure_future(self._write_quietly(doc))
        await asyncio.shield(self._inflight)

    async def _write_quietly(self, schedule: WeeklySchedule) -> None:
        try:
            await self._write(schedule)
        except LocalStoreError:
            logger.exception("去抖動寫入本機排班文件失敗")

    async def _write(self, schedule: WeeklySchedule) -> None:
        text = dump_schedule(schedule)
        async with self._write_lock:
            try:
                async with self._session_factory() as db:
                    await self._upsert(db, self.storage_key, text)
                    await db.commit()
            except SQLAlchemyError as exc:
                raise LocalStoreError(f"寫入本機排班文件失敗：{exc}") from exc
            if self.verify_after_save:
                await self._verify(text)

    async def _verify(self, expected: str) -> None:
        try:
            async with self._session_factory() as db:
                stored = await self._read_value(db, self.storage_key)
        except SQLAlchemyError:
            logger.exception("本機排班文件讀回驗證失敗")
            return
        if stored != expected:
            logger.error("本機排班文件讀回內容不一致（key=%s）", self.storage_key)

    @staticmethod
    async def _read_value(db: AsyncSession, key: str) -> Optional[str]:
        r = await db.execute(select(LocalKeyValue).where(LocalKeyValue.key == key))
        row = r.scalar_one_or_none()
        return row.value if row else None

    @staticmethod
    async def _upsert(db: AsyncSession, key: str, value: str) -> None:
        r = await db.execute(select(LocalKeyValue).where(LocalKeyValue.key == key))
        row = r.scalar_one_or_none()
        if row:
            row.value = value
            row.updated_at = datetime.utcnow()
        else:
            db.add(LocalKeyValue(key=key, value=value))
        await db.flush()
