"""
遠端資料表（schedule_entries）的表格式操作：select / select_one / insert / update / delete。

錯誤一律包成 RemoteError：
- 主鍵重複 → code 23505
- id 不是 UUID → code 22P02（與 PostgreSQL uuid 欄位行為一致，SQLite 也照樣檢查）
- 其他資料庫錯誤 → 無 code，視為暫時性錯誤
寫入 commit 成功後才推播異動事件。
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from schedule_sync.errors import DUPLICATE_KEY_CODE, INVALID_TEXT_REPRESENTATION_CODE, RemoteError
from schedule_sync.models import ScheduleEntryRecord
from schedule_sync.schemas import ChangeEvent
from schedule_sync.services.change_feed import ChangeFeed
from schedule_sync.services.entry_codec import WIRE_FIELDS, is_valid_uuid

logger = logging.getLogger(__name__)

TABLE_NAME = "schedule_entries"
_COLUMNS = set(WIRE_FIELDS)


def record_to_row(record: ScheduleEntryRecord) -> Dict[str, Any]:
    row = {name: getattr(record, name) for name in WIRE_FIELDS}
    row["created_at"] = record.created_at
    row["updated_at"] = record.updated_at
    return row


def _check_id(entry_id: Any) -> str:
    if not is_valid_uuid(entry_id):
        raise RemoteError(
            f'invalid input syntax for type uuid: "{entry_id}"',
            code=INVALID_TEXT_REPRESENTATION_CODE,
        )
    return str(entry_id).strip()


def _integrity_code(exc: IntegrityError) -> Optional[str]:
    """asyncpg 帶 sqlstate；SQLite 只有訊息，UNIQUE 視為 23505"""
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code:
        return str(code)
    if "unique" in str(exc.orig).lower():
        return DUPLICATE_KEY_CODE
    return None


def _clean_values(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if k in _COLUMNS and k != "id"}


class RemoteScheduleTable:
    """schedule_entries 表格式 API；feed 為 None 時不推播"""

    table = TABLE_NAME

    def __init__(self, session_factory: async_sessionmaker, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self.feed = feed

    async def select(
        self,
        filters: Optional[Dict[str, Any]] = None,
        contains: Optional[Dict[str, Iterable[str]]] = None,
        order_by: Sequence[str] = ("date", "start_time"),
    ) -> List[Dict[str, Any]]:
        """filters 為等值條件（SQL）；contains 為清單欄位包含條件（例 cleaner_names 含某人），取回後再篩"""
        q = select(ScheduleEntryRecord)
        for name, value in (filters or {}).items():
            if name not in _COLUMNS:
                raise RemoteError(f"未知欄位：{name}")
            q = q.where(getattr(ScheduleEntryRecord, name) == value)
        for name in order_by:
            if name in _COLUMNS:
                q = q.order_by(getattr(ScheduleEntryRecord, name))
        q = q.order_by(ScheduleEntryRecord.id)
        try:
            async with self._session_factory() as db:
                r = await db.execute(q)
                rows = [record_to_row(rec) for rec in r.scalars().all()]
        except SQLAlchemyError as exc:
            raise RemoteError(f"查詢 {self.table} 失敗：{exc}") from exc
        for name, wanted in (contains or {}).items():
            wanted = set(wanted or [])
            rows = [row for row in rows if wanted.issubset(set(row.get(name) or []))]
        return rows

    async def select_one(self, entry_id: str) -> Optional[Dict[str, Any]]:
        entry_id = _check_id(entry_id)
        try:
            async with self._session_factory() as db:
                rec = await db.get(ScheduleEntryRecord, entry_id)
                return record_to_row(rec) if rec else None
        except SQLAlchemyError as exc:
            raise RemoteError(f"查詢 {self.table} 失敗：{exc}") from exc

    async def insert(self, values: Dict[str, Any]) -> Dict[str, Any]:
        entry_id = _check_id(values.get("id"))
        try:
            async with self._session_factory() as db:
                rec = ScheduleEntryRecord(id=entry_id, **_clean_values(values))
                db.add(rec)
                await db.commit()
                await db.refresh(rec)
                row = record_to_row(rec)
        except IntegrityError as exc:
            if _integrity_code(exc) != DUPLICATE_KEY_CODE:
                raise RemoteError(f"新增 {self.table} 違反約束：{exc.orig}", code=_integrity_code(exc)) from exc
            raise RemoteError(
                f'duplicate key value violates unique constraint "{self.table}_pkey"',
                code=DUPLICATE_KEY_CODE,
                details=f"Key (id)=({entry_id}) already exists.",
            ) from exc
        except SQLAlchemyError as exc:
            raise RemoteError(f"新增 {self.table} 失敗：{exc}") from exc
        self._publish("INSERT", new=row)
        return row

    async def update(self, entry_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """依 id 更新；沒有這筆回傳 None"""
        entry_id = _check_id(entry_id)
        try:
            async with self._session_factory() as db:
                rec = await db.get(ScheduleEntryRecord, entry_id)
                if rec is None:
                    return None
                old = record_to_row(rec)
                for k, v in _clean_values(values).items():
                    setattr(rec, k, v)
                rec.updated_at = datetime.utcnow()
                await db.commit()
                await db.refresh(rec)
                row = record_to_row(rec)
        except SQLAlchemyError as exc:
            raise RemoteError(f"更新 {self.table} 失敗：{exc}") from exc
        self._publish("UPDATE", new=row, old=old)
        return row

    async def delete(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """依 id 刪除；回傳被刪的資料列，沒有這筆回傳 None"""
        entry_id = _check_id(entry_id)
        try:
            async with self._session_factory() as db:
                rec = await db.get(ScheduleEntryRecord, entry_id)
                if rec is None:
                    return None
                old = record_to_row(rec)
                await db.delete(rec)
                await db.commit()
        except SQLAlchemyError as exc:
            raise RemoteError(f"刪除 {self.table} 失敗：{exc}") from exc
        self._publish("DELETE", old=old)
        return old

    async def delete_many(self, entry_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = [_check_id(i) for i in entry_ids]
        if not ids:
            return []
        try:
            async with self._session_factory() as db:
                r = await db.execute(select(ScheduleEntryRecord).where(ScheduleEntryRecord.id.in_(ids)))
                olds = [record_to_row(rec) for rec in r.scalars().all()]
                await db.execute(delete(ScheduleEntryRecord).where(ScheduleEntryRecord.id.in_(ids)))
                await db.commit()
        except SQLAlchemyError as exc:
            raise RemoteError(f"刪除 {self.table} 失敗：{exc}") from exc
        for old in olds:
            self._publish("DELETE", old=old)
        return olds

    def _publish(self, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        if self.feed is None:
            return
        event = ChangeEvent(event_type=event_type, table=self.table, new=new, old=old)
        delivered = self.feed.publish(event)
        logger.debug("%s %s 推播 %s 個 handler", event_type, (new or old or {}).get("id"), delivered)
