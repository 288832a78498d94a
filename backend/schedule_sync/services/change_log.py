"""排班異動紀錄（schedule_change_logs）。寫入失敗只記 log，不影響排班異動本身。"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from schedule_sync.models import CHANGE_TYPES, ScheduleChangeLog
from schedule_sync.schemas import ScheduleEntry

logger = logging.getLogger(__name__)

DEFAULT_CHANGED_BY = "Supervisor"

# 比對哪些欄位變動時使用的中文名稱
FIELD_LABELS = {
    "client_name": "客戶",
    "building_name": "案場",
    "cleaner_names": "清潔員",
    "hours": "工時",
    "date": "日期",
    "start_time": "開始時間",
    "end_time": "結束時間",
    "status": "狀態",
    "notes": "備註",
    "payment_type": "計薪方式",
    "hourly_rate": "時薪",
    "flat_rate_amount": "包案金額",
    "bonus_amount": "獎金",
    "deductions": "扣款",
}


def describe_changes(before: ScheduleEntry, after: ScheduleEntry) -> List[str]:
    """列出有變動的欄位（中文名稱）"""
    changes = []
    for name, label in FIELD_LABELS.items():
        if getattr(before, name) != getattr(after, name):
            changes.append(label)
    return changes


def _place(entry: ScheduleEntry) -> str:
    return f"{entry.client_name} - {entry.building_name}"


class ChangeLogger:
    def __init__(self, session_factory: async_sessionmaker, changed_by: str = DEFAULT_CHANGED_BY):
        self._session_factory = session_factory
        self.changed_by = changed_by

    async def log(
        self,
        change_type: str,
        description: str,
        entry: Optional[ScheduleEntry] = None,
        metadata: Optional[Dict[str, Any]] = None,
        changed_by: Optional[str] = None,
    ) -> Optional[ScheduleChangeLog]:
        if change_type not in CHANGE_TYPES:
            logger.warning("未知的異動類型：%s", change_type)
        row = ScheduleChangeLog(
            change_type=change_type,
            description=description,
            changed_by=changed_by or self.changed_by,
            client_name=entry.client_name if entry else None,
            building_name=entry.building_name if entry else None,
            cleaner_names=list(entry.cleaners) if entry else None,
            shift_date=entry.date.isoformat() if entry and entry.date else None,
            shift_id=entry.id if entry else None,
            metadata_json=metadata,
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
                await db.refresh(row)
            return row
        except SQLAlchemyError:
            logger.exception("寫入排班異動紀錄失敗：%s %s", change_type, entry.id if entry else "")
            return None

    async def shift_created(self, entry: ScheduleEntry):
        return await self.log(
            "shift_created",
            f"新增班別：{', '.join(entry.cleaners)} 於 {_place(entry)}（{entry.hours} 小時）",
            entry,
            metadata={"hours": entry.hours},
        )

    async def shift_edited(self, before: ScheduleEntry, after: ScheduleEntry):
        if before.status != after.status:
            return await self.log(
                "shift_status_changed",
                f"{_place(after)} 狀態由 {before.status} 改為 {after.status}",
                after,
                metadata={"from": before.status, "to": after.status},
            )
        changes = describe_changes(before, after)
        return await self.log(
            "shift_edited",
            f"修改班別：{', '.join(after.cleaners)} 於 {_place(after)}，變更：{', '.join(changes) or '無'}",
            after,
            metadata={"changes": changes},
        )

    async def shift_deleted(self, entry: ScheduleEntry):
        return await self.log(
            "shift_deleted",
            f"刪除班別：{', '.join(entry.cleaners)} 於 {_place(entry)}",
            entry,
        )

    async def cleaner_added(self, entry: ScheduleEntry, cleaner_name: str):
        return await self.log(
            "cleaner_added",
            f"{cleaner_name} 加入 {_place(entry)}",
            entry,
            metadata={"cleaner": cleaner_name},
        )

    async def cleaner_removed(self, entry: ScheduleEntry, cleaner_name: str):
        return await self.log(
            "cleaner_removed",
            f"{cleaner_name} 自 {_place(entry)} 移除",
            entry,
            metadata={"cleaner": cleaner_name},
        )

    async def list_recent(self, limit: int = 50, shift_date: Optional[str] = None) -> List[ScheduleChangeLog]:
        q = select(ScheduleChangeLog).order_by(ScheduleChangeLog.created_at.desc(), ScheduleChangeLog.id.desc())
        if shift_date:
            q = q.where(ScheduleChangeLog.shift_date == shift_date)
        async with self._session_factory() as db:
            r = await db.execute(q.limit(limit))
            return list(r.scalars().all())
