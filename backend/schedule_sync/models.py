"""資料庫模型 - 排班條目（遠端正式資料）、排班異動紀錄、本機 key-value 持久層。
schedule_entries.id 為 UUID 字串，永久不變；week_id 一律由 date 推算（週一為起點）。"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy import String, Text, DateTime, Boolean, Integer, JSON, Float
from sqlalchemy.orm import Mapped, mapped_column
from schedule_sync.database import Base, LocalBase


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
ENTRY_STATUSES = ("scheduled", "in-progress", "completed", "cancelled")
PAYMENT_TYPES = ("hourly", "flat_rate")
PRIORITIES = ("low", "medium", "high")
CHANGE_TYPES = (
    "shift_created",
    "shift_edited",
    "shift_deleted",
    "shift_status_changed",
    "cleaner_added",
    "cleaner_removed",
)


class ScheduleEntryRecord(Base):
    """排班條目（遠端 schedule_entries）：某案場某日的一筆工作指派。"""
    __tablename__ = "schedule_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="UUID，永久不變")
    client_name: Mapped[str] = mapped_column(String(200), comment="客戶名稱")
    building_name: Mapped[str] = mapped_column(String(200), comment="案場 / 大樓名稱")
    cleaner_name: Mapped[str] = mapped_column(String(100), comment="相容舊版：第一位清潔員")
    cleaner_names: Mapped[List[str]] = mapped_column(JSON, default=list, comment="指派清潔員（至少一位）")
    cleaner_ids: Mapped[List[str]] = mapped_column(JSON, default=list, comment="清潔員 ID")
    cleaner_hours: Mapped[Optional[dict]] = mapped_column(JSON, default=dict, comment="個別清潔員工時")
    hours: Mapped[float] = mapped_column(Float, default=0, comment="工時")
    day: Mapped[str] = mapped_column(String(10), comment="monday ~ sunday")
    date: Mapped[str] = mapped_column(String(10), index=True, comment="YYYY-MM-DD")
    start_time: Mapped[Optional[str]] = mapped_column(String(5), comment="HH:MM")
    end_time: Mapped[Optional[str]] = mapped_column(String(5), comment="HH:MM")
    status: Mapped[str] = mapped_column(String(20), default="scheduled", comment="scheduled / in-progress / completed / cancelled")
    week_id: Mapped[str] = mapped_column(String(10), index=True, comment="該週週一 YYYY-MM-DD")
    notes: Mapped[Optional[str]] = mapped_column(Text, comment="備註")
    priority: Mapped[str] = mapped_column(String(10), default="medium", comment="low / medium / high")
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurring_id: Mapped[Optional[str]] = mapped_column(String(64))
    estimated_duration: Mapped[Optional[int]] = mapped_column(Integer)
    actual_duration: Mapped[Optional[int]] = mapped_column(Integer)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    is_project: Mapped[bool] = mapped_column(Boolean, default=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(64))
    project_name: Mapped[Optional[str]] = mapped_column(String(200))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    payment_type: Mapped[str] = mapped_column(String(20), default="hourly", comment="hourly / flat_rate")
    flat_rate_amount: Mapped[float] = mapped_column(Float, default=0, comment="包案金額（不乘工時）")
    hourly_rate: Mapped[float] = mapped_column(Float, default=15, comment="時薪")
    overtime_rate: Mapped[Optional[float]] = mapped_column(Float, comment="加班倍率，預設 1.5")
    bonus_amount: Mapped[float] = mapped_column(Float, default=0, comment="獎金")
    deductions: Mapped[float] = mapped_column(Float, default=0, comment="扣款")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScheduleChangeLog(Base):
    """排班異動紀錄：新增/修改/刪除班別、增減清潔員、狀態變更。"""
    __tablename__ = "schedule_change_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    change_type: Mapped[str] = mapped_column(String(40), index=True, comment="shift_created / shift_edited / ...")
    description: Mapped[str] = mapped_column(Text, comment="異動說明")
    changed_by: Mapped[str] = mapped_column(String(100), default="Supervisor")
    client_name: Mapped[Optional[str]] = mapped_column(String(200))
    building_name: Mapped[Optional[str]] = mapped_column(String(200))
    cleaner_names: Mapped[Optional[List[str]]] = mapped_column(JSON)
    shift_date: Mapped[Optional[str]] = mapped_column(String(10), index=True)
    shift_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class LocalKeyValue(LocalBase):
    """本機 key-value：整份週排班文件序列化後存在單一 key。"""
    __tablename__ = "local_kv_store"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, comment="JSON 字串")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
