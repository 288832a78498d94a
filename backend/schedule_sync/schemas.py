"""資料結構 - Pydantic（排班條目、統計、同步狀態、即時異動事件、API 請求）。
排班條目屬性一律 snake_case；本機文件與 API 以 camelCase 別名序列化（clientName、weekId ...）。"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from schedule_sync.models import ENTRY_STATUSES, PRIORITIES

# 別名：欄位名 date 與型別 date 會觸發 Pydantic 的 field name clashing，改用 DateType 註解
DateType = date

UNASSIGNED_CLEANER = "UNASSIGNED"


# ---------- 數值 / 欄位正規化（供 validator 與 codec 共用） ----------


def to_number(value: Any, default: float = 0.0, minimum: Optional[float] = 0.0) -> float:
    """數字或數字字串轉 float；無法轉換回傳 default；低於 minimum 夾到 minimum"""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default
    if number != number:  # NaN
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def normalize_payment_type(value: Any) -> str:
    text = str(value or "").strip().lower().replace("-", "_")
    if text in ("flat_rate", "flatrate", "flat"):
        return "flat_rate"
    return "hourly"


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower().replace("_", "-")
    return text if text in ENTRY_STATUSES else "scheduled"


def normalize_priority(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in PRIORITIES else "medium"


def normalize_names(value: Any) -> List[str]:
    """None / 字串 / 清單 → 去空白、去重複、保留順序"""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    out: List[str] = []
    for v in value:
        name = str(v or "").strip()
        if name and name not in out:
            out.append(name)
    return out


def lenient_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _non_negative(v):
    return to_number(v)


def _non_negative_optional(v):
    if v is None or v == "":
        return None
    return to_number(v)


# ---------- 排班條目 ----------
class ScheduleEntry(BaseModel):
    """單筆排班：某客戶某案場某日，一到多位清潔員。"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field("", description="UUID，永久不變")
    client_name: str = Field("", description="客戶名稱（必填）")
    building_name: str = Field("", description="案場 / 大樓名稱（必填）")
    cleaner_name: str = Field("", description="相容舊版：清潔員清單第一位")
    cleaner_names: List[str] = Field(default_factory=list, description="指派清潔員")
    cleaner_ids: List[str] = Field(default_factory=list)
    cleaner_hours: Dict[str, float] = Field(default_factory=dict, description="個別清潔員工時（未填則用 hours）")
    hours: float = Field(0, description="工時")
    day: Optional[str] = Field(None, description="monday ~ sunday，由 date 推算")
    date: Optional[DateType] = Field(None, description="YYYY-MM-DD")
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: str = Field("scheduled", description="scheduled / in-progress / completed / cancelled")
    week_id: str = Field("", description="該週週一 YYYY-MM-DD，由 date 推算")
    notes: Optional[str] = None
    priority: str = "medium"
    is_recurring: bool = False
    recurring_id: Optional[str] = None
    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    is_project: bool = False
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    address: Optional[str] = None
    payment_type: str = Field("hourly", description="hourly / flat_rate")
    hourly_rate: float = Field(15, description="時薪")
    flat_rate_amount: float = Field(0, description="包案金額（整筆，不乘工時）")
    overtime_rate: Optional[float] = Field(None, description="加班倍率，未填為 1.5")
    bonus_amount: float = 0
    deductions: float = 0

    @field_validator("hours", "hourly_rate", "flat_rate_amount", "bonus_amount", "deductions", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return _non_negative(v)

    @field_validator("overtime_rate", mode="before")
    @classmethod
    def coerce_overtime_rate(cls, v):
        return _non_negative_optional(v)

    @field_validator("id", "client_name", "building_name", "cleaner_name", mode="before")
    @classmethod
    def check_strip_text(cls, v):
        return str(v).strip() if v is not None else ""

    @field_validator("cleaner_names", "cleaner_ids", "tags", mode="before")
    @classmethod
    def check_names(cls, v):
        return normalize_names(v)

    @field_validator("cleaner_hours", mode="before")
    @classmethod
    def check_cleaner_hours(cls, v):
        if not isinstance(v, dict):
            return {}
        return {str(k): to_number(h) for k, h in v.items() if str(k).strip()}

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, v):
        return lenient_date(v)

    @field_validator("status", mode="before")
    @classmethod
    def check_status(cls, v):
        return normalize_status(v)

    @field_validator("payment_type", mode="before")
    @classmethod
    def check_payment_type(cls, v):
        return normalize_payment_type(v)

    @field_validator("priority", mode="before")
    @classmethod
    def check_priority(cls, v):
        return normalize_priority(v)

    @field_validator("day", mode="before")
    @classmethod
    def check_day(cls, v):
        return str(v).strip().lower() if v else None

    @field_validator("estimated_duration", "actual_duration", mode="before")
    @classmethod
    def check_duration(cls, v):
        if v is None or v == "":
            return None
        return int(to_number(v))

    @property
    def cleaners(self) -> List[str]:
        """指派清潔員（舊資料只有 cleaner_name 時退回單人）"""
        if self.cleaner_names:
            return list(self.cleaner_names)
        return [self.cleaner_name] if self.cleaner_name else []


class ScheduleEntryUpdate(BaseModel):
    """部分更新：只帶要改的欄位（model_dump(exclude_unset=True)）"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_name: Optional[str] = None
    building_name: Optional[str] = None
    cleaner_name: Optional[str] = None
    cleaner_names: Optional[List[str]] = None
    cleaner_ids: Optional[List[str]] = None
    cleaner_hours: Optional[Dict[str, float]] = None
    hours: Optional[float] = None
    date: Optional[DateType] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    priority: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurring_id: Optional[str] = None
    estimated_duration: Optional[int] = None
    actual_duration: Optional[int] = None
    tags: Optional[List[str]] = None
    is_project: Optional[bool] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    address: Optional[str] = None
    payment_type: Optional[str] = None
    hourly_rate: Optional[float] = None
    flat_rate_amount: Optional[float] = None
    overtime_rate: Optional[float] = None
    bonus_amount: Optional[float] = None
    deductions: Optional[float] = None

    @field_validator("hours", "hourly_rate", "flat_rate_amount", "bonus_amount", "deductions", "overtime_rate", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return _non_negative_optional(v)

    @field_validator("status", mode="before")
    @classmethod
    def check_status(cls, v):
        return normalize_status(v) if v is not None else None

    @field_validator("payment_type", mode="before")
    @classmethod
    def check_payment_type(cls, v):
        return normalize_payment_type(v) if v is not None else None

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, v):
        if v is None:
            return None
        d = lenient_date(v)
        if d is None:
            raise ValueError("date 格式須為 YYYY-MM-DD")
        return d


# ---------- 統計 / 計薪 ----------
class WorkerPay(BaseModel):
    """單一清潔員當週計薪明細"""
    cleaner_name: str
    total_hours: Decimal = Decimal("0")
    regular_hours: Decimal = Decimal("0")
    overtime_hours: Decimal = Decimal("0")
    regular_pay: Decimal = Decimal("0")
    overtime_pay: Decimal = Decimal("0")
    flat_rate_pay: Decimal = Decimal("0")
    bonus_amount: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    total_pay: Decimal = Decimal("0")
    hourly_jobs: int = 0
    flat_rate_jobs: int = 0


class ScheduleStats(BaseModel):
    """
    週統計（不落表，依條目指紋快取）。
    total_hours 以條目計（多人條目只算一次）；total_cleaner_hours 以清潔員計（多人條目每人各算一次）。
    regular_hours / overtime_hours 也以清潔員計，只含時薪條目，所以沒有包案時 regular + overtime == total_cleaner_hours。
    """
    total_hours: Decimal = Decimal("0")
    total_cleaner_hours: Decimal = Decimal("0")
    regular_hours: Decimal = Decimal("0")
    overtime_hours: Decimal = Decimal("0")
    total_entries: int = 0
    completed_entries: int = 0
    pending_entries: int = 0
    utilization_rate: Decimal = Decimal("0")
    average_hours_per_cleaner: Decimal = Decimal("0")
    total_hourly_jobs: int = 0
    total_flat_rate_jobs: int = 0
    total_hourly_amount: Decimal = Decimal("0")
    total_flat_rate_amount: Decimal = Decimal("0")
    total_bonus_amount: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    overtime_amount: Decimal = Decimal("0")
    total_payroll: Decimal = Decimal("0")
    average_hourly_rate: Decimal = Decimal("0")
    workers: Dict[str, WorkerPay] = Field(default_factory=dict)


class PaymentSummary(BaseModel):
    week_id: str
    total_jobs: int = 0
    hourly_jobs: int = 0
    flat_rate_jobs: int = 0
    total_hourly_amount: Decimal = Decimal("0")
    total_flat_rate_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    completed_jobs: int = 0
    pending_jobs: int = 0


class PeriodPayroll(BaseModel):
    """某清潔員某期間（可跨多週）的薪資；加班以每週 40 小時為界"""
    cleaner_name: str
    total_hours: Decimal = Decimal("0")
    regular_hours: Decimal = Decimal("0")
    overtime_hours: Decimal = Decimal("0")
    regular_pay: Decimal = Decimal("0")
    overtime_pay: Decimal = Decimal("0")
    flat_rate_pay: Decimal = Decimal("0")
    bonus_amount: Decimal = Decimal("0")
    deductions: Decimal = Decimal("0")
    total_pay: Decimal = Decimal("0")
    hourly_jobs: int = 0
    flat_rate_jobs: int = 0
    completed_hours: Decimal = Decimal("0")
    scheduled_hours: Decimal = Decimal("0")


# ---------- 同步狀態 ----------
class SyncRecord(BaseModel):
    """單筆進行中（或失敗待重送）的遠端操作，只存在記憶體"""
    entry_id: str
    week_id: str
    operation: str
    state: str = "pending"  # pending / failed
    attempts: int = 0
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncStatus(BaseModel):
    is_connected: bool = False
    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    error: Optional[str] = None
    pending_count: int = 0
    unsynced_entry_ids: List[str] = Field(default_factory=list)
    cache_version: int = 0
    realtime_state: str = "disconnected"
    dropped_events: int = 0


# ---------- 即時異動事件 ----------
class ChangeEvent(BaseModel):
    """遠端資料表異動：INSERT / UPDATE 帶 new，DELETE 帶 old"""
    event_type: str
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = Field(default_factory=datetime.utcnow)


# ---------- API 請求 ----------
class BulkUpdateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    entry_ids: List[str] = Field(..., min_length=1, description="要修改的條目 ID")
    updates: ScheduleEntryUpdate


class BulkDeleteRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    entry_ids: List[str] = Field(..., min_length=1, description="要刪除的條目 ID")


class CleanerAssignRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    cleaner_name: str = Field(..., min_length=1)
    cleaner_id: Optional[str] = None


class PaymentUpdateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payment_type: str = Field(..., description="hourly / flat_rate")
    amount: float = Field(..., ge=0, description="hourly 為時薪；flat_rate 為包案金額")


class BulkResult(BaseModel):
    affected: int


class ChangeLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    change_type: str
    description: str
    changed_by: str
    client_name: Optional[str] = None
    building_name: Optional[str] = None
    cleaner_names: Optional[List[str]] = None
    shift_date: Optional[str] = None
    shift_id: Optional[str] = None
    metadata_json: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    created_at: datetime
