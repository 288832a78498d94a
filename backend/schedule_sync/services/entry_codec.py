"""
排班條目編解碼：本機文件（camelCase）⇄ ScheduleEntry ⇄ 遠端資料列（snake_case）。

規則：
- to_wire / from_wire 不會失敗：無法辨識的值一律套預設（payment_type=hourly、hourly_rate=15、status=scheduled）
- cleaner_name 與 cleaner_names 雙向對齊：清單為空時退回單人欄位，兩者皆空時補 UNASSIGNED
- week_id 與 day 一律由 date 推算，外部帶入的值只在沒有 date 時參考
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from schedule_sync.config import settings
from schedule_sync.errors import EntryValidationError, InvalidEntryIdError
from schedule_sync.schemas import ScheduleEntry, UNASSIGNED_CLEANER, normalize_names, to_number
from schedule_sync.services.week_calendar import (
    is_valid_week_id,
    week_dates,
    week_id_of,
    weekday_index,
    weekday_name,
)

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# 本機文件必填欄位（camelCase）；缺任何一個的條目載入時直接略過
LOCAL_REQUIRED_KEYS = ("id", "clientName", "buildingName")

# 遠端資料列欄位（與 ScheduleEntryRecord 對應，不含 created_at / updated_at）
WIRE_FIELDS = (
    "id",
    "client_name",
    "building_name",
    "cleaner_name",
    "cleaner_names",
    "cleaner_ids",
    "cleaner_hours",
    "hours",
    "day",
    "date",
    "start_time",
    "end_time",
    "status",
    "week_id",
    "notes",
    "priority",
    "is_recurring",
    "recurring_id",
    "estimated_duration",
    "actual_duration",
    "tags",
    "is_project",
    "project_id",
    "project_name",
    "address",
    "payment_type",
    "flat_rate_amount",
    "hourly_rate",
    "overtime_rate",
    "bonus_amount",
    "deductions",
)

_BOOL_FIELDS = ("is_recurring", "is_project")


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value.strip()))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def normalize_entry(entry: ScheduleEntry, week_id: Optional[str] = None) -> ScheduleEntry:
    """
    補齊條目不變量，回傳新物件（不修改傳入的 entry）：
    - 沒有 date 但有合法 week_id + day：由週別推回日期
    - day / week_id 由 date 推算
    - 清潔員清單不為空，cleaner_name = 清單第一位
    - hourly_rate 為 0 時用預設時薪；overtime_rate 未填用預設倍率，且不低於 1
    """
    data = entry.model_dump()

    if data.get("date") is None:
        wid = week_id or data.get("week_id")
        idx = weekday_index(data.get("day"))
        if wid and is_valid_week_id(wid) and idx < 7:
            data["date"] = week_dates(wid)[idx]
    if data.get("date") is not None:
        data["day"] = weekday_name(data["date"])
        data["week_id"] = week_id_of(data["date"])
    elif week_id:
        data["week_id"] = week_id

    cleaners = normalize_names(data.get("cleaner_names")) or normalize_names(data.get("cleaner_name"))
    if not cleaners:
        cleaners = [UNASSIGNED_CLEANER]
    data["cleaner_names"] = cleaners
    data["cleaner_name"] = cleaners[0]
    # 個別工時只保留目前指派的人
    data["cleaner_hours"] = {k: v for k, v in (data.get("cleaner_hours") or {}).items() if k in cleaners}

    if not data.get("hourly_rate"):
        data["hourly_rate"] = settings.default_hourly_rate
    if data.get("overtime_rate") is None:
        data["overtime_rate"] = settings.overtime_multiplier
    elif data["overtime_rate"] < 1:
        data["overtime_rate"] = 1.0
    return ScheduleEntry(**data)


def validate_entry(entry: ScheduleEntry, check_uuid: bool = True) -> None:
    """檢查 id、客戶、案場、日期必填；check_uuid 時 id 必須是 UUID（送遠端前）。不合格拋 EntryValidationError"""
    if not entry.id:
        raise InvalidEntryIdError("條目缺少 id")
    if check_uuid and not is_valid_uuid(entry.id):
        raise InvalidEntryIdError(f"條目 id 不是合法 UUID：{entry.id}")
    missing = [
        name
        for name, value in (
            ("client_name", entry.client_name),
            ("building_name", entry.building_name),
            ("date", entry.date),
        )
        if not value
    ]
    if missing:
        raise EntryValidationError(f"條目 {entry.id} 缺少必填欄位：{', '.join(missing)}")


def to_wire(entry: ScheduleEntry) -> Dict[str, Any]:
    """ScheduleEntry → 遠端資料列 dict（日期轉字串、補預設值）"""
    e = normalize_entry(entry)
    row = e.model_dump(include=set(WIRE_FIELDS))
    row["date"] = e.date.isoformat() if e.date else None
    row["cleaner_names"] = list(e.cleaner_names)
    row["cleaner_ids"] = list(e.cleaner_ids)
    row["cleaner_hours"] = dict(e.cleaner_hours)
    row["tags"] = list(e.tags)
    return row


def _record_to_dict(record: Any) -> Dict[str, Any]:
    if isinstance(record, Mapping):
        return dict(record)
    # ORM 物件（ScheduleEntryRecord）
    return {name: getattr(record, name, None) for name in WIRE_FIELDS}


def from_wire(record: Any) -> ScheduleEntry:
    """遠端資料列（dict 或 ScheduleEntryRecord）→ ScheduleEntry；任何欄位無法辨識都退回預設值"""
    data = _record_to_dict(record)
    # 遠端 JSON 欄位可能是 null
    for name in ("cleaner_names", "cleaner_ids", "tags"):
        if data.get(name) is None:
            data[name] = []
    if data.get("cleaner_hours") is None:
        data["cleaner_hours"] = {}
    for name in _BOOL_FIELDS:
        if name in data:
            data[name] = _to_bool(data[name])
    try:
        entry = ScheduleEntry.model_validate(data)
    except ValidationError as exc:
        logger.warning("遠端資料列欄位格式不符，改用預設值：id=%s %s", data.get("id"), exc.errors()[:3])
        keep = {k: data.get(k) for k in ("id", "client_name", "building_name", "cleaner_name", "cleaner_names", "date")}
        keep["hours"] = to_number(data.get("hours"))
        entry = ScheduleEntry.model_validate({k: v for k, v in keep.items() if v is not None})
    return normalize_entry(entry)


def to_local(entry: ScheduleEntry) -> Dict[str, Any]:
    """ScheduleEntry → 本機文件 dict（camelCase、JSON 相容）"""
    return entry.model_dump(by_alias=True, mode="json")


def from_local(raw: Any, week_id: Optional[str] = None) -> Optional[ScheduleEntry]:
    """本機文件 dict → ScheduleEntry；缺必填欄位或格式錯誤回傳 None（呼叫端略過）"""
    if not isinstance(raw, Mapping):
        return None
    if any(not raw.get(key) for key in LOCAL_REQUIRED_KEYS):
        return None
    try:
        entry = ScheduleEntry.model_validate(dict(raw))
    except ValidationError:
        return None
    return normalize_entry(entry, week_id=week_id)


def from_local_many(raws: Iterable[Any], week_id: Optional[str] = None) -> List[ScheduleEntry]:
    out: List[ScheduleEntry] = []
    for raw in raws or []:
        entry = from_local(raw, week_id=week_id)
        if entry is None:
            logger.warning("本機排班條目格式不符，略過：%s", raw.get("id") if isinstance(raw, Mapping) else raw)
            continue
        out.append(entry)
    return out
