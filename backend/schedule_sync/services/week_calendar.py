"""
週別（week_id）與星期之純函式。

週別規則：
- 一週從週一開始（ISO 週），week_id 為該週週一的日期字串 YYYY-MM-DD。
- 每筆排班條目只屬於一個週別：week_id 一律由條目日期推算，不接受外部給的值。
- 例：2025-01-15（週三）→ week_id = 2025-01-13；2025-01-19（週日）→ 2025-01-13。
"""
from datetime import date, datetime, timedelta
from typing import List, Optional, Union

from schedule_sync.models import WEEKDAYS

DateLike = Union[date, datetime, str]


def parse_date(value: DateLike) -> date:
    """接受 date / datetime / 'YYYY-MM-DD'（可帶時間部分）；無法解析則 ValueError"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        # 2025-01-15T08:00:00Z 之類只取日期部分
        return date.fromisoformat(text[:10])
    raise ValueError(f"無法解析日期：{value!r}")


def try_parse_date(value) -> Optional[date]:
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        return None


def week_start(d: date) -> date:
    """該日所在週的週一"""
    return d - timedelta(days=d.weekday())


def week_id_of(value: DateLike) -> str:
    return week_start(parse_date(value)).isoformat()


def get_current_week_id(today: Optional[date] = None) -> str:
    return week_id_of(today or date.today())


def get_week_id_from_date(value: DateLike) -> str:
    """同 week_id_of；無法解析的日期直接拋 ValueError，不回退到本週，避免條目被塞錯週"""
    return week_id_of(value)


def weekday_name(value: DateLike) -> str:
    return WEEKDAYS[parse_date(value).weekday()]


def weekday_index(day: Optional[str]) -> int:
    """monday=0 ... sunday=6；未知值排最後"""
    try:
        return WEEKDAYS.index((day or "").lower())
    except ValueError:
        return len(WEEKDAYS)


def week_dates(week_id: str) -> List[date]:
    """週別內 7 天（週一到週日）"""
    monday = week_start(parse_date(week_id))
    return [monday + timedelta(days=i) for i in range(7)]


def is_valid_week_id(week_id: str) -> bool:
    d = try_parse_date(week_id)
    return d is not None and d.weekday() == 0 and d.isoformat() == week_id
