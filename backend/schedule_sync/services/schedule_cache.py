"""記憶體快取：週條目（依 week_id）、週統計（每週只留最新指紋那一份）、版本號。只是本機持久層的投影，隨時可丟。"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from schedule_sync.schemas import ScheduleEntry, ScheduleStats
from schedule_sync.services.week_calendar import weekday_index

logger = logging.getLogger(__name__)


def sort_entries(entries: Iterable[ScheduleEntry]) -> List[ScheduleEntry]:
    """依星期、開始時間排序；沒有開始時間的排在當天最後"""
    return sorted(
        entries,
        key=lambda e: (weekday_index(e.day), e.start_time or "99:99", e.date.isoformat() if e.date else "", e.id),
    )


class ScheduleCache:
    def __init__(self):
        self._entries: Dict[str, List[ScheduleEntry]] = {}
        # week_id -> (指紋, 統計)
        self._stats: Dict[str, Tuple[str, ScheduleStats]] = {}
        self.version = 0

    def get_entries(self, week_id: str) -> Optional[List[ScheduleEntry]]:
        entries = self._entries.get(week_id)
        return list(entries) if entries is not None else None

    def put_entries(self, week_id: str, entries: Iterable[ScheduleEntry]) -> List[ScheduleEntry]:
        ordered = sort_entries(entries)
        self._entries[week_id] = ordered
        return list(ordered)

    def get_stats(self, week_id: str, fingerprint: str) -> Optional[ScheduleStats]:
        cached = self._stats.get(week_id)
        if cached is None or cached[0] != fingerprint:
            return None
        return cached[1]

    def put_stats(self, week_id: str, fingerprint: str, stats: ScheduleStats) -> None:
        self._stats[week_id] = (fingerprint, stats)

    @property
    def stats_size(self) -> int:
        return len(self._stats)

    def invalidate_week(self, week_id: str) -> None:
        """單週異動：丟掉該週條目與統計"""
        self._entries.pop(week_id, None)
        self._stats.pop(week_id, None)
        self.version += 1

    def invalidate_all(self) -> int:
        self._entries.clear()
        self._stats.clear()
        self.version += 1
        logger.info("排班快取已全部清除，版本 %s", self.version)
        return self.version

    def __contains__(self, week_id: str) -> bool:
        return week_id in self._entries
