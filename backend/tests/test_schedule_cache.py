"""記憶體快取測試（不需 DB）：排序、單週失效、全部失效遞增版本、統計每週只留最新一份。"""
from schedule_sync.schemas import ScheduleEntry, ScheduleStats
from schedule_sync.services.schedule_cache import ScheduleCache, sort_entries


def _entry(entry_id: str, day: str, start_time=None) -> ScheduleEntry:
    return ScheduleEntry(id=entry_id, client_name="客戶", building_name="案場", day=day, start_time=start_time)


def test_sort_by_weekday_then_start_time():
    entries = [
        _entry("c", "tuesday", "08:00"),
        _entry("b", "monday", None),
        _entry("a", "monday", "09:30"),
    ]
    assert [e.id for e in sort_entries(entries)] == ["a", "b", "c"]


def test_put_and_get_returns_copies():
    cache = ScheduleCache()
    assert cache.get_entries("2025-01-13") is None
    cache.put_entries("2025-01-13", [_entry("a", "monday")])
    got = cache.get_entries("2025-01-13")
    got.clear()
    assert len(cache.get_entries("2025-01-13")) == 1
    assert "2025-01-13" in cache


def test_invalidate_week_keeps_other_weeks():
    cache = ScheduleCache()
    cache.put_entries("2025-01-13", [])
    cache.put_entries("2025-01-20", [])
    cache.invalidate_week("2025-01-13")
    assert "2025-01-13" not in cache
    assert "2025-01-20" in cache
    assert cache.version == 1


def test_invalidate_all_clears_stats_and_bumps_version():
    cache = ScheduleCache()
    cache.put_entries("2025-01-13", [])
    cache.put_stats("2025-01-13", "fp", ScheduleStats())
    assert cache.invalidate_all() == 1
    assert cache.get_stats("2025-01-13", "fp") is None
    assert cache.get_entries("2025-01-13") is None
    assert cache.invalidate_all() == 2


def test_stats_keep_only_latest_fingerprint_per_week():
    cache = ScheduleCache()
    for i in range(20):
        cache.put_stats("2025-01-13", f"fp{i}", ScheduleStats(total_entries=i))
    assert cache.stats_size == 1
    assert cache.get_stats("2025-01-13", "fp3") is None
    assert cache.get_stats("2025-01-13", "fp19").total_entries == 19

    cache.put_stats("2025-01-20", "fp", ScheduleStats())
    cache.invalidate_week("2025-01-13")
    assert cache.get_stats("2025-01-13", "fp19") is None
    assert cache.get_stats("2025-01-20", "fp") is not None
    assert cache.stats_size == 1
