"""
排班引擎：對外唯一的讀寫入口。

寫入流程：驗證 / 正規化 → 鎖內改本機文件並立即存檔、清該週快取 → 背景推遠端（失敗不回滾，標記「已存本機、未同步」）。
讀取流程：記憶體快取 → 本機持久層；遠端只在對帳（apply_remote_snapshot）時讀。
apply_remote_* 給即時同步用：只改本機，絕不再推遠端，避免迴圈。
"""
import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from schedule_sync.config import settings
from schedule_sync.errors import EntryNotFoundError, EntryValidationError, SyncFailedError
from schedule_sync.schemas import (
    PaymentSummary,
    PeriodPayroll,
    ScheduleEntry,
    ScheduleEntryUpdate,
    ScheduleStats,
    SyncRecord,
    SyncStatus,
    UNASSIGNED_CLEANER,
    normalize_names,
    normalize_payment_type,
)
from schedule_sync.services import stats_calc
from schedule_sync.services.change_log import ChangeLogger
from schedule_sync.services.entry_codec import normalize_entry, validate_entry
from schedule_sync.services.local_store import LocalScheduleStore, WeeklySchedule
from schedule_sync.services.remote_sync import RemoteSyncClient
from schedule_sync.services.schedule_cache import ScheduleCache, sort_entries
from schedule_sync.services.week_calendar import get_current_week_id, get_week_id_from_date

logger = logging.getLogger(__name__)

EntryInput = Union[ScheduleEntry, Dict[str, Any]]
UpdateInput = Union[ScheduleEntryUpdate, Dict[str, Any]]


def _as_entry(value: EntryInput) -> ScheduleEntry:
    if isinstance(value, ScheduleEntry):
        return value
    return ScheduleEntry.model_validate(value)


def _as_updates(value: UpdateInput) -> Dict[str, Any]:
    if not isinstance(value, ScheduleEntryUpdate):
        value = ScheduleEntryUpdate.model_validate(value)
    return value.model_dump(exclude_unset=True)


def _find(schedule: WeeklySchedule, entry_id: str, week_id: Optional[str] = None) -> Optional[Tuple[str, int]]:
    """先找指定週，找不到再掃全部週；回傳 (week_id, index)"""
    if week_id and week_id in schedule:
        for i, e in enumerate(schedule[week_id]):
            if e.id == entry_id:
                return week_id, i
    for wid, entries in schedule.items():
        for i, e in enumerate(entries):
            if e.id == entry_id:
                return wid, i
    return None


def _put(schedule: WeeklySchedule, entry: ScheduleEntry) -> None:
    schedule.setdefault(entry.week_id, []).append(entry)
    schedule[entry.week_id] = sort_entries(schedule[entry.week_id])


def _take(schedule: WeeklySchedule, week_id: str, index: int) -> ScheduleEntry:
    return schedule[week_id].pop(index)


class ScheduleEngine:
    """啟動時建立一個，注入 store / cache / sync client；不用模組層級的單例"""

    def __init__(
        self,
        store: LocalScheduleStore,
        cache: Optional[ScheduleCache] = None,
        sync_client: Optional[RemoteSyncClient] = None,
        change_logger: Optional[ChangeLogger] = None,
        last_sync_key: Optional[str] = None,
    ):
        self.store = store
        self.cache = cache or ScheduleCache()
        self.sync_client = sync_client
        self.change_logger = change_logger
        self.last_sync_key = last_sync_key or settings.last_sync_key
        self.status = SyncStatus()
        self._lock = asyncio.Lock()
        self._records: Dict[str, Tuple[SyncRecord, ScheduleEntry]] = {}
        self._chains: Dict[str, asyncio.Task] = {}
        # 每次推送成功遞增；對帳用來判斷哪些條目在抓遠端資料之後才推上去
        self._sync_seq = 0
        self._pushed_seq: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ---------- 啟動 / 週別 ----------

    async def load(self) -> WeeklySchedule:
        schedule = await self.store.load_all()
        self.cache.invalidate_all()
        last = await self.store.get_meta(self.last_sync_key)
        if last:
            try:
                self.status.last_sync_time = datetime.fromisoformat(last)
            except ValueError:
                logger.warning("本機最後同步時間格式不符：%s", last)
        logger.info("本機排班載入完成：%s 週", len(schedule))
        return schedule

    @staticmethod
    def get_current_week_id(today: Optional[date] = None) -> str:
        return get_current_week_id(today)

    @staticmethod
    def get_week_id_from_date(value) -> str:
        return get_week_id_from_date(value)

    # ---------- 讀 ----------

    async def get_week_schedule(self, week_id: str, force_refresh: bool = False) -> List[ScheduleEntry]:
        if not force_refresh:
            cached = self.cache.get_entries(week_id)
            if cached is not None:
                return cached
        async with self._lock:
            schedule = await self.store.load_all()
        entries = [e for e in schedule.get(week_id, []) if e.week_id == week_id]
        return self.cache.put_entries(week_id, entries)

    async def get_week_stats(self, week_id: str) -> ScheduleStats:
        entries = await self.get_week_schedule(week_id)
        key = f"{settings.overtime_threshold_hours}:{stats_calc.schedule_fingerprint(entries)}"
        stats = self.cache.get_stats(week_id, key)
        if stats is None:
            stats = stats_calc.compute_stats(entries)
            self.cache.put_stats(week_id, key, stats)
        return stats

    async def get_payment_summary(self, week_id: str) -> PaymentSummary:
        entries = await self.get_week_schedule(week_id)
        return stats_calc.payment_summary(week_id, entries, await self.get_week_stats(week_id))

    async def get_payroll_summary(
        self,
        week_ids: Iterable[str],
        cleaner_names: Optional[Iterable[str]] = None,
    ) -> Dict[str, PeriodPayroll]:
        entries: List[ScheduleEntry] = []
        for week_id in week_ids:
            entries.extend(await self.get_week_schedule(week_id))
        return stats_calc.calculate_payroll_summary(entries, cleaner_names)

    def all_entries(self) -> List[ScheduleEntry]:
        return [e for entries in self.store.snapshot().values() for e in entries]

    def invalidate_all_caches(self) -> int:
        version = self.cache.invalidate_all()
        self.status.cache_version = version
        return version

    def get_sync_status(self) -> SyncStatus:
        records = [rec for rec, _ in self._records.values()]
        return self.status.model_copy(
            update={
                "is_syncing": any(rec.state == "pending" for rec in records),
                "pending_count": sum(1 for rec in records if rec.state == "pending"),
                "unsynced_entry_ids": sorted(rec.entry_id for rec in records if rec.state == "failed"),
                "cache_version": self.cache.version,
            }
        )

    @property
    def sync_sequence(self) -> int:
        return self._sync_seq

    def is_unsynced(self, entry_id: str) -> bool:
        return entry_id in self._records

    def pending_operation(self, entry_id: str) -> Optional[str]:
        item = self._records.get(entry_id)
        return item[0].operation if item else None

    # ---------- 寫 ----------

    async def add_entry(self, week_id: Optional[str], entry: EntryInput) -> ScheduleEntry:
        """新增；同 id 已存在直接回傳現有條目（重送不會產生重複）"""
        entry = _as_entry(entry)
        if not entry.id:
            entry = entry.model_copy(update={"id": str(uuid.uuid4())})
        entry = normalize_entry(entry, week_id=week_id)
        validate_entry(entry, check_uuid=False)
        if week_id and entry.week_id != week_id:
            logger.warning("條目 %s 週別 %s 與日期不符，改存 %s", entry.id, week_id, entry.week_id)

        async with self._lock:
            schedule = self.store.snapshot()
            found = _find(schedule, entry.id)
            if found is not None:
                wid, i = found
                logger.info("條目 %s 已存在，略過新增", entry.id)
                return schedule[wid][i]
            _put(schedule, entry)
            await self._save(schedule, [entry.week_id])

        self._push(entry, "insert")
        if self.change_logger:
            self._spawn(self.change_logger.shift_created(entry))
        return entry

    async def update_entry(self, week_id: Optional[str], entry_id: str, updates: UpdateInput) -> ScheduleEntry:
        """部分更新；日期改到別週時條目會搬到新週"""
        changes = _as_updates(updates)
        async with self._lock:
            schedule = self.store.snapshot()
            before, after = self._apply_update(schedule, week_id, entry_id, changes)
            await self._save(schedule, {before.week_id, after.week_id})

        self._push(after, "update")
        if self.change_logger:
            self._spawn(self.change_logger.shift_edited(before, after))
        return after

    async def delete_entry(self, week_id: Optional[str], entry_id: str) -> ScheduleEntry:
        async with self._lock:
            schedule = self.store.snapshot()
            found = _find(schedule, entry_id, week_id)
            if found is None:
                raise EntryNotFoundError(week_id or "", entry_id)
            wid, i = found
            removed = _take(schedule, wid, i)
            await self._save(schedule, [wid])

        self._push(removed, "delete")
        if self.change_logger:
            self._spawn(self.change_logger.shift_deleted(removed))
        return removed

    async def bulk_update_entries(self, week_id: str, entry_ids: Iterable[str], updates: UpdateInput) -> List[ScheduleEntry]:
        """批次更新同一組欄位；找不到的 id 略過"""
        changes = _as_updates(updates)
        updated: List[Tuple[ScheduleEntry, ScheduleEntry]] = []
        async with self._lock:
            schedule = self.store.snapshot()
            for entry_id in dict.fromkeys(entry_ids):
                try:
                    updated.append(self._apply_update(schedule, week_id, entry_id, changes))
                except EntryNotFoundError:
                    logger.warning("批次更新略過不存在的條目：%s", entry_id)
            if updated:
                weeks = {b.week_id for b, _ in updated} | {a.week_id for _, a in updated}
                await self._save(schedule, weeks)

        for before, after in updated:
            self._push(after, "update")
            if self.change_logger:
                self._spawn(self.change_logger.shift_edited(before, after))
        return [after for _, after in updated]

    async def bulk_delete_entries(self, week_id: str, entry_ids: Iterable[str]) -> List[ScheduleEntry]:
        """批次刪除；找不到的 id 略過，回傳實際刪掉的條目"""
        removed: List[ScheduleEntry] = []
        async with self._lock:
            schedule = self.store.snapshot()
            for entry_id in dict.fromkeys(entry_ids):
                found = _find(schedule, entry_id, week_id)
                if found is None:
                    logger.warning("批次刪除略過不存在的條目：%s", entry_id)
                    continue
                removed.append(_take(schedule, *found))
            if removed:
                await self._save(schedule, {e.week_id for e in removed})

        for entry in removed:
            self._push(entry, "delete")
            if self.change_logger:
                self._spawn(self.change_logger.shift_deleted(entry))
        return removed

    async def update_week_schedule(self, week_id: str, entries: Iterable[EntryInput]) -> List[ScheduleEntry]:
        """整週覆寫：不合格的條目略過；日期不在該週的條目存到所屬週"""
        incoming: List[ScheduleEntry] = []
        for raw in entries:
            try:
                entry = _as_entry(raw)
                if not entry.id:
                    entry = entry.model_copy(update={"id": str(uuid.uuid4())})
                entry = normalize_entry(entry, week_id=week_id)
                validate_entry(entry, check_uuid=False)
            except (EntryValidationError, ValueError) as exc:
                logger.warning("整週覆寫略過不合格條目：%s", exc)
                continue
            incoming.append(entry)

        async with self._lock:
            schedule = self.store.snapshot()
            previous = schedule.pop(week_id, [])
            incoming_ids = {e.id for e in incoming}
            for entry in incoming:
                found = _find(schedule, entry.id)
                if found is not None:
                    _take(schedule, *found)
                _put(schedule, entry)
            schedule.setdefault(week_id, [])
            dropped = [e for e in previous if e.id not in incoming_ids]
            await self._save(schedule, {week_id} | {e.week_id for e in incoming})

        for entry in incoming:
            self._push(entry, "update")
        for entry in dropped:
            self._push(entry, "delete")
        return await self.get_week_schedule(week_id)

    async def clear_week_schedule(self, week_id: str) -> int:
        async with self._lock:
            schedule = self.store.snapshot()
            removed = schedule.pop(week_id, [])
            await self._save(schedule, [week_id])
        for entry in removed:
            self._push(entry, "delete")
        logger.info("已清空 %s 週：%s 筆", week_id, len(removed))
        return len(removed)

    async def reset_all_schedules(self) -> None:
        """管理用：清空本機所有排班與快取；遠端不動，下次對帳會重新拉回"""
        await self.drain()
        async with self._lock:
            await self.store.reset()
            self._records.clear()
            self._pushed_seq.clear()
            self.invalidate_all_caches()
        self.status.error = None
        logger.warning("本機排班已全部重設")

    # ---------- 清潔員 / 計薪欄位 ----------

    async def add_cleaner_to_entry(
        self, week_id: Optional[str], entry_id: str, cleaner_name: str, cleaner_id: Optional[str] = None
    ) -> ScheduleEntry:
        name = (cleaner_name or "").strip()
        if not name:
            raise EntryValidationError("清潔員姓名不可空白")
        async with self._lock:
            schedule = self.store.snapshot()
            current = self._get(schedule, week_id, entry_id)
            if name in current.cleaners:
                return current
            names = [n for n in current.cleaners if n != UNASSIGNED_CLEANER] + [name]
            ids = list(current.cleaner_ids) + ([cleaner_id] if cleaner_id else [])
            before, after = self._apply_update(schedule, week_id, entry_id, {"cleaner_names": names, "cleaner_ids": ids})
            await self._save(schedule, {after.week_id})

        self._push(after, "update")
        if self.change_logger:
            self._spawn(self.change_logger.cleaner_added(after, name))
        return after

    async def remove_cleaner_from_entry(self, week_id: Optional[str], entry_id: str, cleaner_name: str) -> ScheduleEntry:
        """不能移除最後一位清潔員"""
        async with self._lock:
            schedule = self.store.snapshot()
            current = self._get(schedule, week_id, entry_id)
            names = current.cleaners
            if cleaner_name not in names:
                return current
            if len(names) <= 1:
                raise EntryValidationError("不能移除最後一位清潔員")
            idx = names.index(cleaner_name)
            ids = list(current.cleaner_ids)
            if len(ids) == len(names):
                ids.pop(idx)
            hours = {k: v for k, v in current.cleaner_hours.items() if k != cleaner_name}
            before, after = self._apply_update(
                schedule,
                week_id,
                entry_id,
                {"cleaner_names": [n for n in names if n != cleaner_name], "cleaner_ids": ids, "cleaner_hours": hours},
            )
            await self._save(schedule, {after.week_id})

        self._push(after, "update")
        if self.change_logger:
            self._spawn(self.change_logger.cleaner_removed(after, cleaner_name))
        return after

    async def update_entry_cleaners(
        self, week_id: Optional[str], entry_id: str, cleaner_names: List[str], cleaner_ids: Optional[List[str]] = None
    ) -> ScheduleEntry:
        names = normalize_names(cleaner_names)
        if not names:
            raise EntryValidationError("至少需要一位清潔員")
        changes: Dict[str, Any] = {"cleaner_names": names}
        if cleaner_ids is not None:
            changes["cleaner_ids"] = cleaner_ids
        return await self.update_entry(week_id, entry_id, changes)

    async def update_entry_payment(self, week_id: Optional[str], entry_id: str, payment_type: str, amount: float) -> ScheduleEntry:
        """hourly：amount 為時薪；flat_rate：amount 為包案金額"""
        ptype = normalize_payment_type(payment_type)
        if ptype == "flat_rate":
            changes = {"payment_type": ptype, "flat_rate_amount": amount}
        else:
            changes = {"payment_type": ptype, "hourly_rate": amount}
        return await self.update_entry(week_id, entry_id, changes)

    # ---------- 遠端異動套用（即時同步 / 對帳；不回推） ----------

    async def apply_remote_insert(self, entry: ScheduleEntry) -> bool:
        """已存在同 id 直接略過；回傳是否有改動"""
        entry = normalize_entry(entry)
        async with self._lock:
            schedule = self.store.snapshot()
            if _find(schedule, entry.id) is not None:
                return False
            _put(schedule, entry)
            await self._save(schedule, [entry.week_id])
        return True

    async def apply_remote_update(self, entry: ScheduleEntry) -> bool:
        """找不到就當新增；週別改變時搬週"""
        entry = normalize_entry(entry)
        async with self._lock:
            schedule = self.store.snapshot()
            found = _find(schedule, entry.id, entry.week_id)
            weeks = {entry.week_id}
            if found is not None:
                wid, i = found
                if schedule[wid][i].model_dump() == entry.model_dump():
                    return False
                _take(schedule, wid, i)
                weeks.add(wid)
            _put(schedule, entry)
            await self._save(schedule, weeks)
        return True

    async def apply_remote_delete(self, entry_id: str, week_id: Optional[str] = None) -> bool:
        """只在事件帶的週別內刪；週別或 id 不存在就略過"""
        async with self._lock:
            schedule = self.store.snapshot()
            entries = schedule.get(week_id or "")
            if not entries:
                return False
            for i, e in enumerate(entries):
                if e.id == entry_id:
                    break
            else:
                return False
            _take(schedule, week_id, i)
            await self._save(schedule, [week_id])
        return True

    async def apply_remote_snapshot(
        self,
        remote_entries: Iterable[ScheduleEntry],
        cleaner_filter: Optional[str] = None,
        since: Optional[int] = None,
    ) -> int:
        """
        全量對帳：遠端資料列取代同 id 的本機條目；
        只在本機的條目，僅保留尚未同步的本機寫入、或不在篩選範圍（別的清潔員）的條目。
        本機待刪除的 id 不會被遠端資料救回。
        since 為抓遠端資料前的 sync_sequence：之後才推送成功的條目以本機為準（遠端資料已過時）。
        回傳對帳後條目數。
        """
        remote = [normalize_entry(e) for e in remote_entries]
        async with self._lock:
            local = self.store.snapshot()
            merged: WeeklySchedule = {wid: [] for wid in local}
            seen: Set[str] = set()
            recent = {eid for eid, seq in self._pushed_seq.items() if since is not None and seq > since}
            for entry in remote:
                if entry.id in seen or entry.id in recent or self.pending_operation(entry.id) == "delete":
                    continue
                seen.add(entry.id)
                merged.setdefault(entry.week_id, []).append(entry)
            for entries in local.values():
                for entry in entries:
                    if entry.id in seen:
                        continue
                    outside = bool(cleaner_filter) and cleaner_filter not in entry.cleaners
                    unsynced = self.is_unsynced(entry.id) and self.pending_operation(entry.id) != "delete"
                    if outside or unsynced or entry.id in recent:
                        merged.setdefault(entry.week_id, []).append(entry)
            for wid in merged:
                merged[wid] = sort_entries(merged[wid])
            await self.store.save_all(merged)
            if since is not None:
                # 抓遠端之前就推上去的條目已反映在這份快照，不必再記
                self._pushed_seq = {eid: seq for eid, seq in self._pushed_seq.items() if seq > since}
            self.invalidate_all_caches()
            now = datetime.utcnow()
            self.status.last_sync_time = now
        await self._remember_sync_time(now)
        total = sum(len(v) for v in merged.values())
        logger.info("全量對帳完成：遠端 %s 筆，對帳後 %s 筆", len(remote), total)
        return total

    # ---------- 背景推送 ----------

    async def retry_unsynced(self) -> int:
        """重送失敗的條目；回傳重送筆數"""
        failed = [(rec, entry) for rec, entry in list(self._records.values()) if rec.state == "failed"]
        for rec, entry in failed:
            if rec.operation != "delete":
                schedule = self.store.snapshot()
                found = _find(schedule, entry.id)
                if found is None:
                    # 本機已不存在（之後被刪掉），不再重送新增 / 更新
                    self._records.pop(entry.id, None)
                    continue
                entry = schedule[found[0]][found[1]]
            self._push(entry, rec.operation, attempts=rec.attempts)
        if failed:
            logger.info("重送未同步條目：%s 筆", len(failed))
        return len(failed)

    async def drain(self) -> None:
        """等所有背景推送與異動紀錄寫完"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _push(self, entry: ScheduleEntry, operation: str, attempts: int = 0) -> None:
        if self.sync_client is None:
            return
        record = SyncRecord(entry_id=entry.id, week_id=entry.week_id, operation=operation, attempts=attempts)
        self._records[entry.id] = (record, entry)
        previous = self._chains.get(entry.id)
        task = self._spawn(self._run_push(entry, record, previous))
        self._chains[entry.id] = task

    async def _run_push(self, entry: ScheduleEntry, record: SyncRecord, previous: Optional[asyncio.Task]) -> None:
        # 同一條目的推送依序執行，避免刪除先於新增抵達遠端
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self.sync_client.sync(entry, record.operation)
        except (SyncFailedError, EntryValidationError) as exc:
            self._mark_failed(record, exc)
            return
        except Exception as exc:
            logger.exception("推送條目 %s 發生未預期錯誤", entry.id)
            self._mark_failed(record, exc)
            return
        finally:
            if self._chains.get(entry.id) is asyncio.current_task():
                del self._chains[entry.id]

        self._sync_seq += 1
        self._pushed_seq[entry.id] = self._sync_seq
        current = self._records.get(entry.id)
        if current is not None and current[0] is record:
            del self._records[entry.id]
        if not any(rec.state == "failed" for rec, _ in self._records.values()):
            self.status.error = None
        now = datetime.utcnow()
        self.status.last_sync_time = now
        await self._remember_sync_time(now)

    def _mark_failed(self, record: SyncRecord, exc: BaseException) -> None:
        record.state = "failed"
        record.attempts += getattr(exc, "attempts", 1)
        record.error = str(exc)
        record.updated_at = datetime.utcnow()
        self.status.error = f"已存本機、尚未同步：{record.entry_id}（{exc}）"
        logger.warning("條目 %s %s 未同步：%s", record.entry_id, record.operation, exc)

    async def _remember_sync_time(self, when: datetime) -> None:
        try:
            await self.store.set_meta(self.last_sync_key, when.isoformat())
        except Exception:
            logger.exception("記錄最後同步時間失敗")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ---------- 內部 ----------

    def _get(self, schedule: WeeklySchedule, week_id: Optional[str], entry_id: str) -> ScheduleEntry:
        found = _find(schedule, entry_id, week_id)
        if found is None:
            raise EntryNotFoundError(week_id or "", entry_id)
        return schedule[found[0]][found[1]]

    def _apply_update(
        self, schedule: WeeklySchedule, week_id: Optional[str], entry_id: str, changes: Dict[str, Any]
    ) -> Tuple[ScheduleEntry, ScheduleEntry]:
        """在 schedule（工作副本）上套用部分更新；回傳 (before, after)"""
        found = _find(schedule, entry_id, week_id)
        if found is None:
            raise EntryNotFoundError(week_id or "", entry_id)
        wid, i = found
        before = schedule[wid][i]
        data = before.model_dump()
        changes = dict(changes)
        changes.pop("id", None)
        if "cleaner_name" in changes and "cleaner_names" not in changes:
            # 只改舊版單人欄位：取代清單第一位
            rest = [n for n in before.cleaners[1:] if n != changes["cleaner_name"]]
            changes["cleaner_names"] = [changes["cleaner_name"]] + rest
        elif "cleaner_names" in changes and "cleaner_name" not in changes:
            # 清單整份換掉：舊的第一位不能再當備援，空清單就是未指派
            data["cleaner_name"] = ""
        if "date" in changes:
            # 日期改了，星期與週別一律重算
            data.pop("day", None)
            data.pop("week_id", None)
        data.update(changes)
        after = normalize_entry(ScheduleEntry(**data))
        validate_entry(after, check_uuid=False)
        _take(schedule, wid, i)
        _put(schedule, after)
        return before, after

    async def _save(self, schedule: WeeklySchedule, weeks: Iterable[str]) -> None:
        await self.store.save_all(schedule)
        for wid in weeks:
            self.cache.invalidate_week(wid)
        self.status.cache_version = self.cache.version
