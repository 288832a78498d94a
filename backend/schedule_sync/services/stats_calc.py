"""排班統計與計薪（純函式，不碰資料庫）。

加班：每位清潔員每週依 (日期, 開始時間, id) 依序累加時薪制工時，累計 ≤ 40 小時為正常工時，超過部分為加班，
加班費 = 超出時數 × 時薪 × 加班倍率（未填 1.5）。
包案：整筆金額只算一次（不乘工時），多人共同指派時平均分攤；獎金、扣款同樣平均分攤。
分攤以分為單位，除不盡的零頭依姓名排序給前面的人，確保加總等於原金額。
已取消的條目照樣計入（與排班畫面一致，要排除請先篩選）。"""
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN
from typing import Dict, Iterable, List, Optional, Tuple

from schedule_sync.config import settings
from schedule_sync.schemas import (
    PaymentSummary,
    PeriodPayroll,
    ScheduleEntry,
    ScheduleStats,
    UNASSIGNED_CLEANER,
    WorkerPay,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")


def _d(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value))


def _round2(d: Decimal) -> Decimal:
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def _entry_workers(entry: ScheduleEntry) -> List[str]:
    return entry.cleaners or [UNASSIGNED_CLEANER]


def _order_key(entry: ScheduleEntry) -> Tuple[str, str, str]:
    return (entry.date.isoformat() if entry.date else "", entry.start_time or "", entry.id)


def _worker_hours(entry: ScheduleEntry, worker: str) -> Decimal:
    """個別工時優先，否則用條目工時"""
    if worker in entry.cleaner_hours:
        return _d(entry.cleaner_hours[worker])
    return _d(entry.hours)


def _hourly_rate(entry: ScheduleEntry, default_rate: Optional[float] = None) -> Decimal:
    rate = entry.hourly_rate or default_rate or settings.default_hourly_rate
    return _d(rate)


def _overtime_multiplier(entry: ScheduleEntry) -> Decimal:
    if entry.overtime_rate is None:
        return _d(settings.overtime_multiplier)
    return max(_d(entry.overtime_rate), Decimal("1"))


def split_evenly(amount, workers: List[str]) -> Dict[str, Decimal]:
    """金額平均分攤（到分）；零頭依姓名排序給前面的人，加總恆等於 amount"""
    names = sorted(set(workers)) or [UNASSIGNED_CLEANER]
    total = _round2(_d(amount))
    share = (total / len(names)).quantize(CENT, rounding=ROUND_DOWN)
    remainder = total - share * len(names)
    out: Dict[str, Decimal] = {}
    for name in names:
        extra = CENT if remainder > ZERO else ZERO
        remainder -= extra
        out[name] = share + extra
    return out


def _worker_week_pay(
    worker: str,
    entries: Iterable[ScheduleEntry],
    threshold: Decimal,
    default_rate: Optional[float],
    pay: WorkerPay,
) -> None:
    """把某清潔員某一週的條目累加進 pay（entries 需已篩選為該清潔員、同一週）"""
    running = ZERO
    for entry in sorted(entries, key=_order_key):
        workers = _entry_workers(entry)
        hours = _worker_hours(entry, worker)
        pay.total_hours += hours
        pay.bonus_amount += split_evenly(entry.bonus_amount, workers)[worker]
        pay.deductions += split_evenly(entry.deductions, workers)[worker]
        if entry.payment_type == "flat_rate":
            pay.flat_rate_jobs += 1
            pay.flat_rate_pay += split_evenly(entry.flat_rate_amount, workers)[worker]
            continue
        pay.hourly_jobs += 1
        rate = _hourly_rate(entry, default_rate)
        regular = min(hours, max(threshold - running, ZERO))
        overtime = hours - regular
        running += hours
        pay.regular_hours += regular
        pay.overtime_hours += overtime
        pay.regular_pay += regular * rate
        pay.overtime_pay += overtime * rate * _overtime_multiplier(entry)


def _finish(pay: WorkerPay) -> WorkerPay:
    pay.total_pay = pay.regular_pay + pay.overtime_pay + pay.flat_rate_pay + pay.bonus_amount - pay.deductions
    for name in (
        "total_hours",
        "regular_hours",
        "overtime_hours",
        "regular_pay",
        "overtime_pay",
        "flat_rate_pay",
        "bonus_amount",
        "deductions",
        "total_pay",
    ):
        setattr(pay, name, _round2(getattr(pay, name)))
    return pay


def _group_by_worker_week(entries: Iterable[ScheduleEntry]) -> Dict[str, Dict[str, List[ScheduleEntry]]]:
    grouped: Dict[str, Dict[str, List[ScheduleEntry]]] = {}
    for entry in entries:
        if entry is None:
            continue
        week = entry.week_id or (entry.date.isoformat() if entry.date else "")
        for worker in _entry_workers(entry):
            grouped.setdefault(worker, {}).setdefault(week, []).append(entry)
    return grouped


def compute_worker_pay(
    entries: Iterable[ScheduleEntry],
    threshold_hours: Optional[float] = None,
    default_rate: Optional[float] = None,
) -> Dict[str, WorkerPay]:
    """每位清潔員的薪資明細（跨週時每週各自計算加班）"""
    threshold = _d(settings.overtime_threshold_hours if threshold_hours is None else threshold_hours)
    out: Dict[str, WorkerPay] = {}
    for worker, weeks in sorted(_group_by_worker_week(entries).items()):
        pay = WorkerPay(cleaner_name=worker)
        for week in sorted(weeks):
            _worker_week_pay(worker, weeks[week], threshold, default_rate, pay)
        out[worker] = _finish(pay)
    return out


def compute_stats(
    entries: Iterable[ScheduleEntry],
    threshold_hours: Optional[float] = None,
    default_rate: Optional[float] = None,
) -> ScheduleStats:
    """週統計。total_hours 為條目工時加總；total_cleaner_hours 與 regular / overtime 為清潔員工時加總（多人條目每人各算；regular / overtime 只含時薪條目）"""
    items = [e for e in entries if e is not None]
    if not items:
        return ScheduleStats()

    workers = compute_worker_pay(items, threshold_hours=threshold_hours, default_rate=default_rate)
    total_entries = len(items)
    completed = sum(1 for e in items if e.status == "completed")
    pending = sum(1 for e in items if e.status == "scheduled")
    hourly_items = [e for e in items if e.payment_type != "flat_rate"]
    flat_items = [e for e in items if e.payment_type == "flat_rate"]

    total_hours = sum((_d(e.hours) for e in items), ZERO)
    regular_hours = sum((w.regular_hours for w in workers.values()), ZERO)
    overtime_hours = sum((w.overtime_hours for w in workers.values()), ZERO)
    hourly_amount = sum((w.regular_pay + w.overtime_pay for w in workers.values()), ZERO)
    overtime_amount = sum((w.overtime_pay for w in workers.values()), ZERO)
    flat_amount = sum((_d(e.flat_rate_amount) for e in flat_items), ZERO)
    bonus = sum((_d(e.bonus_amount) for e in items), ZERO)
    deductions = sum((_d(e.deductions) for e in items), ZERO)
    worker_hours = sum((w.total_hours for w in workers.values()), ZERO)
    rate_sum = sum((_hourly_rate(e, default_rate) for e in hourly_items), ZERO)

    return ScheduleStats(
        total_hours=_round2(total_hours),
        total_cleaner_hours=_round2(worker_hours),
        regular_hours=_round2(regular_hours),
        overtime_hours=_round2(overtime_hours),
        total_entries=total_entries,
        completed_entries=completed,
        pending_entries=pending,
        utilization_rate=_round2(Decimal(completed) / Decimal(total_entries) * 100),
        average_hours_per_cleaner=_round2(worker_hours / len(workers)) if workers else ZERO,
        total_hourly_jobs=len(hourly_items),
        total_flat_rate_jobs=len(flat_items),
        total_hourly_amount=_round2(hourly_amount),
        total_flat_rate_amount=_round2(flat_amount),
        total_bonus_amount=_round2(bonus),
        total_deductions=_round2(deductions),
        overtime_amount=_round2(overtime_amount),
        total_payroll=_round2(hourly_amount + flat_amount + bonus - deductions),
        average_hourly_rate=_round2(rate_sum / len(hourly_items)) if hourly_items else ZERO,
        workers=workers,
    )


def schedule_fingerprint(entries: Iterable[ScheduleEntry]) -> str:
    """統計快取 key：每筆 id-status-hours-payment_type-amount（再加清潔員、日期時間、獎金扣款、倍率），排序後以逗號串接"""
    parts = []
    for e in entries:
        if e is None:
            continue
        amount = e.flat_rate_amount if e.payment_type == "flat_rate" else e.hourly_rate
        workers = "|".join(_entry_workers(e))
        split_hours = "|".join(f"{k}:{v}" for k, v in sorted(e.cleaner_hours.items()))
        parts.append(
            f"{e.id}-{e.status}-{e.hours}-{e.payment_type}-{amount}"
            f"-{workers}-{split_hours}-{e.date}-{e.start_time}-{e.bonus_amount}-{e.deductions}-{e.overtime_rate}"
        )
    return ",".join(sorted(parts))


def calculate_entry_pay(entry: ScheduleEntry, default_rate: Optional[float] = None) -> Decimal:
    """單筆條目應付金額（不考慮當週累計加班）：包案為金額本身，時薪制為各清潔員工時 × 時薪；再加獎金減扣款"""
    if entry.payment_type == "flat_rate":
        base = _d(entry.flat_rate_amount)
    else:
        rate = _hourly_rate(entry, default_rate)
        base = sum((_worker_hours(entry, w) * rate for w in _entry_workers(entry)), ZERO)
    return _round2(base + _d(entry.bonus_amount) - _d(entry.deductions))


def calculate_payroll_for_period(
    entries: Iterable[ScheduleEntry],
    cleaner_name: str,
    default_rate: Optional[float] = None,
    threshold_hours: Optional[float] = None,
) -> PeriodPayroll:
    """某清潔員某期間的薪資，可跨多週（每週 40 小時各自計算）"""
    mine = [e for e in entries if e is not None and cleaner_name in _entry_workers(e)]
    pay = compute_worker_pay(mine, threshold_hours=threshold_hours, default_rate=default_rate).get(cleaner_name)
    result = PeriodPayroll(cleaner_name=cleaner_name)
    if pay is None:
        return result
    completed_hours = ZERO
    scheduled_hours = ZERO
    for e in mine:
        if e.payment_type == "flat_rate":
            continue
        if e.status == "completed":
            completed_hours += _worker_hours(e, cleaner_name)
        elif e.status == "scheduled":
            scheduled_hours += _worker_hours(e, cleaner_name)
    return result.model_copy(
        update={
            **pay.model_dump(exclude={"cleaner_name"}),
            "completed_hours": _round2(completed_hours),
            "scheduled_hours": _round2(scheduled_hours),
        }
    )


def calculate_payroll_summary(
    entries: Iterable[ScheduleEntry],
    cleaner_names: Optional[Iterable[str]] = None,
    default_rate: Optional[float] = None,
) -> Dict[str, PeriodPayroll]:
    """多位清潔員薪資；沒有工時也沒有包案收入的人不列入。cleaner_names 未給時取條目內所有清潔員"""
    items = [e for e in entries if e is not None]
    if cleaner_names is None:
        names = sorted({w for e in items for w in _entry_workers(e)})
    else:
        names = list(cleaner_names)
    summary: Dict[str, PeriodPayroll] = {}
    for name in names:
        payroll = calculate_payroll_for_period(items, name, default_rate=default_rate)
        if payroll.total_hours > 0 or payroll.flat_rate_pay > 0:
            summary[name] = payroll
    return summary


def payment_summary(week_id: str, entries: Iterable[ScheduleEntry], stats: Optional[ScheduleStats] = None) -> PaymentSummary:
    items = [e for e in entries if e is not None]
    stats = stats or compute_stats(items)
    return PaymentSummary(
        week_id=week_id,
        total_jobs=stats.total_entries,
        hourly_jobs=stats.total_hourly_jobs,
        flat_rate_jobs=stats.total_flat_rate_jobs,
        total_hourly_amount=stats.total_hourly_amount,
        total_flat_rate_amount=stats.total_flat_rate_amount,
        total_amount=stats.total_hourly_amount + stats.total_flat_rate_amount,
        completed_jobs=stats.completed_entries,
        pending_jobs=stats.pending_entries,
    )
