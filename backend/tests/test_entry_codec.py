"""
排班條目編解碼測試（不需 DB）。
覆蓋：遠端資料列往返保留 id / 清潔員 / 工時 / 計薪欄位、預設值補齊、週別校正、必填驗證。
"""
import uuid
from datetime import date

import pytest

from schedule_sync.errors import EntryValidationError, InvalidEntryIdError
from schedule_sync.schemas import ScheduleEntry, UNASSIGNED_CLEANER
from schedule_sync.services.entry_codec import (
    from_local,
    from_local_many,
    from_wire,
    is_valid_uuid,
    normalize_entry,
    to_local,
    to_wire,
    validate_entry,
)


def _entry(**kw) -> ScheduleEntry:
    data = dict(
        id=str(uuid.uuid4()),
        client_name="大安物業",
        building_name="A 棟",
        cleaner_names=["王小明", "李小華"],
        hours=6.5,
        date="2025-01-15",
        payment_type="flat_rate",
        flat_rate_amount=120,
        hourly_rate=18,
    )
    data.update(kw)
    return ScheduleEntry(**data)


def test_wire_round_trip_preserves_identity_and_payment():
    e = _entry()
    back = from_wire(to_wire(e))
    assert back.id == e.id
    assert back.cleaner_names == ["王小明", "李小華"]
    assert back.cleaner_name == "王小明"
    assert back.hours == 6.5
    assert back.payment_type == "flat_rate"
    assert back.flat_rate_amount == 120
    assert back.hourly_rate == 18


def test_to_wire_uses_snake_case_and_iso_date():
    row = to_wire(_entry())
    assert row["date"] == "2025-01-15"
    assert row["week_id"] == "2025-01-13"
    assert row["day"] == "wednesday"
    assert "clientName" not in row
    assert row["client_name"] == "大安物業"


def test_from_wire_defaults_and_numeric_strings():
    """缺值套預設、數字字串轉數字、flat-rate 寫法相容"""
    row = {
        "id": str(uuid.uuid4()),
        "client_name": "客戶",
        "building_name": "案場",
        "cleaner_name": "Amy",
        "cleaner_names": None,
        "hours": "7.5",
        "date": "2025-01-15",
        "payment_type": "flat-rate",
        "flat_rate_amount": "120",
        "hourly_rate": None,
        "status": None,
        "priority": "urgent",
    }
    e = from_wire(row)
    assert e.cleaner_names == ["Amy"]
    assert e.hours == 7.5
    assert e.payment_type == "flat_rate"
    assert e.flat_rate_amount == 120.0
    assert e.hourly_rate == 15.0
    assert e.status == "scheduled"
    assert e.priority == "medium"
    assert e.week_id == "2025-01-13"
    assert e.day == "wednesday"


def test_normalize_substitutes_unassigned_and_clamps_negative():
    e = normalize_entry(_entry(cleaner_names=[], cleaner_name="", hours=-3, deductions=-10))
    assert e.cleaner_names == [UNASSIGNED_CLEANER]
    assert e.cleaner_name == UNASSIGNED_CLEANER
    assert e.hours == 0
    assert e.deductions == 0


def test_normalize_corrects_mismatched_week_id():
    e = normalize_entry(_entry(week_id="2025-01-06", day="monday"))
    assert e.week_id == "2025-01-13"
    assert e.day == "wednesday"


def test_normalize_derives_date_from_week_and_day():
    e = normalize_entry(_entry(date=None, day="friday"), week_id="2025-01-13")
    assert e.date == date(2025, 1, 17)
    assert e.week_id == "2025-01-13"


def test_normalize_overtime_multiplier_defaults_and_floor():
    assert normalize_entry(_entry()).overtime_rate == 1.5
    assert normalize_entry(_entry(overtime_rate=0.5)).overtime_rate == 1.0
    assert normalize_entry(_entry(overtime_rate=2)).overtime_rate == 2.0


def test_normalize_keeps_only_assigned_cleaner_hours():
    e = normalize_entry(_entry(cleaner_hours={"王小明": 3, "路人": 5}))
    assert e.cleaner_hours == {"王小明": 3.0}


def test_validate_entry_rules():
    with pytest.raises(InvalidEntryIdError):
        validate_entry(_entry(id="e1"))
    validate_entry(_entry(id="e1"), check_uuid=False)
    with pytest.raises(EntryValidationError):
        validate_entry(_entry(client_name=""))
    with pytest.raises(EntryValidationError):
        validate_entry(_entry(date=None))
    assert is_valid_uuid(str(uuid.uuid4()))
    assert not is_valid_uuid("e1")


def test_local_document_uses_camel_case():
    e = normalize_entry(_entry())
    raw = to_local(e)
    assert raw["clientName"] == "大安物業"
    assert raw["weekId"] == "2025-01-13"
    assert from_local(raw).model_dump() == e.model_dump()


def test_from_local_skips_incomplete_entries():
    good = to_local(normalize_entry(_entry()))
    missing_client = dict(good, clientName="")
    missing_id = {k: v for k, v in good.items() if k != "id"}
    out = from_local_many([good, missing_client, missing_id, "garbage", None])
    assert [e.id for e in out] == [good["id"]]
