"""週排班 API：週別、條目 CRUD / 批次、清潔員與計薪欄位、統計、同步狀態、快取與管理。"""
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from schedule_sync import schemas
from schedule_sync.errors import EntryNotFoundError, EntryValidationError, RemoteError
from schedule_sync.services.realtime import RealtimeIngestor
from schedule_sync.services.schedule_engine import ScheduleEngine
from schedule_sync.services.week_calendar import is_valid_week_id

router = APIRouter(prefix="/api/schedule", tags=["schedule"])

RESPONSE_404 = {
    404: {
        "description": "資源不存在",
        "content": {"application/json": {"example": {"detail": "排班條目不存在"}}},
    }
}

RESPONSE_400 = {
    400: {
        "description": "條目驗證失敗",
        "content": {"application/json": {"example": {"detail": "條目缺少必填欄位：client_name"}}},
    }
}

RESPONSE_422 = {422: {"description": "請求參數或 body 驗證失敗"}}


def get_engine(request: Request) -> ScheduleEngine:
    return request.app.state.engine


def get_ingestor(request: Request) -> Optional[RealtimeIngestor]:
    return getattr(request.app.state, "ingestor", None)


def _check_week_id(week_id: str) -> str:
    if not is_valid_week_id(week_id):
        raise HTTPException(status_code=400, detail="週別須為週一日期 YYYY-MM-DD")
    return week_id


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, EntryNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# ---------- 週別 ----------
@router.get("/week-id/current", summary="本週週別")
async def current_week_id(engine: ScheduleEngine = Depends(get_engine)):
    return {"week_id": engine.get_current_week_id()}


@router.get("/week-id", summary="日期所屬週別", responses=RESPONSE_400)
async def week_id_from_date(
    date_str: str = Query(..., alias="date", description="YYYY-MM-DD"),
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return {"week_id": engine.get_week_id_from_date(date_str)}
    except ValueError:
        raise HTTPException(status_code=400, detail="date 格式須為 YYYY-MM-DD")


# ---------- 條目 ----------
@router.get("/weeks/{week_id}/entries", response_model=List[schemas.ScheduleEntry], summary="週排班條目")
async def list_week_entries(
    week_id: str,
    force_refresh: bool = Query(False, description="略過記憶體快取，重讀本機持久層"),
    engine: ScheduleEngine = Depends(get_engine),
):
    return await engine.get_week_schedule(_check_week_id(week_id), force_refresh=force_refresh)


@router.post(
    "/weeks/{week_id}/entries",
    response_model=schemas.ScheduleEntry,
    status_code=201,
    summary="新增排班條目（週別依日期重算）",
    responses={**RESPONSE_400, **RESPONSE_422},
)
async def add_entry(
    week_id: str,
    data: schemas.ScheduleEntry,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.add_entry(_check_week_id(week_id), data)
    except EntryValidationError as e:
        raise _http_error(e)


@router.put("/weeks/{week_id}/entries", response_model=List[schemas.ScheduleEntry], summary="整週覆寫", responses=RESPONSE_422)
async def replace_week_entries(
    week_id: str,
    data: List[schemas.ScheduleEntry],
    engine: ScheduleEngine = Depends(get_engine),
):
    return await engine.update_week_schedule(_check_week_id(week_id), data)


@router.delete("/weeks/{week_id}", response_model=schemas.BulkResult, summary="清空整週")
async def clear_week(
    week_id: str,
    engine: ScheduleEngine = Depends(get_engine),
):
    removed = await engine.clear_week_schedule(_check_week_id(week_id))
    return schemas.BulkResult(affected=removed)


@router.patch(
    "/weeks/{week_id}/entries/{entry_id}",
    response_model=schemas.ScheduleEntry,
    summary="修改排班條目",
    responses={**RESPONSE_404, **RESPONSE_400, **RESPONSE_422},
)
async def update_entry(
    week_id: str,
    entry_id: str,
    data: schemas.ScheduleEntryUpdate,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.update_entry(_check_week_id(week_id), entry_id, data)
    except (EntryNotFoundError, EntryValidationError) as e:
        raise _http_error(e)


@router.delete("/weeks/{week_id}/entries/{entry_id}", status_code=204, summary="刪除排班條目", responses=RESPONSE_404)
async def delete_entry(
    week_id: str,
    entry_id: str,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        await engine.delete_entry(_check_week_id(week_id), entry_id)
    except EntryNotFoundError as e:
        raise _http_error(e)


@router.post(
    "/weeks/{week_id}/entries/bulk-update",
    response_model=List[schemas.ScheduleEntry],
    summary="批次修改（找不到的 id 略過）",
    responses={**RESPONSE_400, **RESPONSE_422},
)
async def bulk_update(
    week_id: str,
    data: schemas.BulkUpdateRequest,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.bulk_update_entries(_check_week_id(week_id), data.entry_ids, data.updates)
    except EntryValidationError as e:
        raise _http_error(e)


@router.post("/weeks/{week_id}/entries/bulk-delete", response_model=schemas.BulkResult, summary="批次刪除（找不到的 id 略過）")
async def bulk_delete(
    week_id: str,
    data: schemas.BulkDeleteRequest,
    engine: ScheduleEngine = Depends(get_engine),
):
    removed = await engine.bulk_delete_entries(_check_week_id(week_id), data.entry_ids)
    return schemas.BulkResult(affected=len(removed))


# ---------- 清潔員 / 計薪欄位 ----------
@router.post(
    "/weeks/{week_id}/entries/{entry_id}/cleaners",
    response_model=schemas.ScheduleEntry,
    summary="加入清潔員",
    responses={**RESPONSE_404, **RESPONSE_400},
)
async def add_cleaner(
    week_id: str,
    entry_id: str,
    data: schemas.CleanerAssignRequest,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.add_cleaner_to_entry(_check_week_id(week_id), entry_id, data.cleaner_name, data.cleaner_id)
    except (EntryNotFoundError, EntryValidationError) as e:
        raise _http_error(e)


@router.delete(
    "/weeks/{week_id}/entries/{entry_id}/cleaners/{cleaner_name}",
    response_model=schemas.ScheduleEntry,
    summary="移除清潔員（不可移除最後一位）",
    responses={**RESPONSE_404, **RESPONSE_400},
)
async def remove_cleaner(
    week_id: str,
    entry_id: str,
    cleaner_name: str,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.remove_cleaner_from_entry(_check_week_id(week_id), entry_id, cleaner_name)
    except (EntryNotFoundError, EntryValidationError) as e:
        raise _http_error(e)


@router.put(
    "/weeks/{week_id}/entries/{entry_id}/payment",
    response_model=schemas.ScheduleEntry,
    summary="修改計薪方式與金額",
    responses={**RESPONSE_404, **RESPONSE_422},
)
async def update_payment(
    week_id: str,
    entry_id: str,
    data: schemas.PaymentUpdateRequest,
    engine: ScheduleEngine = Depends(get_engine),
):
    try:
        return await engine.update_entry_payment(_check_week_id(week_id), entry_id, data.payment_type, data.amount)
    except (EntryNotFoundError, EntryValidationError) as e:
        raise _http_error(e)


# ---------- 統計 / 計薪 ----------
@router.get("/weeks/{week_id}/stats", response_model=schemas.ScheduleStats, summary="週統計")
async def week_stats(
    week_id: str,
    engine: ScheduleEngine = Depends(get_engine),
):
    return await engine.get_week_stats(_check_week_id(week_id))


@router.get("/weeks/{week_id}/payment-summary", response_model=schemas.PaymentSummary, summary="週計薪摘要")
async def payment_summary(
    week_id: str,
    engine: ScheduleEngine = Depends(get_engine),
):
    return await engine.get_payment_summary(_check_week_id(week_id))


@router.get("/payroll", response_model=Dict[str, schemas.PeriodPayroll], summary="期間薪資（每週 40 小時計加班）")
async def payroll_summary(
    week_ids: List[str] = Query(..., description="週別，可多個"),
    cleaner_names: Optional[List[str]] = Query(None, description="清潔員；未給則全部"),
    engine: ScheduleEngine = Depends(get_engine),
):
    for week_id in week_ids:
        _check_week_id(week_id)
    return await engine.get_payroll_summary(week_ids, cleaner_names)


# ---------- 同步 / 快取 / 管理 ----------
@router.get("/sync/status", response_model=schemas.SyncStatus, summary="同步狀態")
async def sync_status(engine: ScheduleEngine = Depends(get_engine)):
    return engine.get_sync_status()


@router.post("/sync/resync", summary="手動全量對帳（斷線時一併重新訂閱）")
async def resync(
    engine: ScheduleEngine = Depends(get_engine),
    ingestor: Optional[RealtimeIngestor] = Depends(get_ingestor),
):
    if ingestor is None:
        raise HTTPException(status_code=503, detail="即時同步未啟用")
    try:
        total = await ingestor.resync()
    except RemoteError as e:
        raise HTTPException(status_code=502, detail=f"遠端對帳失敗：{e}")
    return {"entries": total, "status": engine.get_sync_status()}


@router.post("/sync/retry", summary="重送未同步條目")
async def retry_unsynced(engine: ScheduleEngine = Depends(get_engine)):
    return {"retried": await engine.retry_unsynced()}


@router.post("/cache/invalidate", summary="清除記憶體快取")
async def invalidate_cache(engine: ScheduleEngine = Depends(get_engine)):
    return {"cache_version": engine.invalidate_all_caches()}


@router.post("/admin/reset", status_code=204, summary="清空本機排班（遠端不動）")
async def reset_all(engine: ScheduleEngine = Depends(get_engine)):
    await engine.reset_all_schedules()


@router.get("/change-logs", response_model=List[schemas.ChangeLogRead], summary="排班異動紀錄")
async def change_logs(
    limit: int = Query(50, ge=1, le=500),
    shift_date: Optional[date] = Query(None, description="只看某日班別"),
    engine: ScheduleEngine = Depends(get_engine),
):
    if engine.change_logger is None:
        return []
    rows = await engine.change_logger.list_recent(limit=limit, shift_date=shift_date.isoformat() if shift_date else None)
    return [schemas.ChangeLogRead.model_validate(r) for r in rows]
