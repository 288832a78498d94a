"""
把單筆排班條目推到遠端（insert / update / delete），含重試與指數退避。

- 送出前先驗證，驗證失敗不重試
- insert 先查 id，已存在視為成功；update 找不到資料列改 insert（先前 insert 失敗可自動補上）；delete 找不到視為成功
- 主鍵重複（23505）視為成功；id 格式錯誤（22P02）立即失敗，不重試
- 其他錯誤（含逾時）等 base ** attempt 秒後重試，用盡拋 SyncFailedError
- 同一 (operation, id) 同時只送一次，後到的呼叫共用結果
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from schedule_sync.config import settings
from schedule_sync.errors import InvalidEntryIdError, RemoteError, SyncFailedError
from schedule_sync.schemas import ScheduleEntry
from schedule_sync.services.entry_codec import is_valid_uuid, to_wire, validate_entry
from schedule_sync.services.remote_table import RemoteScheduleTable
from schedule_sync.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

OPERATIONS = ("insert", "update", "delete")


class RemoteSyncClient:
    def __init__(
        self,
        table: RemoteScheduleTable,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        request_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.table = table
        self.max_retries = max_retries or settings.sync_max_retries
        self.backoff_base = settings.sync_backoff_base if backoff_base is None else backoff_base
        self.request_timeout = request_timeout or settings.sync_request_timeout
        self._sleep = sleep
        self._flight = SingleFlight()

    def is_syncing(self, entry_id: Optional[str] = None) -> bool:
        keys = self._flight.running_keys
        if entry_id is None:
            return bool(keys)
        return any(k[1] == entry_id for k in keys)

    async def sync(self, entry: ScheduleEntry, operation: str, max_retries: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """回傳遠端資料列（delete 回傳被刪的列，找不到為 None）"""
        if operation not in OPERATIONS:
            raise ValueError(f"不支援的同步操作：{operation}")
        if operation == "delete":
            if not is_valid_uuid(entry.id):
                raise InvalidEntryIdError(f"條目 id 不是合法 UUID：{entry.id}")
        else:
            validate_entry(entry)
        retries = max_retries or self.max_retries
        return await self._flight.run(
            (operation, entry.id),
            lambda: self._sync_with_retry(entry, operation, retries),
        )

    async def _sync_with_retry(self, entry: ScheduleEntry, operation: str, max_retries: int) -> Optional[Dict[str, Any]]:
        last_error: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                return await asyncio.wait_for(self._attempt(entry, operation), timeout=self.request_timeout)
            except RemoteError as exc:
                if exc.is_duplicate_key:
                    logger.info("條目 %s 已存在於遠端，視為同步成功", entry.id)
                    return None
                if exc.is_invalid_identifier:
                    raise InvalidEntryIdError(f"遠端拒絕條目 id：{entry.id}（{exc.message}）") from exc
                last_error = exc
            except asyncio.TimeoutError as exc:
                last_error = exc
            logger.warning(
                "%s 條目 %s 第 %s/%s 次失敗：%s",
                operation,
                entry.id,
                attempt,
                max_retries,
                last_error,
            )
            if attempt < max_retries:
                await self._sleep(self.backoff_base ** attempt)
        raise SyncFailedError(entry.id, operation, max_retries, last_error)

    async def _attempt(self, entry: ScheduleEntry, operation: str) -> Optional[Dict[str, Any]]:
        if operation == "insert":
            existing = await self.table.select_one(entry.id)
            if existing is not None:
                logger.debug("條目 %s 已在遠端，略過 insert", entry.id)
                return existing
            return await self.table.insert(to_wire(entry))
        if operation == "update":
            row = await self.table.update(entry.id, to_wire(entry))
            if row is None:
                logger.info("遠端沒有條目 %s，改為新增", entry.id)
                return await self.table.insert(to_wire(entry))
            return row
        return await self.table.delete(entry.id)
