"""排班同步的例外類別。驗證類錯誤一律不重試；遠端錯誤帶 Postgres 風格的 code。"""
from typing import Optional

# 遠端錯誤碼（沿用 PostgreSQL SQLSTATE）
DUPLICATE_KEY_CODE = "23505"
INVALID_TEXT_REPRESENTATION_CODE = "22P02"


class EntryValidationError(ValueError):
    """條目缺必填欄位或格式錯誤（單次操作失敗，不重試）"""
    pass


class InvalidEntryIdError(EntryValidationError):
    """條目 ID 不是合法 UUID，重試也無法修正"""
    pass


class EntryNotFoundError(LookupError):
    """指定週內找不到該條目"""

    def __init__(self, week_id: str, entry_id: str):
        super().__init__(f"排班條目 {entry_id} 不存在於 {week_id} 週")
        self.week_id = week_id
        self.entry_id = entry_id


class LocalStoreError(RuntimeError):
    """本機持久層寫入失敗"""
    pass


class RemoteError(Exception):
    """遠端資料表操作失敗。code 為 SQLSTATE；無 code 視為暫時性錯誤（網路 / 逾時 / 伺服器）。"""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    @property
    def is_duplicate_key(self) -> bool:
        return self.code == DUPLICATE_KEY_CODE

    @property
    def is_invalid_identifier(self) -> bool:
        return self.code == INVALID_TEXT_REPRESENTATION_CODE or "invalid input syntax for type uuid" in self.message


class SyncFailedError(RuntimeError):
    """重試用盡仍無法同步到遠端；本機資料保留，狀態為「已存本機、未同步」"""

    def __init__(self, entry_id: str, operation: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} 同步失敗（{attempts} 次）：{entry_id}: {cause}")
        self.entry_id = entry_id
        self.operation = operation
        self.attempts = attempts
        self.cause = cause


class RealtimeConnectionError(ConnectionError):
    """即時訂閱重連次數用盡，需要手動重新同步"""
    pass
