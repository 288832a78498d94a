"""
即時同步：訂閱 schedule_entries 異動，冪等套用到本機排班。

狀態：DISCONNECTED → CONNECTING → SUBSCRIBED →（ERROR | TIMED_OUT）→ RECONNECTING → CONNECTING …；stop() 後為 CLOSED。
- 訂閱成功：重連次數歸零，跑一次全量對帳
- 每筆事件：先依清潔員篩選，再過 single-flight；前一筆還在處理就丟掉（記 log、計數），不排隊，漏掉的靠定期對帳補
- 套用遠端異動只改本機，不會再推回遠端
- 斷線重連：等 reconnect_delay × 第 N 次 秒，最多 max_reconnect_attempts 次；用盡回報 RealtimeConnectionError，需手動 resync()
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from schedule_sync.config import settings
from schedule_sync.errors import RealtimeConnectionError, RemoteError
from schedule_sync.schemas import ChangeEvent
from schedule_sync.services.change_feed import CHANNEL_ERROR, CLOSED, SUBSCRIBED, TIMED_OUT, ChangeFeed, RealtimeChannel
from schedule_sync.services.entry_codec import from_wire
from schedule_sync.services.remote_table import RemoteScheduleTable
from schedule_sync.services.schedule_engine import ScheduleEngine
from schedule_sync.services.week_calendar import try_parse_date, week_id_of
from schedule_sync.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

INGEST_KEY = "ingest"
RECONCILE_KEY = "reconcile"


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class RealtimeIngestor:
    def __init__(
        self,
        engine: ScheduleEngine,
        feed: ChangeFeed,
        table: RemoteScheduleTable,
        cleaner_filter: Optional[str] = None,
        channel_name: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self.engine = engine
        self.feed = feed
        self.table = table
        self.cleaner_filter = cleaner_filter if cleaner_filter is not None else settings.realtime_cleaner_filter
        self.channel_name = channel_name or settings.realtime_channel_name
        self.reconnect_delay = settings.realtime_reconnect_delay if reconnect_delay is None else reconnect_delay
        self.max_reconnect_attempts = (
            settings.realtime_max_reconnect_attempts if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.on_error = on_error
        self._sleep = sleep

        self.state = SubscriptionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.dropped_events = 0
        self.applied_events = 0
        self.last_error: Optional[BaseException] = None
        self._guard = SingleFlight()
        self._channel: Optional[RealtimeChannel] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._stopped = True

    # ---------- 生命週期 ----------

    async def start(self) -> None:
        if not self._stopped and self.state in (SubscriptionState.CONNECTING, SubscriptionState.SUBSCRIBED):
            return
        self._stopped = False
        self.reconnect_attempts = 0
        self._connect()

    async def stop(self) -> None:
        self._stopped = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._teardown_channel()
        if self._reconcile_task is not None and not self._reconcile_task.done():
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
        self._set_state(SubscriptionState.CLOSED)
        self.engine.status.is_connected = False
        logger.info("即時同步已停止")

    async def resync(self) -> int:
        """手動重新同步：斷線時重新訂閱（訂閱成功會自動對帳），並立即全量對帳一次"""
        if self.state in (SubscriptionState.DISCONNECTED, SubscriptionState.CLOSED):
            self._stopped = False
            self.reconnect_attempts = 0
            self._connect()
        return await self.reconcile()

    async def wait_idle(self) -> None:
        """等重連與對帳告一段落（測試與關機用）"""
        while True:
            # 讓 subscribe 排進 call_soon 的狀態回報先跑
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            pending = [t for t in (self._reconnect_task, self._reconcile_task) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------- 對帳 ----------

    async def reconcile(self) -> int:
        """抓遠端全部（或指定清潔員）資料列，依週別分組併入本機"""
        return await self._guard.run(RECONCILE_KEY, self._reconcile)

    async def _reconcile(self) -> int:
        contains = {"cleaner_names": [self.cleaner_filter]} if self.cleaner_filter else None
        since = self.engine.sync_sequence
        rows = await self.table.select(contains=contains)
        entries = [from_wire(row) for row in rows]
        return await self.engine.apply_remote_snapshot(entries, cleaner_filter=self.cleaner_filter, since=since)

    async def _reconcile_quietly(self) -> None:
        try:
            await self.reconcile()
        except RemoteError as exc:
            logger.warning("訂閱後全量對帳失敗：%s", exc)
            self.engine.status.error = f"對帳失敗：{exc}"

    # ---------- 連線 ----------

    def _connect(self) -> None:
        self._teardown_channel()
        self._set_state(SubscriptionState.CONNECTING)
        channel = self.feed.channel(self.channel_name)
        channel.on("*", self.table.table, self._on_event)
        self._channel = channel
        channel.subscribe(lambda status, error, ch=channel: self._on_status(ch, status, error))

    def _teardown_channel(self) -> None:
        if self._channel is not None:
            self._channel.unsubscribe()
            self._channel = None

    def _on_status(self, channel: RealtimeChannel, status: str, error: Optional[BaseException]) -> None:
        if self._stopped or channel is not self._channel:
            return
        if status == SUBSCRIBED:
            self._set_state(SubscriptionState.SUBSCRIBED)
            self.reconnect_attempts = 0
            self.engine.status.is_connected = True
            logger.info("即時同步已訂閱：%s", self.channel_name)
            if self._reconcile_task is None or self._reconcile_task.done():
                self._reconcile_task = asyncio.create_task(self._reconcile_quietly())
            return

        self.engine.status.is_connected = False
        if status == TIMED_OUT:
            self._set_state(SubscriptionState.TIMED_OUT)
        elif status in (CHANNEL_ERROR, CLOSED):
            self._set_state(SubscriptionState.ERROR)
        else:
            logger.warning("未知的頻道狀態：%s", status)
            self._set_state(SubscriptionState.ERROR)
        logger.warning("即時頻道 %s：%s %s", self.channel_name, status, error or "")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        self._teardown_channel()
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self._set_state(SubscriptionState.DISCONNECTED)
            self._report_error(
                RealtimeConnectionError(f"即時同步重連 {self.reconnect_attempts} 次仍失敗，請手動重新同步")
            )
            return
        self.reconnect_attempts += 1
        self._set_state(SubscriptionState.RECONNECTING)
        delay = self.reconnect_delay * self.reconnect_attempts
        logger.info("即時同步 %s 秒後重連（第 %s/%s 次）", delay, self.reconnect_attempts, self.max_reconnect_attempts)
        await self._sleep(delay)
        if self._stopped:
            return
        self._connect()

    def _report_error(self, exc: BaseException) -> None:
        self.last_error = exc
        self.engine.status.error = str(exc)
        logger.error("%s", exc)
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                logger.exception("即時同步 on_error 回呼失敗")

    def _set_state(self, state: SubscriptionState) -> None:
        self.state = state
        self.engine.status.realtime_state = state.value

    # ---------- 事件 ----------

    def is_relevant(self, payload: Optional[Dict[str, Any]]) -> bool:
        """沒有篩選條件、或資料列沒有清潔員欄位（刪除事件常只帶 id）時一律處理"""
        if not self.cleaner_filter:
            return True
        if not payload:
            return False
        names = payload.get("cleaner_names")
        if names is None and "cleaner_name" not in payload:
            return True
        names = list(names or []) or [payload.get("cleaner_name")]
        return self.cleaner_filter in names

    async def _on_event(self, event: ChangeEvent) -> None:
        payload = event.old if event.event_type == "DELETE" else event.new
        if not self.is_relevant(payload):
            return
        ran, _ = await self._guard.try_run(INGEST_KEY, lambda: self._apply(event))
        if not ran:
            self.dropped_events += 1
            self.engine.status.dropped_events = self.dropped_events
            logger.warning(
                "前一筆異動處理中，丟棄 %s %s（累計 %s 筆）",
                event.event_type,
                (payload or {}).get("id"),
                self.dropped_events,
            )

    async def _apply(self, event: ChangeEvent) -> bool:
        try:
            if event.event_type == "INSERT" and event.new:
                changed = await self.engine.apply_remote_insert(from_wire(event.new))
            elif event.event_type == "UPDATE" and event.new:
                changed = await self.engine.apply_remote_update(from_wire(event.new))
            elif event.event_type == "DELETE" and event.old:
                changed = await self.engine.apply_remote_delete(str(event.old.get("id") or ""), _payload_week_id(event.old))
            else:
                logger.warning("略過無法辨識的異動：%s", event.event_type)
                return False
        except Exception:
            logger.exception("套用遠端異動失敗：%s", event.event_type)
            return False
        if changed:
            self.applied_events += 1
        return changed


def _payload_week_id(payload: Dict[str, Any]) -> Optional[str]:
    """刪除事件的週別：優先由日期推算，沒有日期才用資料列上的 week_id"""
    d = try_parse_date(payload.get("date"))
    if d is not None:
        return week_id_of(d)
    return payload.get("week_id")
