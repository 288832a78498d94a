"""
遠端資料表異動推播（即時頻道）。

- 資料表寫入 commit 後呼叫 ChangeFeed.publish，推給所有已訂閱且 table 相符的頻道
- 頻道狀態字串沿用 Supabase Realtime：SUBSCRIBED / CHANNEL_ERROR / TIMED_OUT / CLOSED
- 事件交給 handler 時各自建立 task，多筆事件可能交錯執行（接收端要自己防重入）
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from schedule_sync.schemas import ChangeEvent

logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusCallback = Callable[[str, Optional[BaseException]], None]


class RealtimeChannel:
    """單一訂閱頻道：先 on() 註冊 handler，再 subscribe()"""

    def __init__(self, feed: "ChangeFeed", name: str):
        self.feed = feed
        self.name = name
        self.status = CLOSED
        self._handlers: List[Tuple[str, str, EventHandler]] = []
        self._status_callback: Optional[StatusCallback] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def on(self, event_type: str, table: str, handler: EventHandler) -> "RealtimeChannel":
        """event_type 為 INSERT / UPDATE / DELETE 或 *"""
        self._handlers.append((event_type.upper(), table, handler))
        return self

    def subscribe(self, callback: Optional[StatusCallback] = None) -> "RealtimeChannel":
        """非同步回報結果：遠端可用時 SUBSCRIBED，否則 CHANNEL_ERROR"""
        self._status_callback = callback
        self.feed._attach(self)
        loop = asyncio.get_running_loop()
        if self.feed.available:
            loop.call_soon(self.report_status, SUBSCRIBED, None)
        else:
            loop.call_soon(self.report_status, CHANNEL_ERROR, ConnectionError("即時服務無法連線"))
        return self

    def report_status(self, status: str, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self.status = status
        if status != SUBSCRIBED:
            self.feed._detach(self)
        if self._status_callback is not None:
            try:
                self._status_callback(status, error)
            except Exception:
                logger.exception("頻道 %s 狀態回呼失敗", self.name)

    def deliver(self, event: ChangeEvent) -> int:
        """把事件交給相符的 handler；回傳建立的 task 數"""
        if self.status != SUBSCRIBED:
            return 0
        count = 0
        for event_type, table, handler in self._handlers:
            if table != event.table or event_type not in ("*", event.event_type):
                continue
            task = asyncio.create_task(handler(event))
            self._tasks.add(task)
            self.feed._tasks.add(task)
            task.add_done_callback(self._on_task_done)
            count += 1
        return count

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self.feed._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("頻道 %s 事件處理失敗：%s", self.name, exc, exc_info=exc)

    async def drain(self) -> None:
        """等目前所有事件處理完（測試與關機用）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def unsubscribe(self) -> None:
        self._closed = True
        self._status_callback = None
        self.feed._detach(self)
        self.status = CLOSED


class ChangeFeed:
    """異動推播中心。available=False 時新訂閱一律 CHANNEL_ERROR（模擬斷線）"""

    def __init__(self):
        self.available = True
        self._channels: Dict[str, List[RealtimeChannel]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def channel(self, name: str) -> RealtimeChannel:
        return RealtimeChannel(self, name)

    def _attach(self, channel: RealtimeChannel) -> None:
        subs = self._channels.setdefault(channel.name, [])
        if channel not in subs:
            subs.append(channel)

    def _detach(self, channel: RealtimeChannel) -> None:
        subs = self._channels.get(channel.name, [])
        if channel in subs:
            subs.remove(channel)
        if not subs:
            self._channels.pop(channel.name, None)

    @property
    def subscriber_count(self) -> int:
        return sum(1 for subs in self._channels.values() for c in subs if c.status == SUBSCRIBED)

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for subs in list(self._channels.values()):
            for channel in list(subs):
                delivered += channel.deliver(event)
        return delivered

    def disconnect(self, status: str = CHANNEL_ERROR) -> None:
        """模擬連線中斷：所有已訂閱頻道回報 status，之後的 subscribe 會失敗直到 reconnect()"""
        self.available = False
        for subs in list(self._channels.values()):
            for channel in list(subs):
                channel.report_status(status, ConnectionError("即時連線中斷"))

    def reconnect(self) -> None:
        self.available = True

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
