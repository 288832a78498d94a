"""
同一 key 同時只跑一個 coroutine（single-flight）。

- run：同 key 已在跑就共用同一個結果（例外也一起拿到），不重複打遠端
- try_run：同 key 已在跑就直接放棄，回傳 (False, None)，不排隊
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)


class SingleFlight:
    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def is_running(self, key: Hashable) -> bool:
        fut = self._inflight.get(key)
        return fut is not None and not fut.done()

    @property
    def running_keys(self) -> list:
        return [k for k, fut in self._inflight.items() if not fut.done()]

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        fut = self._inflight.get(key)
        if fut is not None and not fut.done():
            logger.debug("合併進行中的呼叫：%s", key)
            return await asyncio.shield(fut)
        task = asyncio.ensure_future(fn())
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._release(k, t))
        return await asyncio.shield(task)

    async def try_run(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Tuple[bool, Any]:
        if self.is_running(key):
            return False, None
        return True, await self.run(key, fn)

    def _release(self, key: Hashable, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # 沒有人等結果時避免 "exception was never retrieved"
        if not task.cancelled():
            task.exception()
