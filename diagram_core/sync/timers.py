"""按 key 管理的可取消定时任务（运行在 asyncio 事件循环上）。

- schedule(key, delay, fn): 同一个 key 只保留最后一次调度，旧的定时器先被取消；
- start_interval(key, interval, fn): 周期任务，同一个 key 只启动一次；
- spawn(fn): 立即在后台运行一个协程；
- close(): 取消所有定时器、周期任务与后台任务，所有者销毁时必须调用。
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Set

from diagram_core.infrastructure.logging.logger import logger

AsyncCallback = Callable[[], Awaitable[Any]]


class TaskScheduler:
    def __init__(self) -> None:
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._intervals: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, key: str, delay: float, callback: AsyncCallback) -> None:
        if self._closed:
            return
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(max(0.0, delay), self._fire, key, callback)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._handles

    def pending_keys(self) -> Set[str]:
        return set(self._handles)

    def spawn(self, callback: AsyncCallback) -> "asyncio.Task | None":
        if self._closed:
            return None
        task = asyncio.get_running_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def start_interval(self, key: str, interval: float, callback: AsyncCallback) -> None:
        if self._closed or key in self._intervals:
            return
        task = asyncio.get_running_loop().create_task(self._run_interval(interval, callback))
        self._intervals[key] = task

    def stop_interval(self, key: str) -> None:
        task = self._intervals.pop(key, None)
        if task is not None:
            task.cancel()

    def has_interval(self, key: str) -> bool:
        return key in self._intervals

    def close(self) -> None:
        self._closed = True
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in self._intervals.values():
            task.cancel()
        self._intervals.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _fire(self, key: str, callback: AsyncCallback) -> None:
        self._handles.pop(key, None)
        self.spawn(callback)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    @staticmethod
    async def _run_interval(interval: float, callback: AsyncCallback) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await callback()
            except Exception:
                # 单次失败不能终止周期任务
                logger.exception("Interval task failed")
