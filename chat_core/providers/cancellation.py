"""取消句柄与句柄池。

CancellationHandle 相当于一次网络请求的“中止开关”：
- abort() 幂等，可在任何时刻调用；
- wait(aw, timeout) 让一次等待与中止信号竞争，中止先到时抛出 RequestAborted，
  超时先到时抛出 asyncio.TimeoutError，并取消尚未完成的等待。

ControllerPool 以 (session_index, message_id) 为 key 记录正在进行的流式请求，
由会话管理者持有一个实例并显式传递，不使用模块级全局状态。
所有修改都发生在事件循环线程上，因此不需要加锁。
"""

import asyncio
from typing import Any, Awaitable, Dict, Optional

from chat_core.domain.exceptions import RequestAborted


class CancellationHandle:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self, aw: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        if self.aborted:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise RequestAborted(self.reason or "aborted")

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        if waiter in done:
            raise RequestAborted(self.reason or "aborted")
        raise asyncio.TimeoutError()


class ControllerPool:
    """(session_index, message_id) -> CancellationHandle 的扁平注册表。"""

    def __init__(self) -> None:
        self.controllers: Dict[str, CancellationHandle] = {}

    @staticmethod
    def key(session_index: int, message_id: int) -> str:
        return f"{session_index},{message_id}"

    def add(self, session_index: int, message_id: int, handle: CancellationHandle) -> str:
        """登记句柄；同一 key 已存在时直接覆盖（旧句柄是否需要先停止由调用方决定）。"""

        key = self.key(session_index, message_id)
        self.controllers[key] = handle
        return key

    def stop(self, session_index: int, message_id: int) -> None:
        handle = self.controllers.get(self.key(session_index, message_id))
        if handle is not None:
            handle.abort("stopped")

    def stop_all(self) -> None:
        for handle in list(self.controllers.values()):
            handle.abort("stopped")

    def has_pending(self) -> bool:
        return len(self.controllers) > 0

    def remove(self, session_index: int, message_id: int) -> None:
        self.controllers.pop(self.key(session_index, message_id), None)
