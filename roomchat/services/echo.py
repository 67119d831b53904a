"""
roomchat.services.echo
~~~~~~~~~~~~~~~~~~~~~~

写操作的 "回显关联表"。

send / update / delete 不以 REST 应答为完成信号，而是等到该操作在实时通道上的
回显被应用后才完成。回显可能早于 REST 应答到达，因此未被认领的回显会暂存在
一个有界的 LRU 表中；``expect()`` 与 ``observe()`` 从两条路径完成同一个 Future。
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Generic, Hashable, TypeVar

from roomchat.core.errors import ChatError, ErrorCode

T = TypeVar("T")


class EchoCorrelator(Generic[T]):
    """按操作身份（例如 ``(serial, version)``）关联写操作与其实时回显。

    Args:
        max_unclaimed: 暂存的未认领回显数量上限。
    """

    def __init__(self, max_unclaimed: int = 256) -> None:
        self._pending: dict[Hashable, asyncio.Future[T]] = {}
        self._unclaimed: OrderedDict[Hashable, T] = OrderedDict()
        self._max_unclaimed = max_unclaimed

    def expect(self, key: Hashable) -> asyncio.Future[T]:
        """登记一个等待中的操作，返回在回显到达时完成的 Future。"""
        existing = self._pending.get(key)
        if existing is not None and not existing.done():
            return existing

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        if key in self._unclaimed:
            future.set_result(self._unclaimed.pop(key))
            return future

        self._pending[key] = future
        future.add_done_callback(lambda _: self._forget(key, future))
        return future

    def observe(self, key: Hashable, value: T) -> bool:
        """记录一次回显。返回是否有操作在等待它。"""
        future = self._pending.pop(key, None)
        if future is not None and not future.done():
            future.set_result(value)
            return True

        self._unclaimed[key] = value
        self._unclaimed.move_to_end(key)
        while len(self._unclaimed) > self._max_unclaimed:
            self._unclaimed.popitem(last=False)
        return False

    async def wait(self, key: Hashable, timeout: float, operation: str) -> T:
        """等待回显，超时抛出 ``OPERATION_TIMEOUT``。"""
        future = self.expect(key)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            self._forget(key, future)
            if not future.done():
                future.cancel()
            raise ChatError(
                f"unable to {operation}; timed out waiting for realtime echo",
                ErrorCode.OPERATION_TIMEOUT,
                504,
            ) from None

    def fail_all(self, error: ChatError) -> None:
        """让所有等待中的操作以 ``error`` 失败（房间释放时调用）。"""
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        self._unclaimed.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _forget(self, key: Hashable, future: asyncio.Future[T]) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]
        if future.done() and not future.cancelled():
            # 标记异常已读取，避免 "exception was never retrieved" 告警
            future.exception()
