"""
roomchat.services.channel_manager
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间共享通道的引用计数。

各功能模块在注册第一个监听器时 ``hold()``、移除最后一个监听器时 ``drop()``。
所有功能的持有数之和从 0 变为 1 时自动 attach，回到 0 时自动 detach；
显式调用过 ``room.attach()`` 的房间被 "钉住"，不会因监听器清空而 detach。
"""
from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Coroutine
from typing import Any

from roomchat.core.logging import get_logger
from roomchat.schemas.room import RoomStatus
from roomchat.services.lifecycle import RoomLifecycle, RoomLifecycleManager
from roomchat.transport.channel import RealtimeChannel

logger = get_logger(__name__)


class ChannelManager:
    """持有房间通道并跨功能统计监听引用。

    Args:
        room_name: 房间名（日志用）。
        channel: 共享通道。
        manager: 房间生命周期管理器。
        lifecycle: 房间状态持有者。
    """

    def __init__(
        self,
        room_name: str,
        channel: RealtimeChannel,
        manager: RoomLifecycleManager,
        lifecycle: RoomLifecycle,
    ) -> None:
        self._room_name = room_name
        self._channel = channel
        self._manager = manager
        self._lifecycle = lifecycle
        self._holds: Counter[str] = Counter()
        self._pinned = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def channel(self) -> RealtimeChannel:
        return self._channel

    @property
    def hold_count(self) -> int:
        return sum(self._holds.values())

    def hold(self, feature: str) -> None:
        """功能模块新增一个监听器。"""
        first = self.hold_count == 0
        self._holds[feature] += 1
        if first and self._lifecycle.status in (RoomStatus.INITIALIZED, RoomStatus.DETACHED):
            self._spawn(self._auto_attach, "attach")

    def drop(self, feature: str) -> None:
        """功能模块移除一个监听器。"""
        if self._holds[feature] <= 0:
            return
        self._holds[feature] -= 1
        if self._holds[feature] == 0:
            del self._holds[feature]
        if self.hold_count == 0 and not self._pinned and self._lifecycle.status in (
            RoomStatus.ATTACHING,
            RoomStatus.ATTACHED,
        ):
            self._spawn(self._manager.detach, "detach")

    def pin(self) -> None:
        self._pinned = True

    def unpin(self) -> None:
        self._pinned = False

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()

    async def _auto_attach(self) -> None:
        await self._manager.attach()
        # attach 完成前监听器可能已全部移除，此时 drop() 看到的状态还不是 attaching
        if self.hold_count == 0 and not self._pinned and self._lifecycle.status is RoomStatus.ATTACHED:
            logger.info("自动 attach 完成时已无监听器，转为 detach | room=%s", self._room_name)
            await self._manager.detach()

    def _spawn(self, operation: Callable[[], Coroutine[Any, Any, None]], name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("没有运行中的事件循环，跳过自动 %s | room=%s", name, self._room_name)
            return

        task = loop.create_task(operation())
        self._tasks.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.warning("自动 %s 失败 | room=%s | error=%s", name, self._room_name, error)

        task.add_done_callback(_done)
