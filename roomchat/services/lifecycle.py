"""
roomchat.services.lifecycle
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间状态机与生命周期管理。

``RoomLifecycle`` 保存房间当前状态并同步、按顺序广播每一次状态迁移；
``RoomLifecycleManager`` 用一把 ``asyncio.Lock`` 串行化 attach / detach / release，
并在没有进行中的操作时把通道状态映射为房间状态。

suspended 不会无限期停留：进入 suspended 后启动恢复任务，
按固定间隔重新 attach，超过最大次数后进入 failed。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable

from roomchat.core.config import Settings
from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.room import (
    DiscontinuityEvent,
    RoomStatus,
    RoomStatusChange,
    RoomStatusEventType,
)
from roomchat.transport.channel import ChannelState, ChannelStateChange, RealtimeChannel

logger = get_logger(__name__)

_CHANNEL_TO_ROOM: dict[ChannelState, RoomStatus] = {
    ChannelState.INITIALIZED: RoomStatus.INITIALIZED,
    ChannelState.ATTACHING: RoomStatus.ATTACHING,
    ChannelState.ATTACHED: RoomStatus.ATTACHED,
    ChannelState.DETACHING: RoomStatus.DETACHING,
    ChannelState.DETACHED: RoomStatus.DETACHED,
    ChannelState.SUSPENDED: RoomStatus.SUSPENDED,
    ChannelState.FAILED: RoomStatus.FAILED,
}


class RoomLifecycle:
    """房间状态持有者。

    Args:
        room_name: 房间名，仅用于日志。
    """

    def __init__(self, room_name: str) -> None:
        self._room_name = room_name
        self._status = RoomStatus.INITIALIZED
        self._error: ChatError | None = None
        self._emitter: EventEmitter[RoomStatusEventType, object] = EventEmitter(
            RoomStatusEventType, f"room:{room_name}",
        )

    @property
    def status(self) -> RoomStatus:
        return self._status

    @property
    def error(self) -> ChatError | None:
        return self._error

    def set_status(self, status: RoomStatus, error: ChatError | None = None) -> None:
        """迁移到新状态并同步通知监听器；状态未变化时忽略。"""
        if status is self._status:
            return
        change = RoomStatusChange(current=status, previous=self._status, error=error)
        self._status = status
        self._error = error
        if error is not None:
            logger.warning(
                "房间状态变化 | room=%s | %s -> %s | error=%s",
                self._room_name, change.previous.value, status.value, error.message,
            )
        else:
            logger.info("房间状态变化 | room=%s | %s -> %s", self._room_name, change.previous.value, status.value)
        self._emitter.emit(RoomStatusEventType.STATUS_CHANGE, change)

    def on_change(
        self,
        listener: Callable[[RoomStatusChange], None],
        *,
        emit_current: bool = False,
    ) -> Subscription:
        """订阅状态变化；``emit_current`` 为 True 时立即回放当前状态一次。"""
        subscription = self._emitter.subscribe(listener, [RoomStatusEventType.STATUS_CHANGE])
        if emit_current:
            listener(RoomStatusChange(current=self._status, previous=self._status, error=self._error))
        return subscription

    def on_discontinuity(self, listener: Callable[[DiscontinuityEvent], None]) -> Subscription:
        return self._emitter.subscribe(listener, [RoomStatusEventType.DISCONTINUITY])

    def emit_discontinuity(self, error: ChatError) -> None:
        logger.warning("房间消息连续性中断 | room=%s | error=%s", self._room_name, error.message)
        self._emitter.emit(RoomStatusEventType.DISCONTINUITY, DiscontinuityEvent(error=error))

    def ensure_usable(self, operation: str) -> None:
        """已释放（或正在释放）的房间拒绝一切操作。"""
        if self._status is RoomStatus.RELEASED:
            raise ChatError(f"unable to {operation}; room is released", ErrorCode.ROOM_IS_RELEASED, 400)
        if self._status is RoomStatus.RELEASING:
            raise ChatError(f"unable to {operation}; room is releasing", ErrorCode.ROOM_IS_RELEASING, 400)

    def clear(self) -> None:
        self._emitter.clear()


class RoomLifecycleManager:
    """串行化房间的 attach / detach / release。

    Args:
        room_name: 房间名。
        channel: 房间共享的实时通道。
        lifecycle: 房间状态持有者。
        settings: 全局配置（重试间隔等）。
        teardown: release 过程中、进入 released 之前调用一次的清理回调。
    """

    def __init__(
        self,
        room_name: str,
        channel: RealtimeChannel,
        lifecycle: RoomLifecycle,
        settings: Settings,
        teardown: Callable[[], None],
    ) -> None:
        self._room_name = room_name
        self._channel = channel
        self._lifecycle = lifecycle
        self._settings = settings
        self._teardown = teardown

        self._lock = asyncio.Lock()
        self._operation_in_progress = False
        self._has_attached_once = False
        self._explicitly_detached = False

        self._attach_task: asyncio.Task[None] | None = None
        self._detach_task: asyncio.Task[None] | None = None
        self._release_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None

        self._off_channel = channel.on_state_change(self._on_channel_state)

    # ── 公开操作 ──────────────────────────────────────────────────────

    async def attach(self) -> None:
        """attach 房间；并发调用合并为同一个进行中的操作。"""
        self._check_not_releasing("attach room")
        if self._attach_task is None or self._attach_task.done():
            self._attach_task = asyncio.get_running_loop().create_task(self._do_attach())
        await asyncio.shield(self._attach_task)

    async def detach(self) -> None:
        """detach 房间；监听器保留，重新 attach 后继续收到事件。"""
        self._check_not_releasing("detach room")
        if self._lifecycle.status is RoomStatus.FAILED:
            raise ChatError("unable to detach room; room is in a failed state", ErrorCode.ROOM_IN_FAILED_STATE, 400)
        if self._detach_task is None or self._detach_task.done():
            self._detach_task = asyncio.get_running_loop().create_task(self._do_detach())
        await asyncio.shield(self._detach_task)

    async def release(self) -> None:
        """释放房间（终态、幂等）。并发调用共享同一个释放任务。"""
        if self._release_task is None:
            if self._lifecycle.status is RoomStatus.RELEASED:
                return
            self._release_task = asyncio.get_running_loop().create_task(self._do_release())
        await asyncio.shield(self._release_task)

    # ── 操作实现 ──────────────────────────────────────────────────────

    async def _do_attach(self) -> None:
        async with self._lock:
            self._check_not_releasing("attach room")
            if self._lifecycle.status is RoomStatus.ATTACHED:
                return

            self._cancel_recovery()
            self._operation_in_progress = True
            try:
                self._lifecycle.set_status(RoomStatus.ATTACHING)
                try:
                    await self._channel.attach()
                except Exception as exc:
                    error = wrap_error("attach room", exc)
                    status = _CHANNEL_TO_ROOM.get(self._channel.state, RoomStatus.FAILED)
                    if status not in (RoomStatus.SUSPENDED, RoomStatus.FAILED):
                        status = RoomStatus.FAILED
                    self._lifecycle.set_status(status, error)
                    if status is RoomStatus.SUSPENDED:
                        self._start_recovery()
                    raise error from exc

                self._notify_discontinuity_if_needed()
                self._has_attached_once = True
                self._explicitly_detached = False
                self._lifecycle.set_status(RoomStatus.ATTACHED)
            finally:
                self._operation_in_progress = False

    async def _do_detach(self) -> None:
        async with self._lock:
            self._check_not_releasing("detach room")
            status = self._lifecycle.status
            if status is RoomStatus.FAILED:
                raise ChatError("unable to detach room; room is in a failed state", ErrorCode.ROOM_IN_FAILED_STATE, 400)
            if status is RoomStatus.DETACHED:
                return

            self._cancel_recovery()
            self._explicitly_detached = True
            self._operation_in_progress = True
            try:
                self._lifecycle.set_status(RoomStatus.DETACHING)
                try:
                    await self._channel.detach()
                except Exception as exc:
                    error = wrap_error("detach room", exc)
                    self._lifecycle.set_status(_CHANNEL_TO_ROOM.get(self._channel.state, RoomStatus.FAILED), error)
                    raise error from exc
                self._lifecycle.set_status(RoomStatus.DETACHED)
            finally:
                self._operation_in_progress = False

    async def _do_release(self) -> None:
        async with self._lock:
            self._cancel_recovery()
            status = self._lifecycle.status
            if status is RoomStatus.RELEASED:
                return

            self._operation_in_progress = True
            try:
                self._lifecycle.set_status(RoomStatus.RELEASING)
                if status not in (RoomStatus.INITIALIZED, RoomStatus.DETACHED, RoomStatus.FAILED):
                    await self._detach_until_done()
                self._off_channel()
                self._teardown()
            finally:
                self._operation_in_progress = False
            self._lifecycle.set_status(RoomStatus.RELEASED)

    async def _detach_until_done(self) -> None:
        """释放时反复 detach，直到成功或通道进入 failed。"""
        while True:
            try:
                await self._channel.detach()
                return
            except Exception as exc:
                if self._channel.state is ChannelState.FAILED:
                    logger.warning("释放房间时通道已失败，跳过 detach | room=%s | error=%s", self._room_name, exc)
                    return
                logger.warning(
                    "释放房间时 detach 失败，稍后重试 | room=%s | retry_in=%.2fs | error=%s",
                    self._room_name, self._settings.RELEASE_DETACH_RETRY_INTERVAL, exc,
                )
                await asyncio.sleep(self._settings.RELEASE_DETACH_RETRY_INTERVAL)

    # ── 通道状态 ──────────────────────────────────────────────────────

    def _on_channel_state(self, change: ChannelStateChange) -> None:
        if self._operation_in_progress or self._release_task is not None:
            logger.debug(
                "操作进行中，忽略通道状态变化 | room=%s | state=%s", self._room_name, change.current.value,
            )
            return

        status = _CHANNEL_TO_ROOM.get(change.current)
        if status is None:
            logger.warning("未知的通道状态 | room=%s | state=%s", self._room_name, change.current)
            return

        if status is RoomStatus.ATTACHED:
            if not change.resumed:
                self._notify_discontinuity_if_needed(change.reason)
            self._has_attached_once = True
            self._explicitly_detached = False

        self._lifecycle.set_status(status, change.reason)
        if status is RoomStatus.SUSPENDED:
            self._start_recovery()
        elif status in (RoomStatus.ATTACHED, RoomStatus.FAILED):
            self._cancel_recovery()

    def _notify_discontinuity_if_needed(self, reason: ChatError | None = None) -> None:
        if not self._has_attached_once or self._explicitly_detached:
            return
        message = "unable to continue message stream; discontinuity detected"
        if reason is not None:
            message += f": {reason.message}"
        self._lifecycle.emit_discontinuity(ChatError(message, ErrorCode.ROOM_DISCONTINUITY, 500, cause=reason))

    # ── suspended 恢复 ────────────────────────────────────────────────

    def _start_recovery(self) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.get_running_loop().create_task(self._recover_from_suspension())

    def _cancel_recovery(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _recover_from_suspension(self) -> None:
        interval = self._settings.SUSPENDED_RETRY_INTERVAL
        max_retries = self._settings.SUSPENDED_MAX_RETRIES

        for attempt in range(1, max_retries + 1):
            await asyncio.sleep(interval)
            if self._lifecycle.status is not RoomStatus.SUSPENDED:
                return

            async with self._lock:
                if self._lifecycle.status is not RoomStatus.SUSPENDED or self._release_task is not None:
                    return
                logger.info(
                    "尝试从 suspended 恢复 | room=%s | attempt=%d/%d", self._room_name, attempt, max_retries,
                )
                self._operation_in_progress = True
                try:
                    self._lifecycle.set_status(RoomStatus.ATTACHING)
                    try:
                        await self._channel.attach()
                    except Exception as exc:
                        error = wrap_error("recover room from suspension", exc)
                        if self._channel.state is ChannelState.FAILED:
                            self._lifecycle.set_status(RoomStatus.FAILED, error)
                            return
                        self._lifecycle.set_status(RoomStatus.SUSPENDED, error)
                        continue

                    self._notify_discontinuity_if_needed()
                    self._lifecycle.set_status(RoomStatus.ATTACHED)
                    return
                finally:
                    self._operation_in_progress = False

        if self._lifecycle.status is RoomStatus.SUSPENDED and self._release_task is None:
            self._lifecycle.set_status(
                RoomStatus.FAILED,
                ChatError(
                    f"unable to recover room from suspension; gave up after {max_retries} attempts",
                    ErrorCode.OPERATION_TIMEOUT,
                    504,
                ),
            )

    # ── 内部 ──────────────────────────────────────────────────────────

    def _check_not_releasing(self, operation: str) -> None:
        self._lifecycle.ensure_usable(operation)
        if self._release_task is not None:
            raise ChatError(f"unable to {operation}; room is releasing", ErrorCode.ROOM_IS_RELEASING, 400)
