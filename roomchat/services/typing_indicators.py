"""
roomchat.services.typing_indicators
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

输入状态（"对方正在输入…"）。

本地：``start()`` 视为一次按键。首次按键发布 ``typing.started`` 并启动
``timeout_ms`` 计时器；后续按键只重置计时器，距上次发布超过
``heartbeat_throttle_ms`` 时再补发一次心跳。计时器到期只发布一次 ``typing.stopped``。

远端：按客户端维护正在输入的集合，每个成员一个不活跃计时器
（``timeout_ms`` + 宽限时间），集合变化时才向订阅者推送事件。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from roomchat.core.config import Settings
from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.features import (
    TypingChange,
    TypingEventType,
    TypingSetEvent,
    TypingSetEventType,
)
from roomchat.schemas.room import TypingOptions
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.connection import Connection
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.transport.channel import InboundMessage
from roomchat.transport.wire import TYPING_STARTED_EVENT, TYPING_STOPPED_EVENT

logger = get_logger(__name__)


class Typing:
    """单个房间的输入状态功能。"""

    def __init__(
        self,
        room_id: str,
        channels: ChannelManager,
        lifecycle: RoomLifecycle,
        connection: Connection,
        settings: Settings,
        options: TypingOptions,
    ) -> None:
        self._room_id = room_id
        self._channels = channels
        self._channel = channels.channel
        self._lifecycle = lifecycle
        self._connection = connection
        self._options = options
        self._timeout = options.timeout_ms / 1000
        self._heartbeat = options.heartbeat_throttle_ms / 1000
        self._inactivity = (options.timeout_ms + settings.TYPING_INACTIVITY_GRACE_MS) / 1000

        self._emitter: EventEmitter[TypingSetEventType, TypingSetEvent] = EventEmitter(TypingSetEventType, "typing")
        self._lock = asyncio.Lock()

        # 本地状态
        self._typing = False
        self._last_published: float | None = None
        self._stop_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        # 远端状态：client_id -> 不活跃计时器
        self._remote: dict[str, asyncio.TimerHandle] = {}

        self._channel.subscribe(self._on_inbound, [TYPING_STARTED_EVENT, TYPING_STOPPED_EVENT])

    @property
    def current(self) -> frozenset[str]:
        """当前正在输入的客户端集合。"""
        return frozenset(self._remote)

    # ── 本地按键 ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """记录一次按键。"""
        operation = "start typing"
        async with self._lock:
            self._ensure_can_publish(operation)
            loop = asyncio.get_running_loop()
            now = loop.time()
            heartbeat_due = self._last_published is None or now - self._last_published >= self._heartbeat
            if not self._typing or heartbeat_due:
                await self._publish(TYPING_STARTED_EVENT, operation)
                self._last_published = now
            self._typing = True
            self._arm_stop_timer(loop)

    async def stop(self) -> None:
        """立即停止输入；未在输入时什么也不做。"""
        operation = "stop typing"
        async with self._lock:
            self._ensure_can_publish(operation)
            if not self._typing:
                return
            self._cancel_stop_timer()
            self._typing = False
            self._last_published = None
            await self._publish(TYPING_STOPPED_EVENT, operation)

    def subscribe(self, listener: Callable[[TypingSetEvent], None]) -> Subscription:
        self._lifecycle.ensure_usable("subscribe to typing events")
        subscription = self._emitter.subscribe(listener)
        self._channels.hold("typing")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            self._channels.drop("typing")

        return Subscription(_unsubscribe)

    def dispose(self) -> None:
        self._channel.unsubscribe(self._on_inbound)
        self._cancel_stop_timer()
        for handle in self._remote.values():
            handle.cancel()
        self._remote.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._emitter.clear()

    # ── 本地计时器 ────────────────────────────────────────────────────

    def _arm_stop_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        self._cancel_stop_timer()
        self._stop_timer = loop.call_later(self._timeout, self._on_stop_timer)

    def _cancel_stop_timer(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _on_stop_timer(self) -> None:
        self._stop_timer = None
        task = asyncio.get_running_loop().create_task(self._expire())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire(self) -> None:
        async with self._lock:
            # 等锁期间可能已被 stop() 或新的按键接管
            if not self._typing or self._stop_timer is not None:
                return
            self._typing = False
            self._last_published = None
            try:
                await self._publish(TYPING_STOPPED_EVENT, "stop typing")
            except ChatError as exc:
                logger.warning("输入超时后发布停止事件失败 | room=%s | error=%s", self._room_id, exc.message)

    async def _publish(self, name: str, operation: str) -> None:
        try:
            await self._channel.publish(name, {}, extras={"ephemeral": True})
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

    def _ensure_can_publish(self, operation: str) -> None:
        self._lifecycle.ensure_usable(operation)
        if not self._connection.is_connected:
            raise ChatError(
                f"unable to {operation}; connection is {self._connection.status.value}",
                ErrorCode.DISCONNECTED,
                400,
            )

    # ── 远端事件 ──────────────────────────────────────────────────────

    def _on_inbound(self, inbound: InboundMessage) -> None:
        client_id = inbound.client_id
        if not client_id:
            logger.warning("输入事件缺少 client_id，已丢弃 | room=%s | event=%s", self._room_id, inbound.name)
            return

        if inbound.name == TYPING_STARTED_EVENT:
            self._on_remote_started(client_id)
        else:
            self._on_remote_stopped(client_id)

    def _on_remote_started(self, client_id: str) -> None:
        loop = asyncio.get_running_loop()
        existing = self._remote.get(client_id)
        if existing is not None:
            existing.cancel()
        self._remote[client_id] = loop.call_later(self._inactivity, self._on_remote_inactive, client_id)
        if existing is None:
            self._emit(client_id, TypingEventType.STARTED)

    def _on_remote_stopped(self, client_id: str) -> None:
        handle = self._remote.pop(client_id, None)
        if handle is None:
            return
        handle.cancel()
        self._emit(client_id, TypingEventType.STOPPED)

    def _on_remote_inactive(self, client_id: str) -> None:
        if self._remote.pop(client_id, None) is None:
            return
        logger.debug("远端输入超时 | room=%s | client=%s", self._room_id, client_id)
        self._emit(client_id, TypingEventType.STOPPED)

    def _emit(self, client_id: str, event_type: TypingEventType) -> None:
        event = TypingSetEvent(
            current=self.current,
            change=TypingChange(client_id=client_id, type=event_type),
        )
        self._emitter.emit(TypingSetEventType.SET_CHANGED, event)
