"""
roomchat.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态：进入 / 更新 / 离开、成员查询与成员集合订阅。

成员集合订阅在每次在线事件后重新拉取完整成员列表。
拉取按 "最新请求" 计数器去重：只有最后发起的请求可以更新状态，
先发起但后返回的慢请求会被丢弃。失败时指数退避重试，超过最大次数后
向订阅者推送 ``PRESENCE_FETCH_FAILED``。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from roomchat.core.config import Settings
from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.features import (
    PresenceEvent,
    PresenceEventType,
    PresenceMember,
    PresenceSetEvent,
    PresenceSetEventType,
)
from roomchat.schemas.room import DiscontinuityEvent, PresenceOptions, RoomStatus, RoomStatusChange
from roomchat.schemas.types import from_millis
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.transport.channel import PresenceMessage

logger = get_logger(__name__)

_NOT_ENTERED = object()


def _member_from(message: PresenceMessage) -> PresenceMember:
    return PresenceMember(
        client_id=message.client_id,
        connection_id=message.connection_id,
        data=message.data,
        updated_at=from_millis(message.timestamp),
    )


class Presence:
    """单个房间的在线状态功能。"""

    def __init__(
        self,
        room_id: str,
        channels: ChannelManager,
        lifecycle: RoomLifecycle,
        settings: Settings,
        options: PresenceOptions,
    ) -> None:
        self._room_id = room_id
        self._channels = channels
        self._channel = channels.channel
        self._lifecycle = lifecycle
        self._settings = settings
        self._options = options

        self._emitter: EventEmitter[PresenceEventType, PresenceEvent] = EventEmitter(PresenceEventType, "presence")
        self._members_emitter: EventEmitter[PresenceSetEventType, PresenceSetEvent] = EventEmitter(
            PresenceSetEventType, "presence.members",
        )
        self._entered_data: Any = _NOT_ENTERED
        self._latest_request = 0
        self._tasks: set[asyncio.Task[None]] = set()

        self._off_presence = self._channel.presence.subscribe(self._on_presence_message)
        self._status_sub = lifecycle.on_change(self._on_status_change)
        self._discontinuity_sub = lifecycle.on_discontinuity(self._on_discontinuity)

    # ── 写操作 ────────────────────────────────────────────────────────

    async def enter(self, data: Any = None) -> None:
        self._ensure_can_write("enter presence")
        try:
            await self._channel.presence.enter(data)
        except Exception as exc:
            raise wrap_error("enter presence", exc) from exc
        self._entered_data = data

    async def update(self, data: Any = None) -> None:
        self._ensure_can_write("update presence")
        try:
            await self._channel.presence.update(data)
        except Exception as exc:
            raise wrap_error("update presence", exc) from exc
        self._entered_data = data

    async def leave(self, data: Any = None) -> None:
        self._ensure_can_write("leave presence")
        try:
            await self._channel.presence.leave(data)
        except Exception as exc:
            raise wrap_error("leave presence", exc) from exc
        self._entered_data = _NOT_ENTERED

    # ── 查询 ──────────────────────────────────────────────────────────

    async def get(self, wait_for_sync: bool = True) -> list[PresenceMember]:
        """当前在线成员列表。

        ``wait_for_sync`` 交由传输层处理；内存传输总是同步完成。
        """
        operation = "get presence members"
        self._lifecycle.ensure_usable(operation)
        self._ensure_attached(operation)
        try:
            messages = await self._channel.presence.get()
        except Exception as exc:
            raise wrap_error(operation, exc) from exc
        return [_member_from(message) for message in messages]

    async def is_user_present(self, client_id: str) -> bool:
        return any(member.client_id == client_id for member in await self.get())

    # ── 订阅 ──────────────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[PresenceEvent], None]) -> Subscription:
        """订阅单个成员的在线事件。"""
        self._ensure_can_subscribe("subscribe to presence")
        return self._hold(self._emitter.subscribe(listener))

    def subscribe_members(self, listener: Callable[[PresenceSetEvent], None]) -> Subscription:
        """订阅完整成员集合；注册后立即发起一次拉取。"""
        self._ensure_can_subscribe("subscribe to presence members")
        subscription = self._hold(self._members_emitter.subscribe(listener))
        if self._lifecycle.status is RoomStatus.ATTACHED:
            self._schedule_refresh()
        return subscription

    def dispose(self) -> None:
        self._off_presence()
        self._status_sub.unsubscribe()
        self._discontinuity_sub.unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._emitter.clear()
        self._members_emitter.clear()

    # ── 事件 ──────────────────────────────────────────────────────────

    def _on_presence_message(self, message: PresenceMessage) -> None:
        try:
            event_type = PresenceEventType(message.action.value)
        except ValueError:
            logger.warning("未知的在线事件，已丢弃 | room=%s | action=%s", self._room_id, message.action)
            return
        self._emitter.emit(event_type, PresenceEvent(type=event_type, member=_member_from(message)))
        if self._members_emitter.listener_count:
            self._schedule_refresh()

    def _on_status_change(self, change: RoomStatusChange) -> None:
        if change.current is RoomStatus.ATTACHED and self._members_emitter.listener_count:
            self._schedule_refresh()

    def _on_discontinuity(self, event: DiscontinuityEvent) -> None:
        # 重新进入失败的通知本身也走连续性通道，不能再次触发重新进入
        if event.error is not None and event.error.code == ErrorCode.PRESENCE_AUTO_REENTRY_FAILED:
            return
        if self._entered_data is _NOT_ENTERED:
            return
        self._spawn(self._reenter(self._entered_data))
        if self._members_emitter.listener_count:
            self._schedule_refresh()

    async def _reenter(self, data: Any) -> None:
        try:
            await self._channel.presence.enter(data)
            logger.info("连续性中断后已自动重新进入在线状态 | room=%s", self._room_id)
        except Exception as exc:
            logger.error("自动重新进入在线状态失败 | room=%s | error=%s", self._room_id, exc)
            self._lifecycle.emit_discontinuity(
                ChatError(
                    f"unable to re-enter presence; {exc}",
                    ErrorCode.PRESENCE_AUTO_REENTRY_FAILED,
                    500,
                    cause=exc,
                ),
            )

    # ── 成员集合拉取 ──────────────────────────────────────────────────

    def _schedule_refresh(self) -> None:
        self._latest_request += 1
        self._spawn(self._refresh_members(self._latest_request))

    async def _refresh_members(self, request_id: int) -> None:
        max_retries = self._settings.PRESENCE_GET_MAX_RETRIES
        last_error: Exception | None = None

        for attempt in range(1, max_retries + 1):
            if request_id != self._latest_request:
                return
            try:
                members = await self.get()
            except ChatError as exc:
                last_error = exc
                if attempt == max_retries:
                    break
                delay = min(
                    self._settings.PRESENCE_GET_RETRY_INTERVAL * 2 ** (attempt - 1),
                    self._settings.PRESENCE_GET_RETRY_MAX_INTERVAL,
                )
                logger.warning(
                    "拉取在线成员失败，稍后重试 | room=%s | attempt=%d/%d | retry_in=%.2fs | error=%s",
                    self._room_id, attempt, max_retries, delay, exc.message,
                )
                await asyncio.sleep(delay)
                continue

            if request_id != self._latest_request:
                logger.debug("丢弃过期的在线成员结果 | room=%s | request=%d", self._room_id, request_id)
                return
            self._members_emitter.emit(PresenceSetEventType.MEMBERS, PresenceSetEvent(members=members))
            return

        if request_id == self._latest_request:
            error = ChatError(
                f"unable to fetch presence members; {last_error}",
                ErrorCode.PRESENCE_FETCH_FAILED,
                500,
                cause=last_error,
            )
            logger.error("拉取在线成员最终失败 | room=%s | attempts=%d", self._room_id, max_retries)
            self._members_emitter.emit(PresenceSetEventType.MEMBERS, PresenceSetEvent(error=error))

    # ── 内部 ──────────────────────────────────────────────────────────

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _hold(self, subscription: Subscription) -> Subscription:
        self._channels.hold("presence")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            self._channels.drop("presence")

        return Subscription(_unsubscribe)

    def _ensure_can_write(self, operation: str) -> None:
        self._lifecycle.ensure_usable(operation)
        if not self._options.enter:
            raise ChatError(
                f"unable to {operation}; presence enter is not enabled in room options",
                ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM,
                400,
            )
        if self._lifecycle.status not in (RoomStatus.ATTACHED, RoomStatus.ATTACHING):
            raise ChatError(
                f"unable to {operation}; room is {self._lifecycle.status.value}, it must be attached or attaching",
                ErrorCode.ROOM_IN_INVALID_STATE,
                400,
            )

    def _ensure_can_subscribe(self, operation: str) -> None:
        self._lifecycle.ensure_usable(operation)
        if not self._options.subscribe:
            raise ChatError(
                f"unable to {operation}; presence subscribe is not enabled in room options",
                ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM,
                400,
            )

    def _ensure_attached(self, operation: str) -> None:
        if self._lifecycle.status is not RoomStatus.ATTACHED:
            raise ChatError(
                f"unable to {operation}; room is {self._lifecycle.status.value}, it must be attached",
                ErrorCode.ROOM_IN_INVALID_STATE,
                400,
            )
