"""
roomchat.services.room
~~~~~~~~~~~~~~~~~~~~~~

房间：一个实时通道 + 生命周期管理器 + 按配置启用的功能模块。
"""
from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from roomchat.core.config import Settings
from roomchat.core.emitter import Subscription
from roomchat.core.errors import ChatError, ErrorCode
from roomchat.core.logging import get_logger
from roomchat.schemas.room import DiscontinuityEvent, RoomOptions, RoomStatus, RoomStatusChange
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.connection import Connection
from roomchat.services.lifecycle import RoomLifecycle, RoomLifecycleManager
from roomchat.services.messages import Messages
from roomchat.services.occupancy import Occupancy
from roomchat.services.presence import Presence
from roomchat.services.room_reactions import RoomReactions
from roomchat.services.typing_indicators import Typing
from roomchat.transport.channel import RealtimeChannel, RealtimeClient, room_channel_name
from roomchat.transport.chat_api import ChatApi

logger = get_logger(__name__)


def _channel_options(options: RoomOptions) -> dict[str, Any]:
    """根据房间配置计算通道参数与模式。"""
    modes = ["PUBLISH", "SUBSCRIBE", "ANNOTATION_PUBLISH"]
    if options.presence is not None:
        modes.append("PRESENCE")
        if options.presence.subscribe:
            modes.append("PRESENCE_SUBSCRIBE")
    if options.messages.raw_message_reactions:
        modes.append("ANNOTATION_SUBSCRIBE")

    channel_options: dict[str, Any] = {"modes": modes}
    if options.occupancy is not None and options.occupancy.enable_events:
        channel_options["params"] = {"occupancy": "metrics"}
    return channel_options


class Room:
    """聊天房间。

    通常不直接构造，而是通过 ``Rooms.get()`` 获取，以保证同一房间 ID
    在进程内只有一个实例。

    Args:
        name: 房间 ID。
        options: 房间配置。
        realtime: 实时客户端。
        chat_api: REST 协作者。
        connection: 连接状态包装。
        settings: 全局配置。
        nonce: 实例标识，区分同名房间的先后实例。
    """

    def __init__(
        self,
        name: str,
        options: RoomOptions,
        realtime: RealtimeClient,
        chat_api: ChatApi,
        connection: Connection,
        settings: Settings,
        nonce: str | None = None,
    ) -> None:
        self._name = name
        self._options = options
        self._realtime = realtime
        self._nonce = nonce or uuid.uuid4().hex
        self._channel_name = room_channel_name(name)
        self._channel = realtime.channels.get(self._channel_name, _channel_options(options))

        self._lifecycle = RoomLifecycle(name)
        self._manager = RoomLifecycleManager(name, self._channel, self._lifecycle, settings, self._teardown)
        self._channels = ChannelManager(name, self._channel, self._manager, self._lifecycle)

        client_id = realtime.client_id
        self._messages = Messages(
            name, self._channels, chat_api, self._lifecycle, settings, client_id, options.messages,
        )
        self._presence: Presence | None = None
        if options.presence is not None:
            self._presence = Presence(name, self._channels, self._lifecycle, settings, options.presence)
        self._typing: Typing | None = None
        if options.typing is not None:
            self._typing = Typing(name, self._channels, self._lifecycle, connection, settings, options.typing)
        self._reactions: RoomReactions | None = None
        if options.reactions is not None:
            self._reactions = RoomReactions(name, self._channels, self._lifecycle, connection, client_id)
        self._occupancy: Occupancy | None = None
        if options.occupancy is not None:
            self._occupancy = Occupancy(name, self._channels, self._lifecycle, chat_api, options.occupancy)

        logger.info("房间已创建 | room=%s | nonce=%s", name, self._nonce)

    # ── 属性 ──────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def nonce(self) -> str:
        return self._nonce

    def options(self) -> RoomOptions:
        """房间配置的深拷贝。"""
        return self._options.model_copy(deep=True)

    @property
    def status(self) -> RoomStatus:
        return self._lifecycle.status

    @property
    def error(self) -> ChatError | None:
        return self._lifecycle.error

    @property
    def channel(self) -> RealtimeChannel:
        return self._channel

    # ── 功能模块 ──────────────────────────────────────────────────────

    @property
    def messages(self) -> Messages:
        return self._messages

    @property
    def presence(self) -> Presence:
        return self._feature(self._presence, "presence")

    @property
    def typing(self) -> Typing:
        return self._feature(self._typing, "typing")

    @property
    def reactions(self) -> RoomReactions:
        return self._feature(self._reactions, "reactions")

    @property
    def occupancy(self) -> Occupancy:
        return self._feature(self._occupancy, "occupancy")

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def attach(self) -> None:
        """显式 attach；此后即使所有监听器都取消，房间也保持 attached。"""
        self._lifecycle.ensure_usable("attach room")
        self._channels.pin()
        await self._manager.attach()

    async def detach(self) -> None:
        self._lifecycle.ensure_usable("detach room")
        self._channels.unpin()
        await self._manager.detach()

    async def release(self) -> None:
        """释放房间。一般通过 ``Rooms.release()`` 调用。"""
        await self._manager.release()
        logger.info("房间已释放 | room=%s | nonce=%s", self._name, self._nonce)

    def on_status_change(
        self,
        listener: Callable[[RoomStatusChange], None],
        *,
        emit_current: bool = False,
    ) -> Subscription:
        return self._lifecycle.on_change(listener, emit_current=emit_current)

    def on_discontinuity(self, listener: Callable[[DiscontinuityEvent], None]) -> Subscription:
        return self._lifecycle.on_discontinuity(listener)

    # ── 内部 ──────────────────────────────────────────────────────────

    def _feature(self, feature: Any, name: str) -> Any:
        if feature is None:
            raise ChatError(
                f"unable to access {name}; {name} is not enabled in room options",
                ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM,
                400,
            )
        return feature

    def _teardown(self) -> None:
        self._channels.cancel_pending()
        self._messages.dispose()
        for feature in (self._presence, self._typing, self._reactions, self._occupancy):
            if feature is not None:
                feature.dispose()
        self._realtime.channels.release(self._channel_name)
