"""
roomchat.transport.channel
~~~~~~~~~~~~~~~~~~~~~~~~~~

实时传输层的窄接口（外部协作者）。

SDK 只通过这里定义的 ``Protocol`` 消费实时连接、通道与在线状态原语；
连接建立、编解码与 socket 级重连都由具体的传输实现负责。
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from roomchat.core.errors import ChatError


class ChannelState(str, Enum):
    INITIALIZED = "initialized"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"
    DETACHED = "detached"
    SUSPENDED = "suspended"
    FAILED = "failed"


class ChannelStateChange(BaseModel):
    """通道状态变化通知。``resumed`` 为 False 的 attached 表示连续性丢失。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    current: ChannelState
    previous: ChannelState
    reason: ChatError | None = None
    resumed: bool = False


class ChannelProperties(BaseModel):
    """通道位置信息，用于确定订阅点。"""

    attach_serial: str | None = Field(default=None, description="最近一次 attach 时的通道位置")
    channel_serial: str | None = Field(default=None, description="当前通道位置")


class InboundMessage(BaseModel):
    """通道上收到的一条原始消息。"""

    name: str = Field(..., description="事件名")
    action: str | None = Field(default=None, description="动作，如 message.create")
    data: Any = Field(default=None, description="负载")
    client_id: str | None = Field(default=None, description="发布者")
    connection_id: str | None = Field(default=None, description="发布者连接")
    serial: str | None = Field(default=None, description="消息序列号")
    version: dict[str, Any] | None = Field(default=None, description="版本信息")
    timestamp: int | None = Field(default=None, description="毫秒时间戳")
    extras: dict[str, Any] = Field(default_factory=dict, description="扩展字段，如 headers")


class PresenceAction(str, Enum):
    ENTER = "enter"
    LEAVE = "leave"
    UPDATE = "update"
    PRESENT = "present"


class PresenceMessage(BaseModel):
    action: PresenceAction
    client_id: str
    connection_id: str | None = None
    data: Any = None
    timestamp: int | None = None


class ConnectionState(str, Enum):
    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SUSPENDED = "suspended"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionStateChange(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    current: str
    previous: str
    reason: ChatError | None = None
    retry_in: float | None = None


MessageHandler = Callable[[InboundMessage], None]
PresenceHandler = Callable[[PresenceMessage], None]


class RealtimePresence(Protocol):
    async def enter(self, data: Any = None) -> None: ...

    async def update(self, data: Any = None) -> None: ...

    async def leave(self, data: Any = None) -> None: ...

    async def get(self) -> list[PresenceMessage]: ...

    def subscribe(self, handler: PresenceHandler) -> Callable[[], None]: ...


class RealtimeChannel(Protocol):
    name: str

    @property
    def state(self) -> ChannelState: ...

    @property
    def error_reason(self) -> ChatError | None: ...

    @property
    def properties(self) -> ChannelProperties: ...

    @property
    def presence(self) -> RealtimePresence: ...

    async def attach(self) -> None: ...

    async def detach(self) -> None: ...

    def subscribe(self, handler: MessageHandler, names: Sequence[str] | None = None) -> None: ...

    def unsubscribe(self, handler: MessageHandler) -> None: ...

    async def publish(self, name: str, data: Any, extras: dict[str, Any] | None = None) -> None: ...

    def on_state_change(self, listener: Callable[[ChannelStateChange], None]) -> Callable[[], None]: ...


class RealtimeConnection(Protocol):
    @property
    def state(self) -> str: ...

    @property
    def error_reason(self) -> ChatError | None: ...

    def on_state_change(self, listener: Callable[[ConnectionStateChange], None]) -> Callable[[], None]: ...


class RealtimeChannels(Protocol):
    def get(self, name: str, options: dict[str, Any] | None = None) -> RealtimeChannel: ...

    def release(self, name: str) -> None: ...


class RealtimeClient(Protocol):
    @property
    def client_id(self) -> str | None: ...

    @property
    def connection(self) -> RealtimeConnection: ...

    @property
    def channels(self) -> RealtimeChannels: ...


def room_channel_name(room_id: str) -> str:
    """房间对应的实时通道名。"""
    return f"{room_id}::$chat"
