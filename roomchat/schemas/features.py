"""
roomchat.schemas.features
~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态、输入状态、在线人数与连接状态的事件模型。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from roomchat.core.errors import ChatError


# ── 在线状态 ──────────────────────────────────────────────────────────

class PresenceEventType(str, Enum):
    ENTER = "enter"
    LEAVE = "leave"
    UPDATE = "update"
    PRESENT = "present"


class PresenceMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., description="成员客户端 ID")
    connection_id: str | None = Field(default=None, description="成员连接 ID")
    data: Any = Field(default=None, description="成员附带数据")
    updated_at: datetime = Field(..., description="最近一次更新时间")


class PresenceEvent(BaseModel):
    type: PresenceEventType = Field(..., description="事件类型")
    member: PresenceMember = Field(..., description="发生变化的成员")


class PresenceSetEventType(str, Enum):
    MEMBERS = "presence.members"


class PresenceSetEvent(BaseModel):
    """完整在线成员集合；拉取最终失败时 ``error`` 非空。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    members: list[PresenceMember] = Field(default_factory=list, description="当前在线成员")
    error: ChatError | None = Field(default=None, description="拉取失败原因")


# ── 输入状态 ──────────────────────────────────────────────────────────

class TypingEventType(str, Enum):
    STARTED = "typing.started"
    STOPPED = "typing.stopped"


class TypingSetEventType(str, Enum):
    SET_CHANGED = "typing.set_changed"


class TypingChange(BaseModel):
    client_id: str = Field(..., description="状态变化的客户端")
    type: TypingEventType = Field(..., description="开始 / 停止输入")


class TypingSetEvent(BaseModel):
    type: TypingSetEventType = Field(default=TypingSetEventType.SET_CHANGED)
    current: frozenset[str] = Field(..., description="当前正在输入的客户端集合")
    change: TypingChange = Field(..., description="本次变化")


# ── 在线人数 ──────────────────────────────────────────────────────────

class OccupancyData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connections: int = Field(..., ge=0, description="当前连接数")
    presence_members: int = Field(..., ge=0, alias="presenceMembers", description="在线成员数")


class OccupancyEventType(str, Enum):
    UPDATED = "occupancy.updated"


class OccupancyEvent(BaseModel):
    type: OccupancyEventType = Field(default=OccupancyEventType.UPDATED)
    occupancy: OccupancyData


# ── 连接状态 ──────────────────────────────────────────────────────────

class ConnectionStatus(str, Enum):
    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SUSPENDED = "suspended"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionStatusEventType(str, Enum):
    STATUS_CHANGE = "connection.status_change"


class ConnectionStatusChange(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    current: ConnectionStatus = Field(..., description="新状态")
    previous: ConnectionStatus = Field(..., description="旧状态")
    error: ChatError | None = Field(default=None, description="错误原因")
    retry_in: float | None = Field(default=None, description="传输层下次重连的等待秒数")
