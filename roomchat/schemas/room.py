"""
roomchat.schemas.room
~~~~~~~~~~~~~~~~~~~~~

房间配置与房间状态模型。

``RoomOptions`` 决定房间启用哪些功能；相同房间 ID 的重复 ``get``
通过模型相等性（深比较）判断配置是否一致。
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from roomchat.core.errors import ChatError, ErrorCode
from roomchat.schemas.reactions import MessageReactionType


# ── 功能配置 ──────────────────────────────────────────────────────────

class MessageOptions(BaseModel):
    """消息功能配置（始终启用）。"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    raw_message_reactions: bool = Field(default=False, description="是否订阅原始消息反应事件")
    default_message_reaction_type: MessageReactionType = Field(
        default=MessageReactionType.DISTINCT,
        description="未指定类型时的默认消息反应类型",
    )


class PresenceOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enter: bool = Field(default=True, description="是否允许进入在线状态")
    subscribe: bool = Field(default=True, description="是否订阅在线状态事件")


class TypingOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_ms: int = Field(default=5000, gt=0, description="停止输入后自动发送 stopped 的等待时间")
    heartbeat_throttle_ms: int = Field(default=2500, gt=0, description="持续输入时重发 started 的最小间隔")


class RoomReactionsOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OccupancyOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_events: bool = Field(default=False, description="是否接收实时在线人数事件")


class RoomOptions(BaseModel):
    """房间配置。``None`` 表示对应功能未启用。"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    messages: MessageOptions = Field(default_factory=MessageOptions, description="消息配置")
    presence: PresenceOptions | None = Field(default=None, description="在线状态配置")
    typing: TypingOptions | None = Field(default=None, description="输入状态配置")
    reactions: RoomReactionsOptions | None = Field(default=None, description="房间表情反应配置")
    occupancy: OccupancyOptions | None = Field(default=None, description="在线人数配置")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoomOptions:
        """从字典构造配置，非法配置转为 ``INVALID_ROOM_OPTIONS``。"""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ChatError(
                f"unable to create room options; invalid room configuration: {exc.errors()[0]['msg']}",
                ErrorCode.INVALID_ROOM_OPTIONS,
                400,
                cause=exc,
            ) from exc


AllFeaturesEnabled = RoomOptions(
    presence=PresenceOptions(),
    typing=TypingOptions(),
    reactions=RoomReactionsOptions(),
    occupancy=OccupancyOptions(enable_events=True),
)


# ── 房间状态 ──────────────────────────────────────────────────────────

class RoomStatus(str, Enum):
    INITIALIZED = "initialized"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"
    DETACHED = "detached"
    SUSPENDED = "suspended"
    FAILED = "failed"
    RELEASING = "releasing"
    RELEASED = "released"


class RoomStatusEventType(str, Enum):
    STATUS_CHANGE = "room.status_change"
    DISCONTINUITY = "room.discontinuity"


class RoomStatusChange(BaseModel):
    """一次房间状态迁移。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    current: RoomStatus = Field(..., description="新状态")
    previous: RoomStatus = Field(..., description="旧状态")
    error: ChatError | None = Field(default=None, description="导致迁移的错误")


class DiscontinuityEvent(BaseModel):
    """房间丢失了消息连续性（非 resumed 的重新 attach）。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: ChatError | None = Field(default=None, description="连续性中断原因")
