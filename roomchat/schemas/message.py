"""
roomchat.schemas.message
~~~~~~~~~~~~~~~~~~~~~~~~

聊天消息模型。

消息的身份是其创建序列号 ``serial``；每次编辑 / 删除产生新的 ``version``，
``Message`` 的每个实例对应一个不可变版本。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from roomchat.core.errors import ChatError, invalid_argument
from roomchat.core.serial import Serial
from roomchat.schemas.reactions import MessageReactionSummary
from roomchat.schemas.types import SerialField


class MessageAction(str, Enum):
    CREATE = "message.create"
    UPDATE = "message.update"
    DELETE = "message.delete"


class MessageEventType(str, Enum):
    CREATED = "message.created"
    UPDATED = "message.updated"
    DELETED = "message.deleted"


class Operation(BaseModel):
    """编辑 / 删除操作的附加信息。"""

    model_config = ConfigDict(frozen=True)

    client_id: str | None = Field(default=None, description="操作者")
    description: str | None = Field(default=None, description="操作说明")
    metadata: dict[str, str] | None = Field(default=None, description="操作元数据")


class Message(BaseModel):
    """一条消息的某个版本。

    Attributes:
        serial: 创建序列号，即消息身份。
        version: 当前版本序列号，创建时等于 ``serial``。
        action: 产生该版本的操作。
        reactions: 本地维护的反应聚合。
    """

    model_config = ConfigDict(frozen=True)

    serial: SerialField = Field(..., description="消息创建序列号")
    version: SerialField = Field(..., description="消息版本序列号")
    client_id: str = Field(..., description="发送者")
    room_id: str = Field(..., description="所属房间")
    text: str = Field(..., description="消息文本")
    metadata: dict[str, Any] = Field(default_factory=dict, description="消息元数据")
    headers: dict[str, Any] = Field(default_factory=dict, description="消息头")
    action: MessageAction = Field(default=MessageAction.CREATE, description="版本对应的操作")
    created_at: datetime = Field(..., description="消息创建时间")
    timestamp: datetime = Field(..., description="当前版本的时间")
    operation: Operation | None = Field(default=None, description="编辑 / 删除附加信息")
    reactions: MessageReactionSummary = Field(
        default_factory=MessageReactionSummary,
        description="反应聚合",
    )

    # ── 派生属性 ──────────────────────────────────────────────────────

    @property
    def is_updated(self) -> bool:
        return self.action is MessageAction.UPDATE

    @property
    def is_deleted(self) -> bool:
        return self.action is MessageAction.DELETE

    @property
    def updated_by(self) -> str | None:
        return self.operation.client_id if self.is_updated and self.operation else None

    @property
    def deleted_by(self) -> str | None:
        return self.operation.client_id if self.is_deleted and self.operation else None

    @property
    def updated_at(self) -> datetime | None:
        return self.timestamp if self.is_updated else None

    @property
    def deleted_at(self) -> datetime | None:
        return self.timestamp if self.is_deleted else None

    # ── 排序 ──────────────────────────────────────────────────────────

    def before(self, other: Message) -> bool:
        """本消息是否在 ``other`` 之前创建。"""
        return self.serial.before(other.serial)

    def after(self, other: Message) -> bool:
        return self.serial.after(other.serial)

    def equal(self, other: Message) -> bool:
        """是否为同一条消息（不区分版本）。"""
        return self.serial.equal(other.serial)

    def is_older_version_of(self, other: Message) -> bool:
        self._ensure_same_message(other, "compare message versions")
        return self.version.before(other.version)

    def is_newer_version_of(self, other: Message) -> bool:
        self._ensure_same_message(other, "compare message versions")
        return self.version.after(other.version)

    def is_same_version_as(self, other: Message) -> bool:
        self._ensure_same_message(other, "compare message versions")
        return self.version.equal(other.version)

    # ── 版本合并 ──────────────────────────────────────────────────────

    def apply_event(self, event: Message) -> Message:
        """把一个编辑 / 删除版本合并到当前消息上。

        返回两者中较新的版本；反应聚合始终保留本地值。

        Raises:
            ChatError: 事件是创建事件，或属于另一条消息。
        """
        if event.action is MessageAction.CREATE:
            raise invalid_argument("apply message event", "cannot apply a created event to a message")
        self._ensure_same_message(event, "apply message event")

        if not event.version.after(self.version):
            return self
        return event.model_copy(update={"reactions": self.reactions})

    def with_reactions(self, reactions: MessageReactionSummary) -> Message:
        return self.model_copy(update={"reactions": reactions})

    def _ensure_same_message(self, other: Message, operation: str) -> None:
        if not self.serial.equal(other.serial):
            raise invalid_argument(operation, "cannot compare or merge different messages")


class MessageEvent(BaseModel):
    """推送给消息订阅者的派生事件。"""

    type: MessageEventType = Field(..., description="事件类型")
    message: Message = Field(..., description="合并后的消息快照")


def serial_of(value: Message | Serial | str, operation: str) -> str:
    """取得消息身份的规范字符串；非法输入抛出 ``INVALID_ARGUMENT``。"""
    if isinstance(value, Message):
        return str(value.serial)
    try:
        return str(Serial.parse(value))
    except ChatError:
        raise invalid_argument(operation, f"invalid message serial: {value!r}") from None
