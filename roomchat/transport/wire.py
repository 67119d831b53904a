"""
roomchat.transport.wire
~~~~~~~~~~~~~~~~~~~~~~~

REST / 实时通道的线上数据格式与领域模型之间的转换。

通道事件被解析为一组封闭的标签变体（``ChatChannelEvent``），
无法识别的事件统一落入 ``UnrecognizedEvent`` 分支，由调用方记录日志后丢弃。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from pydantic import ValidationError

from roomchat.core.errors import ChatError
from roomchat.core.serial import Serial
from roomchat.schemas.message import Message, MessageAction, Operation
from roomchat.schemas.reactions import (
    MessageReaction,
    MessageReactionSummary,
    MessageReactionType,
)
from roomchat.schemas.types import from_millis, to_millis
from roomchat.transport.channel import InboundMessage

# ── 事件名 ────────────────────────────────────────────────────────────
MESSAGE_EVENT: str = "chat.message"
MESSAGE_REACTION_EVENT: str = "chat.reaction"
ROOM_REACTION_EVENT: str = "roomReaction"
TYPING_STARTED_EVENT: str = "typing.started"
TYPING_STOPPED_EVENT: str = "typing.stopped"
OCCUPANCY_EVENT: str = "[meta]occupancy"

REACTION_CREATE_ACTION: str = "reaction.create"
REACTION_DELETE_ACTION: str = "reaction.delete"
REACTION_SUMMARY_ACTION: str = "reaction.summary"

# 消息反应类型 <-> 线上注解类型
_ANNOTATION_TYPES: dict[MessageReactionType, str] = {
    MessageReactionType.UNIQUE: "reaction:unique.v1",
    MessageReactionType.DISTINCT: "reaction:distinct.v1",
    MessageReactionType.MULTIPLE: "reaction:multiple.v1",
}
_REACTION_TYPES: dict[str, MessageReactionType] = {v: k for k, v in _ANNOTATION_TYPES.items()}


def annotation_type(reaction_type: MessageReactionType) -> str:
    return _ANNOTATION_TYPES[reaction_type]


def reaction_type_from_annotation(value: str) -> MessageReactionType | None:
    return _REACTION_TYPES.get(value)


# ── REST 消息 ─────────────────────────────────────────────────────────

def message_from_rest(room_id: str, data: dict[str, Any]) -> Message:
    """把 REST 返回的消息字典转为 ``Message``。

    未知的 action 按创建处理；``reactions`` 为 ``反应名 -> {client_id: 计数}``。
    """
    version = data.get("version") or {}
    try:
        action = MessageAction(data.get("action", MessageAction.CREATE.value))
    except ValueError:
        action = MessageAction.CREATE

    operation = None
    if action is not MessageAction.CREATE:
        operation = Operation(
            client_id=version.get("clientId"),
            description=version.get("description"),
            metadata=version.get("metadata"),
        )

    return Message(
        serial=data["serial"],
        version=version.get("serial", data["serial"]),
        client_id=data["clientId"],
        room_id=room_id,
        text=data.get("text", ""),
        metadata=data.get("metadata") or {},
        headers=data.get("headers") or {},
        action=action,
        created_at=from_millis(data.get("timestamp")),
        timestamp=from_millis(version.get("timestamp", data.get("timestamp"))),
        operation=operation,
        reactions=MessageReactionSummary(clients=data.get("reactions") or {}),
    )


def message_to_rest(message: Message) -> dict[str, Any]:
    """``Message`` 转为 REST 线上格式。"""
    version: dict[str, Any] = {
        "serial": str(message.version),
        "timestamp": to_millis(message.timestamp),
    }
    if message.operation is not None:
        version.update(
            clientId=message.operation.client_id,
            description=message.operation.description,
            metadata=message.operation.metadata,
        )
    return {
        "serial": str(message.serial),
        "version": version,
        "text": message.text,
        "clientId": message.client_id,
        "action": message.action.value,
        "metadata": message.metadata,
        "headers": message.headers,
        "timestamp": to_millis(message.created_at),
        "reactions": message.reactions.clients,
    }


# ── 通道事件（标签变体） ──────────────────────────────────────────────

@dataclass(frozen=True)
class MessageCreated:
    message: Message

    @property
    def message_serial(self) -> Serial:
        return self.message.serial


@dataclass(frozen=True)
class MessageUpdated:
    message: Message

    @property
    def message_serial(self) -> Serial:
        return self.message.serial


@dataclass(frozen=True)
class MessageDeleted:
    message: Message

    @property
    def message_serial(self) -> Serial:
        return self.message.serial


@dataclass(frozen=True)
class ReactionAdded:
    reaction: MessageReaction

    @property
    def message_serial(self) -> Serial:
        return self.reaction.message_serial


@dataclass(frozen=True)
class ReactionRemoved:
    reaction: MessageReaction

    @property
    def message_serial(self) -> Serial:
        return self.reaction.message_serial


@dataclass(frozen=True)
class ReactionSummaryReceived:
    message_serial: Serial
    clients: dict[str, dict[str, int]]


@dataclass(frozen=True)
class UnrecognizedEvent:
    name: str
    action: str | None
    reason: str


ChatChannelEvent = Union[
    MessageCreated,
    MessageUpdated,
    MessageDeleted,
    ReactionAdded,
    ReactionRemoved,
    ReactionSummaryReceived,
    UnrecognizedEvent,
]


def parse_chat_event(room_id: str, inbound: InboundMessage) -> ChatChannelEvent:
    """把通道原始消息解析为 ``ChatChannelEvent``，从不抛出异常。"""
    try:
        if inbound.name == MESSAGE_EVENT:
            return _parse_message_event(room_id, inbound)
        if inbound.name == MESSAGE_REACTION_EVENT:
            return _parse_reaction_event(inbound)
    except (ChatError, ValidationError, KeyError, TypeError, ValueError) as exc:
        return UnrecognizedEvent(inbound.name, inbound.action, f"malformed payload: {exc}")
    return UnrecognizedEvent(inbound.name, inbound.action, "unknown event name")


def _parse_message_event(room_id: str, inbound: InboundMessage) -> ChatChannelEvent:
    data = inbound.data if isinstance(inbound.data, dict) else {}
    if not inbound.serial or not inbound.client_id or not isinstance(data.get("text"), str):
        return UnrecognizedEvent(inbound.name, inbound.action, "missing serial, clientId or text")

    variants = {
        MessageAction.CREATE.value: MessageCreated,
        MessageAction.UPDATE.value: MessageUpdated,
        MessageAction.DELETE.value: MessageDeleted,
    }
    variant = variants.get(inbound.action or "")
    if variant is None:
        return UnrecognizedEvent(inbound.name, inbound.action, "unknown message action")

    version = inbound.version or {}
    action = MessageAction(inbound.action)
    operation = None
    if action is not MessageAction.CREATE:
        operation = Operation(
            client_id=version.get("clientId"),
            description=version.get("description"),
            metadata=version.get("metadata"),
        )

    message = Message(
        serial=inbound.serial,
        version=version.get("serial", inbound.serial),
        client_id=inbound.client_id,
        room_id=room_id,
        text=data["text"],
        metadata=data.get("metadata") or {},
        headers=inbound.extras.get("headers") or {},
        action=action,
        created_at=from_millis(inbound.timestamp),
        timestamp=from_millis(version.get("timestamp", inbound.timestamp)),
        operation=operation,
    )
    return variant(message)


def _parse_reaction_event(inbound: InboundMessage) -> ChatChannelEvent:
    data = inbound.data if isinstance(inbound.data, dict) else {}
    message_serial = Serial.parse(data["messageSerial"])

    if inbound.action == REACTION_SUMMARY_ACTION:
        clients = {
            str(name): {str(client): int(count) for client, count in per_client.items()}
            for name, per_client in (data.get("summary") or {}).items()
        }
        return ReactionSummaryReceived(message_serial, clients)

    if inbound.action not in (REACTION_CREATE_ACTION, REACTION_DELETE_ACTION):
        return UnrecognizedEvent(inbound.name, inbound.action, "unknown reaction action")

    reaction_type = reaction_type_from_annotation(data.get("type", ""))
    if reaction_type is None or not inbound.client_id:
        return UnrecognizedEvent(inbound.name, inbound.action, "unknown reaction type or missing clientId")

    reaction = MessageReaction(
        type=reaction_type,
        name=data.get("name") or "",
        message_serial=message_serial,
        client_id=inbound.client_id,
        count=data.get("count") or 1,
        created_at=from_millis(inbound.timestamp),
    )
    if inbound.action == REACTION_CREATE_ACTION:
        return ReactionAdded(reaction)
    return ReactionRemoved(reaction)
