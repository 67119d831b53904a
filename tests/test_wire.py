"""
tests.test_wire
~~~~~~~~~~~~~~~

通道事件解析与 REST 消息格式转换。
"""
from __future__ import annotations

from roomchat.core.serial import Serial
from roomchat.schemas.message import MessageAction
from roomchat.schemas.reactions import MessageReactionType
from roomchat.transport.channel import InboundMessage
from roomchat.transport.wire import (
    MESSAGE_EVENT,
    MESSAGE_REACTION_EVENT,
    MessageCreated,
    MessageDeleted,
    MessageUpdated,
    ReactionAdded,
    ReactionRemoved,
    ReactionSummaryReceived,
    UnrecognizedEvent,
    message_from_rest,
    message_to_rest,
    parse_chat_event,
)


def _message_event(action: str | None, **overrides) -> InboundMessage:
    fields = {
        "name": MESSAGE_EVENT,
        "action": action,
        "data": {"text": "hi", "metadata": {"k": "v"}},
        "client_id": "alice",
        "serial": "s@100-1",
        "version": {"serial": "s@100-1", "timestamp": 100},
        "timestamp": 100,
        "extras": {"headers": {"h": 1}},
    }
    fields.update(overrides)
    return InboundMessage(**fields)


class TestParseMessageEvents:
    """测试消息事件解析。"""

    def test_created(self) -> None:
        """message.create 解析为 MessageCreated，带上 headers 与 metadata。"""
        event = parse_chat_event("lobby", _message_event("message.create"))

        assert isinstance(event, MessageCreated)
        assert event.message.text == "hi"
        assert event.message.headers == {"h": 1}
        assert event.message.room_id == "lobby"
        assert event.message_serial == Serial.parse("s@100-1")

    def test_updated_and_deleted(self) -> None:
        """编辑 / 删除事件带上版本与操作者。"""
        version = {"serial": "s@200-1", "timestamp": 200, "clientId": "bob", "description": "typo"}

        updated = parse_chat_event("lobby", _message_event("message.update", version=version))
        deleted = parse_chat_event("lobby", _message_event("message.delete", version=version))

        assert isinstance(updated, MessageUpdated)
        assert str(updated.message.version) == "s@200-1"
        assert updated.message.updated_by == "bob"
        assert updated.message.operation is not None
        assert updated.message.operation.description == "typo"
        assert isinstance(deleted, MessageDeleted)
        assert deleted.message.action is MessageAction.DELETE

    def test_unknown_action(self) -> None:
        """未知 action 落入 UnrecognizedEvent。"""
        event = parse_chat_event("lobby", _message_event("message.explode"))

        assert isinstance(event, UnrecognizedEvent)
        assert event.action == "message.explode"

    def test_missing_fields(self) -> None:
        """缺少 serial / text 时不抛异常，而是返回 UnrecognizedEvent。"""
        assert isinstance(parse_chat_event("lobby", _message_event("message.create", serial=None)), UnrecognizedEvent)
        assert isinstance(parse_chat_event("lobby", _message_event("message.create", data={})), UnrecognizedEvent)

    def test_malformed_serial(self) -> None:
        """非法序列号被吞掉并标记为 malformed。"""
        event = parse_chat_event("lobby", _message_event("message.create", serial="garbage"))

        assert isinstance(event, UnrecognizedEvent)
        assert "malformed" in event.reason

    def test_unknown_event_name(self) -> None:
        """其它事件名一律无法识别。"""
        event = parse_chat_event("lobby", InboundMessage(name="something.else"))

        assert isinstance(event, UnrecognizedEvent)


class TestParseReactionEvents:
    """测试消息反应事件解析。"""

    def test_reaction_create(self) -> None:
        """reaction.create 解析为 ReactionAdded。"""
        inbound = InboundMessage(
            name=MESSAGE_REACTION_EVENT,
            action="reaction.create",
            data={"type": "reaction:multiple.v1", "name": "🎉", "count": 3, "messageSerial": "s@100-1"},
            client_id="bob",
            timestamp=100,
        )

        event = parse_chat_event("lobby", inbound)

        assert isinstance(event, ReactionAdded)
        assert event.reaction.type is MessageReactionType.MULTIPLE
        assert event.reaction.count == 3
        assert str(event.message_serial) == "s@100-1"

    def test_reaction_delete(self) -> None:
        """reaction.delete 解析为 ReactionRemoved。"""
        inbound = InboundMessage(
            name=MESSAGE_REACTION_EVENT,
            action="reaction.delete",
            data={"type": "reaction:distinct.v1", "name": "👍", "messageSerial": "s@100-1"},
            client_id="bob",
        )

        assert isinstance(parse_chat_event("lobby", inbound), ReactionRemoved)

    def test_reaction_summary(self) -> None:
        """reaction.summary 携带完整聚合。"""
        inbound = InboundMessage(
            name=MESSAGE_REACTION_EVENT,
            action="reaction.summary",
            data={"messageSerial": "s@100-1", "summary": {"👍": {"bob": 1}}},
        )

        event = parse_chat_event("lobby", inbound)

        assert isinstance(event, ReactionSummaryReceived)
        assert event.clients == {"👍": {"bob": 1}}

    def test_unknown_annotation_type(self) -> None:
        """未知的注解类型无法识别。"""
        inbound = InboundMessage(
            name=MESSAGE_REACTION_EVENT,
            action="reaction.create",
            data={"type": "reaction:weird.v9", "name": "👍", "messageSerial": "s@100-1"},
            client_id="bob",
        )

        assert isinstance(parse_chat_event("lobby", inbound), UnrecognizedEvent)

    def test_missing_message_serial(self) -> None:
        """缺少 messageSerial 时返回 UnrecognizedEvent。"""
        inbound = InboundMessage(name=MESSAGE_REACTION_EVENT, action="reaction.create", data={})

        assert isinstance(parse_chat_event("lobby", inbound), UnrecognizedEvent)


class TestRestFormat:
    """测试 REST 消息格式。"""

    def test_from_rest_with_reactions(self) -> None:
        """REST 消息包含反应聚合与版本信息。"""
        message = message_from_rest(
            "lobby",
            {
                "serial": "s@100-1",
                "version": {"serial": "s@200-1", "timestamp": 200, "clientId": "bob"},
                "text": "edited",
                "clientId": "alice",
                "action": "message.update",
                "timestamp": 100,
                "reactions": {"👍": {"bob": 1}},
            },
        )

        assert message.is_updated
        assert message.updated_by == "bob"
        assert message.reactions.counts == {"👍": 1}

    def test_to_rest_preserves_identity(self) -> None:
        """转换回 REST 格式后可以再次解析为等价消息。"""
        original = message_from_rest(
            "lobby",
            {"serial": "s@100-1", "text": "hi", "clientId": "alice", "timestamp": 100},
        )

        again = message_from_rest("lobby", message_to_rest(original))

        assert again == original
