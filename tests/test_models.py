"""
tests.test_models
~~~~~~~~~~~~~~~~~

消息模型、反应聚合与房间配置的单元测试。
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from roomchat.core.errors import ChatError, ErrorCode
from roomchat.schemas.message import Message, MessageAction, Operation, serial_of
from roomchat.schemas.reactions import (
    MAX_LATEST_REACTIONS,
    MessageReaction,
    MessageReactionSummary,
    MessageReactionType,
)
from roomchat.schemas.room import AllFeaturesEnabled, RoomOptions, TypingOptions

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_message(
    serial: str = "s@100-1",
    version: str | None = None,
    action: MessageAction = MessageAction.CREATE,
    text: str = "hello",
) -> Message:
    return Message(
        serial=serial,
        version=version or serial,
        client_id="alice",
        room_id="lobby",
        text=text,
        action=action,
        created_at=NOW,
        timestamp=NOW,
        operation=Operation(client_id="bob") if action is not MessageAction.CREATE else None,
    )


def make_reaction(
    name: str,
    client_id: str,
    reaction_type: MessageReactionType = MessageReactionType.DISTINCT,
    count: int = 1,
) -> MessageReaction:
    return MessageReaction(
        type=reaction_type,
        name=name,
        message_serial="s@100-1",
        client_id=client_id,
        count=count,
        created_at=NOW,
    )


# ── 消息 ──────────────────────────────────────────────────────────────

class TestMessage:
    """测试消息版本比较与合并。"""

    def test_derived_properties(self) -> None:
        """编辑 / 删除版本暴露操作者与时间。"""
        updated = make_message(version="s@200-1", action=MessageAction.UPDATE)
        deleted = make_message(version="s@300-1", action=MessageAction.DELETE)

        assert updated.is_updated and not updated.is_deleted
        assert updated.updated_by == "bob"
        assert updated.updated_at == NOW
        assert deleted.is_deleted
        assert deleted.deleted_by == "bob"
        assert make_message().updated_by is None

    def test_ordering_by_serial(self) -> None:
        """消息按创建序列号排序。"""
        first = make_message("s@100-1")
        second = make_message("s@100-2")

        assert first.before(second)
        assert second.after(first)
        assert first.equal(make_message("s@100-1", version="s@500-0"))

    def test_version_comparison(self) -> None:
        """同一消息的不同版本可以比较新旧。"""
        original = make_message()
        edited = make_message(version="s@200-1", action=MessageAction.UPDATE)

        assert original.is_older_version_of(edited)
        assert edited.is_newer_version_of(original)
        assert original.is_same_version_as(make_message())

    def test_version_comparison_rejects_other_message(self) -> None:
        """不同消息之间比较版本应报错。"""
        with pytest.raises(ChatError) as exc_info:
            make_message("s@100-1").is_newer_version_of(make_message("s@100-2"))

        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    def test_apply_newer_event_keeps_reactions(self) -> None:
        """合并更新版本时采用新内容，但保留本地反应聚合。"""
        summary = MessageReactionSummary().with_reaction(make_reaction("👍", "bob"), "alice")
        original = make_message().with_reactions(summary)
        edited = make_message(version="s@200-1", action=MessageAction.UPDATE, text="edited")

        merged = original.apply_event(edited)

        assert merged.text == "edited"
        assert merged.reactions.counts == {"👍": 1}

    def test_apply_older_event_is_ignored(self) -> None:
        """较旧的版本不会覆盖当前版本。"""
        current = make_message(version="s@300-1", action=MessageAction.UPDATE, text="latest")
        stale = make_message(version="s@200-1", action=MessageAction.UPDATE, text="stale")

        assert current.apply_event(stale) is current

    def test_apply_created_event_rejected(self) -> None:
        """创建事件不能合并到已有消息上。"""
        with pytest.raises(ChatError):
            make_message().apply_event(make_message())

    def test_serial_of(self) -> None:
        """serial_of 接受消息或字符串，拒绝空值。"""
        assert serial_of(make_message(), "update message") == "s@100-1"
        assert serial_of("s@1-1", "update message") == "s@1-1"
        with pytest.raises(ChatError) as exc_info:
            serial_of("", "update message")
        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT


# ── 反应聚合 ──────────────────────────────────────────────────────────

class TestReactionSummary:
    """测试消息反应聚合的增量计算。"""

    def test_distinct_counts_once_per_client(self) -> None:
        """distinct 类型同一用户同一反应只计一次。"""
        summary = MessageReactionSummary()
        for _ in range(3):
            summary = summary.with_reaction(make_reaction("👍", "bob"), "alice")
        summary = summary.with_reaction(make_reaction("👍", "alice"), "alice")

        assert summary.counts == {"👍": 2}
        assert summary.mine == ["👍"]

    def test_unique_replaces_previous_reaction(self) -> None:
        """unique 类型新反应替换该用户的旧反应。"""
        summary = MessageReactionSummary()
        summary = summary.with_reaction(make_reaction("👍", "bob", MessageReactionType.UNIQUE), None)
        summary = summary.with_reaction(make_reaction("❤️", "bob", MessageReactionType.UNIQUE), None)

        assert summary.counts == {"❤️": 1}

    def test_multiple_accumulates_count(self) -> None:
        """multiple 类型累加计数。"""
        summary = MessageReactionSummary()
        summary = summary.with_reaction(make_reaction("🎉", "bob", MessageReactionType.MULTIPLE, 2), None)
        summary = summary.with_reaction(make_reaction("🎉", "bob", MessageReactionType.MULTIPLE, 3), None)

        assert summary.counts == {"🎉": 5}

    def test_remove_reaction(self) -> None:
        """删除反应后计数减少，空反应被移除。"""
        summary = MessageReactionSummary().with_reaction(make_reaction("👍", "alice"), "alice")

        summary = summary.without_reaction(make_reaction("👍", "alice"), "alice")

        assert summary.counts == {}
        assert summary.mine == []
        assert summary.latest == []

    def test_latest_is_capped(self) -> None:
        """latest 只保留最近若干条，新反应在前。"""
        summary = MessageReactionSummary()
        for index in range(MAX_LATEST_REACTIONS + 2):
            summary = summary.with_reaction(make_reaction(f"r{index}", "bob"), None)

        assert len(summary.latest) == MAX_LATEST_REACTIONS
        assert summary.latest[0].name == f"r{MAX_LATEST_REACTIONS + 1}"

    def test_with_clients_replaces_counts(self) -> None:
        """服务端聚合覆盖本地计数并重新计算 mine。"""
        summary = MessageReactionSummary().with_clients({"👍": {"alice": 1, "bob": 1}, "👎": {}}, "alice")

        assert summary.counts == {"👍": 2}
        assert summary.mine == ["👍"]


# ── 房间配置 ──────────────────────────────────────────────────────────

class TestRoomOptions:
    """测试房间配置的默认值与校验。"""

    def test_defaults_enable_only_messages(self) -> None:
        """默认配置只启用消息功能。"""
        options = RoomOptions()

        assert options.messages.default_message_reaction_type is MessageReactionType.DISTINCT
        assert options.presence is None
        assert options.typing is None

    def test_equality_is_structural(self) -> None:
        """配置按值比较。"""
        assert RoomOptions(typing=TypingOptions()) == RoomOptions(typing=TypingOptions(timeout_ms=5000))
        assert RoomOptions() != AllFeaturesEnabled

    def test_from_dict(self) -> None:
        """字典配置被解析为嵌套模型。"""
        options = RoomOptions.from_dict({"typing": {"timeout_ms": 1000}, "occupancy": {"enable_events": True}})

        assert options.typing is not None and options.typing.timeout_ms == 1000
        assert options.occupancy is not None and options.occupancy.enable_events

    @pytest.mark.parametrize(
        "data",
        [{"typing": {"timeout_ms": 0}}, {"unknown": {}}, {"typing": {"heartbeat_throttle_ms": -1}}],
    )
    def test_invalid_options(self, data: dict) -> None:
        """非法配置抛出 INVALID_ROOM_OPTIONS。"""
        with pytest.raises(ChatError) as exc_info:
            RoomOptions.from_dict(data)

        assert exc_info.value.code == ErrorCode.INVALID_ROOM_OPTIONS
