"""
roomchat.services.message_reactions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

消息反应（对单条消息的表情反应）。

写操作走 REST；聚合的维护由 ``Messages`` 的事件协调队列完成，
本模块只负责参数校验与事件分发。
"""
from __future__ import annotations

from collections.abc import Callable

from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, invalid_argument, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.message import Message, serial_of
from roomchat.schemas.reactions import (
    MessageReaction,
    MessageReactionEventType,
    MessageReactionRawEvent,
    MessageReactionSummary,
    MessageReactionSummaryEvent,
    MessageReactionType,
)
from roomchat.schemas.room import MessageOptions
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.transport.chat_api import ChatApi

logger = get_logger(__name__)


class MessageReactions:
    """消息反应子接口。"""

    def __init__(
        self,
        room_id: str,
        chat_api: ChatApi,
        channels: ChannelManager,
        lifecycle: RoomLifecycle,
        options: MessageOptions,
    ) -> None:
        self._room_id = room_id
        self._api = chat_api
        self._channels = channels
        self._lifecycle = lifecycle
        self._options = options
        self._summary_emitter: EventEmitter[MessageReactionEventType, MessageReactionSummaryEvent] = EventEmitter(
            MessageReactionEventType, "message_reactions.summary",
        )
        self._raw_emitter: EventEmitter[MessageReactionEventType, MessageReactionRawEvent] = EventEmitter(
            MessageReactionEventType, "message_reactions.raw",
        )

    async def send(
        self,
        message: Message | str,
        name: str,
        type: MessageReactionType | None = None,
        count: int = 1,
    ) -> None:
        """对消息添加反应。

        Args:
            message: 消息或其序列号。
            name: 反应名称，不能为空。
            type: 反应类型，缺省使用房间配置的默认类型。
            count: 计数，仅 ``multiple`` 类型有效且至少为 1。
        """
        operation = "send message reaction"
        self._lifecycle.ensure_usable(operation)
        serial = serial_of(message, operation)
        if not name:
            raise invalid_argument(operation, "name must be a non-empty string")
        reaction_type = type or self._options.default_message_reaction_type
        if reaction_type is MessageReactionType.MULTIPLE:
            if count < 1:
                raise invalid_argument(operation, "count must be at least 1")
        else:
            count = 1

        try:
            await self._api.send_message_reaction(self._room_id, serial, reaction_type, name, count)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

    async def delete(
        self,
        message: Message | str,
        name: str | None = None,
        type: MessageReactionType | None = None,
    ) -> None:
        """删除当前客户端在消息上的反应；非 ``unique`` 类型必须给出 ``name``。"""
        operation = "delete message reaction"
        self._lifecycle.ensure_usable(operation)
        serial = serial_of(message, operation)
        reaction_type = type or self._options.default_message_reaction_type
        if reaction_type is not MessageReactionType.UNIQUE and not name:
            raise invalid_argument(operation, "name is required for non-unique reactions")

        try:
            await self._api.delete_message_reaction(self._room_id, serial, reaction_type, name)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

    def subscribe(self, listener: Callable[[MessageReactionSummaryEvent], None]) -> Subscription:
        """订阅反应聚合变化。"""
        self._lifecycle.ensure_usable("subscribe to message reactions")
        return self._hold(self._summary_emitter.subscribe(listener))

    def subscribe_raw(self, listener: Callable[[MessageReactionRawEvent], None]) -> Subscription:
        """订阅原始反应事件，需要房间配置开启 ``raw_message_reactions``。"""
        self._lifecycle.ensure_usable("subscribe to raw message reactions")
        if not self._options.raw_message_reactions:
            raise ChatError(
                "unable to subscribe to raw message reactions; raw message reactions are not enabled",
                ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM,
                400,
            )
        return self._hold(self._raw_emitter.subscribe(listener))

    # ── 由 Messages 调用 ──────────────────────────────────────────────

    def emit_raw(self, event_type: MessageReactionEventType, reaction: MessageReaction) -> None:
        if self._options.raw_message_reactions:
            self._raw_emitter.emit(event_type, MessageReactionRawEvent(type=event_type, reaction=reaction))

    def emit_summary(self, message_serial: str, summary: MessageReactionSummary) -> None:
        self._summary_emitter.emit(
            MessageReactionEventType.SUMMARY,
            MessageReactionSummaryEvent(message_serial=message_serial, summary=summary),
        )

    def dispose(self) -> None:
        self._summary_emitter.clear()
        self._raw_emitter.clear()

    def _hold(self, subscription: Subscription) -> Subscription:
        self._channels.hold("message_reactions")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            self._channels.drop("message_reactions")

        return Subscription(_unsubscribe)
