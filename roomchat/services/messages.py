"""
roomchat.services.messages
~~~~~~~~~~~~~~~~~~~~~~~~~~

消息功能：发送 / 编辑 / 删除、历史查询、实时订阅以及事件协调队列。

事件协调
--------
编辑、删除与消息反应事件只携带消息的创建序列号。若该消息不在本地缓存中，
先拉取单条消息，同时把触发事件及其后到达的所有事件排队；拉取完成后按到达顺序
重放队列，遇到下一个缺失时重复同样的流程。拉取失败只记录告警并丢弃触发事件。

写操作完成语义
--------------
``send`` / ``update`` / ``delete`` 在对应版本的实时回显被应用后才返回，
返回值与订阅者收到的快照一致。
"""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Any

from roomchat.core.config import Settings
from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, invalid_argument, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.message import Message, MessageEvent, MessageEventType, serial_of
from roomchat.schemas.query import OrderBy, PaginatedResult, QueryOptions
from roomchat.schemas.reactions import MessageReactionEventType
from roomchat.schemas.room import DiscontinuityEvent, MessageOptions, RoomStatus, RoomStatusChange
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.echo import EchoCorrelator
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.services.message_cache import MessageCache
from roomchat.services.message_reactions import MessageReactions
from roomchat.transport.channel import ChannelState, InboundMessage
from roomchat.transport.chat_api import ChatApi
from roomchat.transport.wire import (
    MESSAGE_EVENT,
    MESSAGE_REACTION_EVENT,
    ChatChannelEvent,
    MessageCreated,
    MessageDeleted,
    MessageUpdated,
    ReactionAdded,
    ReactionRemoved,
    ReactionSummaryReceived,
    UnrecognizedEvent,
    parse_chat_event,
)

logger = get_logger(__name__)


class MessageSubscription:
    """消息订阅句柄。

    Attributes:
        unsubscribe: 取消订阅。
        history_before_subscribe: 查询订阅点之前的消息（新在前）。
    """

    def __init__(
        self,
        subscription: Subscription,
        history: Callable[..., Any],
    ) -> None:
        self._subscription = subscription
        self._history = history

    def unsubscribe(self) -> None:
        self._subscription.unsubscribe()

    async def history_before_subscribe(
        self,
        limit: int = 100,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PaginatedResult[Message]:
        if not self._subscription.active:
            raise ChatError(
                "unable to query messages; listener has been unsubscribed",
                ErrorCode.BAD_REQUEST,
                400,
            )
        return await self._history(limit=limit, start=start, end=end)


class Messages:
    """单个房间的消息功能。

    Args:
        room_id: 房间 ID。
        channels: 共享通道管理器。
        chat_api: REST 协作者。
        lifecycle: 房间状态持有者。
        settings: 全局配置。
        client_id: 当前客户端 ID，用于计算反应聚合中的 "mine"。
        options: 消息功能配置。
    """

    def __init__(
        self,
        room_id: str,
        channels: ChannelManager,
        chat_api: ChatApi,
        lifecycle: RoomLifecycle,
        settings: Settings,
        client_id: str | None,
        options: MessageOptions,
    ) -> None:
        self._room_id = room_id
        self._channels = channels
        self._channel = channels.channel
        self._api = chat_api
        self._lifecycle = lifecycle
        self._settings = settings
        self._client_id = client_id

        self._emitter: EventEmitter[MessageEventType, MessageEvent] = EventEmitter(MessageEventType, "messages")
        self._reactions = MessageReactions(room_id, chat_api, channels, lifecycle, options)
        self._cache = MessageCache(settings.MESSAGE_CACHE_SIZE)
        self._echoes: EchoCorrelator[Message] = EchoCorrelator()

        self._queue: deque[ChatChannelEvent] = deque()
        self._fetch_task: asyncio.Task[None] | None = None

        # 监听器 -> 订阅点（通道序列号）
        self._listener_ids = itertools.count(1)
        self._points: dict[int, asyncio.Future[str]] = {}
        self._awaiting_attach: set[int] = set()

        self._channel.subscribe(self._on_inbound, [MESSAGE_EVENT, MESSAGE_REACTION_EVENT])
        self._status_sub = lifecycle.on_change(self._on_status_change)
        self._discontinuity_sub = lifecycle.on_discontinuity(self._on_discontinuity)

    @property
    def reactions(self) -> MessageReactions:
        return self._reactions

    # ── 写操作 ────────────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> Message:
        """发送消息，等待实时回显后返回。"""
        operation = "send message"
        self._lifecycle.ensure_usable(operation)
        if not isinstance(text, str) or not text:
            raise invalid_argument(operation, "text must be a non-empty string")
        self._ensure_attached(operation)

        try:
            response = await self._api.send_message(self._room_id, text, metadata, headers)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

        serial = str(response.serial)
        logger.debug("消息已提交，等待回显 | room=%s | serial=%s", self._room_id, serial)
        return await self._echoes.wait((serial, serial), self._settings.ECHO_TIMEOUT_SECONDS, operation)

    async def update(
        self,
        message: Message | str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> Message:
        """编辑消息，等待新版本的实时回显后返回。"""
        operation = "update message"
        self._lifecycle.ensure_usable(operation)
        serial = serial_of(message, operation)
        if not isinstance(text, str):
            raise invalid_argument(operation, "text must be a string")
        self._ensure_attached(operation)

        try:
            response = await self._api.update_message(
                self._room_id, serial, text, metadata, headers, description, operation_metadata,
            )
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

        key = (serial, str(response.version))
        return await self._echoes.wait(key, self._settings.ECHO_TIMEOUT_SECONDS, operation)

    async def delete(
        self,
        message: Message | str,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> Message:
        """删除消息（软删除），等待删除版本的实时回显后返回。"""
        operation = "delete message"
        self._lifecycle.ensure_usable(operation)
        serial = serial_of(message, operation)
        self._ensure_attached(operation)

        try:
            response = await self._api.delete_message(self._room_id, serial, description, operation_metadata)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

        key = (serial, str(response.version))
        return await self._echoes.wait(key, self._settings.ECHO_TIMEOUT_SECONDS, operation)

    # ── 查询 ──────────────────────────────────────────────────────────

    async def get(self, serial: Message | str) -> Message:
        """按序列号拉取单条消息。"""
        operation = "get message"
        self._lifecycle.ensure_usable(operation)
        key = serial_of(serial, operation)
        try:
            message = await self._api.get_message(self._room_id, key)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc
        return self._cache.put(self._with_own_reactions(message))

    async def history(self, options: QueryOptions | None = None) -> PaginatedResult[Message]:
        """按时间 / 序列号范围查询历史消息，与订阅状态无关。"""
        operation = "query messages"
        self._lifecycle.ensure_usable(operation)
        options = options or QueryOptions()
        if options.start is not None and options.end is not None and options.start > options.end:
            raise invalid_argument(operation, "start must not be after end")

        try:
            page = await self._api.get_messages(self._room_id, options)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc
        return self._seeded(page)

    # ── 订阅 ──────────────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[MessageEvent], None]) -> MessageSubscription:
        """订阅消息创建 / 编辑 / 删除事件。第一个监听器会隐式 attach 房间。"""
        self._lifecycle.ensure_usable("subscribe to messages")
        listener_id = next(self._listener_ids)
        subscription = self._emitter.subscribe(listener)
        self._points[listener_id] = self._new_subscription_point(listener_id)
        self._channels.hold("messages")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            point = self._points.pop(listener_id, None)
            if point is not None and not point.done():
                point.set_exception(
                    ChatError("unable to query messages; listener has been unsubscribed", ErrorCode.BAD_REQUEST, 400),
                )
                point.exception()
            self._awaiting_attach.discard(listener_id)
            self._channels.drop("messages")

        async def _history(limit: int, start: datetime | None, end: datetime | None) -> PaginatedResult[Message]:
            point = self._points.get(listener_id)
            if point is None:
                raise ChatError(
                    "unable to query messages; listener has been unsubscribed",
                    ErrorCode.BAD_REQUEST,
                    400,
                )
            from_serial = await asyncio.shield(point)
            return await self.history(
                QueryOptions(start=start, end=end, limit=limit, order_by=OrderBy.NEWEST_FIRST, from_serial=from_serial),
            )

        return MessageSubscription(Subscription(_unsubscribe), _history)

    def dispose(self) -> None:
        """房间释放时调用：取消进行中的补拉，让等待回显的写操作失败。"""
        self._channel.unsubscribe(self._on_inbound)
        self._status_sub.unsubscribe()
        self._discontinuity_sub.unsubscribe()
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()
        self._fetch_task = None
        self._queue.clear()
        self._cache.clear()

        released = ChatError("unable to complete operation; room was released", ErrorCode.ROOM_IS_RELEASED, 400)
        self._echoes.fail_all(released)
        for point in self._points.values():
            if not point.done():
                point.set_exception(released)
                point.exception()
        self._points.clear()
        self._awaiting_attach.clear()
        self._emitter.clear()
        self._reactions.dispose()

    # ── 订阅点 ────────────────────────────────────────────────────────

    def _new_subscription_point(self, listener_id: int) -> asyncio.Future[str]:
        point: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        properties = self._channel.properties
        if self._channel.state is ChannelState.ATTACHED and properties.channel_serial:
            point.set_result(properties.channel_serial)
        else:
            self._awaiting_attach.add(listener_id)
        return point

    def _resolve_points_from_attach(self) -> None:
        attach_serial = self._channel.properties.attach_serial
        if not attach_serial:
            return
        for listener_id in list(self._awaiting_attach):
            point = self._points.get(listener_id)
            if point is not None and not point.done():
                point.set_result(attach_serial)
        self._awaiting_attach.clear()

    def _on_status_change(self, change: RoomStatusChange) -> None:
        if change.current is RoomStatus.ATTACHED:
            self._resolve_points_from_attach()
        elif change.current in (RoomStatus.DETACHED, RoomStatus.FAILED):
            self._cache.clear()

    def _on_discontinuity(self, event: DiscontinuityEvent) -> None:
        if event.error is not None and event.error.code == ErrorCode.PRESENCE_AUTO_REENTRY_FAILED:
            return
        # 丢失连续性后，订阅点重置到下一次 attach 的位置
        self._cache.clear()
        loop = asyncio.get_running_loop()
        for listener_id, point in list(self._points.items()):
            if point.done():
                self._points[listener_id] = loop.create_future()
            self._awaiting_attach.add(listener_id)
        if self._channel.state is ChannelState.ATTACHED:
            self._resolve_points_from_attach()

    # ── 事件协调 ──────────────────────────────────────────────────────

    def _on_inbound(self, inbound: InboundMessage) -> None:
        event = parse_chat_event(self._room_id, inbound)
        if isinstance(event, UnrecognizedEvent):
            logger.warning(
                "收到无法识别的通道事件，已丢弃 | room=%s | name=%s | action=%s | reason=%s",
                self._room_id, event.name, event.action, event.reason,
            )
            return
        self._queue.append(event)
        self._drain()

    def _drain(self) -> None:
        """按到达顺序应用队列中的事件，遇到缓存缺失时暂停并补拉。"""
        while self._queue and self._fetch_task is None:
            event = self._queue[0]
            serial = str(event.message_serial)
            if not isinstance(event, MessageCreated) and serial not in self._cache:
                logger.debug("缓存缺失，补拉消息 | room=%s | serial=%s", self._room_id, serial)
                self._fetch_task = asyncio.get_running_loop().create_task(self._fetch_missing(serial))
                return
            self._queue.popleft()
            self._apply(event)

    async def _fetch_missing(self, serial: str) -> None:
        try:
            message = await self._api.get_message(self._room_id, serial)
        except Exception as exc:
            dropped = None
            if self._queue and str(self._queue[0].message_serial) == serial:
                dropped = self._queue.popleft()
            logger.warning(
                "补拉消息失败，丢弃触发事件 | room=%s | serial=%s | event=%s | error=%s",
                self._room_id, serial, type(dropped).__name__ if dropped else None, exc,
            )
        else:
            self._cache.put(self._with_own_reactions(message))
        finally:
            self._fetch_task = None
        self._drain()

    def _apply(self, event: ChatChannelEvent) -> None:
        handlers: dict[type, Callable[[Any], None]] = {
            MessageCreated: self._apply_created,
            MessageUpdated: self._apply_version,
            MessageDeleted: self._apply_version,
            ReactionAdded: self._apply_reaction,
            ReactionRemoved: self._apply_reaction,
            ReactionSummaryReceived: self._apply_summary,
        }
        handler = handlers.get(type(event))
        if handler is None:
            logger.warning("未处理的事件类型，已丢弃 | room=%s | event=%s", self._room_id, type(event).__name__)
            return
        handler(event)

    def _apply_created(self, event: MessageCreated) -> None:
        message = event.message
        self._cache.put(message)
        self._emitter.emit(MessageEventType.CREATED, MessageEvent(type=MessageEventType.CREATED, message=message))
        self._echoes.observe((str(message.serial), str(message.version)), message)

    def _apply_version(self, event: MessageUpdated | MessageDeleted) -> None:
        cached = self._cache.get(str(event.message_serial))
        if cached is None:
            return
        # 缓存保留较新的版本；派发的快照始终是事件自身的版本
        self._cache.replace(cached.apply_event(event.message))
        emitted = event.message.with_reactions(cached.reactions)

        event_type = MessageEventType.UPDATED if isinstance(event, MessageUpdated) else MessageEventType.DELETED
        self._emitter.emit(event_type, MessageEvent(type=event_type, message=emitted))
        self._echoes.observe((str(emitted.serial), str(emitted.version)), emitted)

    def _apply_reaction(self, event: ReactionAdded | ReactionRemoved) -> None:
        serial = str(event.message_serial)
        cached = self._cache.get(serial)
        if cached is None:
            return
        if isinstance(event, ReactionAdded):
            summary = cached.reactions.with_reaction(event.reaction, self._client_id)
            event_type = MessageReactionEventType.CREATE
        else:
            summary = cached.reactions.without_reaction(event.reaction, self._client_id)
            event_type = MessageReactionEventType.DELETE
        self._cache.replace(cached.with_reactions(summary))

        self._reactions.emit_raw(event_type, event.reaction)
        self._reactions.emit_summary(serial, summary)

    def _apply_summary(self, event: ReactionSummaryReceived) -> None:
        serial = str(event.message_serial)
        cached = self._cache.get(serial)
        if cached is None:
            return
        summary = cached.reactions.with_clients(event.clients, self._client_id)
        self._cache.replace(cached.with_reactions(summary))
        self._reactions.emit_summary(serial, summary)

    # ── 内部 ──────────────────────────────────────────────────────────

    def _ensure_attached(self, operation: str) -> None:
        # 未 attach 时回显无法到达，写入会在服务端生效而调用方只能等到超时
        if self._lifecycle.status not in (RoomStatus.ATTACHED, RoomStatus.ATTACHING):
            raise ChatError(
                f"unable to {operation}; room is {self._lifecycle.status.value}, it must be attached or attaching",
                ErrorCode.ROOM_IN_INVALID_STATE,
                400,
            )

    def _with_own_reactions(self, message: Message) -> Message:
        reactions = message.reactions.with_clients(message.reactions.clients, self._client_id)
        return message.with_reactions(reactions)

    def _seeded(self, page: PaginatedResult[Message]) -> PaginatedResult[Message]:
        items = [self._with_own_reactions(message) for message in page.items]
        for message in items:
            self._cache.put(message)
        if not page.has_next():
            return PaginatedResult(items)

        async def _next() -> PaginatedResult[Message]:
            following = await page.next()
            return self._seeded(following) if following is not None else PaginatedResult([])

        return PaginatedResult(items, _next)
