"""
roomchat.transport.memory
~~~~~~~~~~~~~~~~~~~~~~~~~

单进程内存版实时传输与 REST API，供本地开发和测试使用。

``InMemoryHub`` 扮演服务端：统一发号（序列号）、保存历史消息、
维护在线成员并把发布的事件扇出到所有已 attach 的同名通道（包括发布者自己）。
事件通过 ``loop.call_soon`` 异步投递，模拟真实网络上 "先收到 REST 应答、
再收到实时回显" 的顺序。
"""
from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from typing import Any

from roomchat.core.errors import ChatError, ErrorCode
from roomchat.core.logging import get_logger
from roomchat.core.serial import Serial
from roomchat.schemas.features import OccupancyData
from roomchat.schemas.message import Message, MessageAction
from roomchat.schemas.query import (
    MessageOperationResponse,
    OrderBy,
    PaginatedResult,
    QueryOptions,
    SendMessageResponse,
)
from roomchat.schemas.reactions import MessageReactionType
from roomchat.schemas.types import from_millis, to_millis
from roomchat.transport.channel import (
    ChannelProperties,
    ChannelState,
    ChannelStateChange,
    ConnectionState,
    ConnectionStateChange,
    InboundMessage,
    MessageHandler,
    PresenceAction,
    PresenceHandler,
    PresenceMessage,
    room_channel_name,
)
from roomchat.transport.wire import (
    MESSAGE_EVENT,
    MESSAGE_REACTION_EVENT,
    OCCUPANCY_EVENT,
    REACTION_CREATE_ACTION,
    REACTION_DELETE_ACTION,
    REACTION_SUMMARY_ACTION,
    annotation_type,
    message_from_rest,
)

logger = get_logger(__name__)


class InMemoryHub:
    """进程内的 "服务端"。

    Attributes:
        failing_fetches: 单条消息拉取时需要失败的序列号集合（测试用）。
        fetch_gate: 非空时，单条消息拉取会等待该事件被 set（测试用）。
        fetch_calls: 记录所有单条消息拉取请求的序列号。
        presence_get_failures: 接下来需要失败的在线成员拉取次数（测试用）。
    """

    def __init__(self, series_id: str = "hub") -> None:
        self.series_id = series_id
        self._counter = itertools.count()
        self._last_timestamp = 0
        self._attached: dict[str, list[InMemoryChannel]] = defaultdict(list)
        self._history: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._presence: dict[str, dict[str, PresenceMessage]] = defaultdict(dict)

        # ── 测试钩子 ──
        self.failing_fetches: set[str] = set()
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_calls: list[str] = []
        self.presence_get_failures: int = 0

    # ── 发号 ──────────────────────────────────────────────────────────

    def next_serial(self) -> str:
        """生成单调递增的序列号。"""
        self._last_timestamp = max(self._last_timestamp, int(time.time() * 1000))
        return str(Serial(self.series_id, self._last_timestamp, next(self._counter)))

    def now_ms(self) -> int:
        return max(self._last_timestamp, int(time.time() * 1000))

    # ── 通道扇出 ──────────────────────────────────────────────────────

    def join(self, channel: InMemoryChannel) -> None:
        if channel not in self._attached[channel.name]:
            self._attached[channel.name].append(channel)
        self._publish_occupancy(channel.name)

    def leave(self, channel: InMemoryChannel) -> None:
        if channel in self._attached[channel.name]:
            self._attached[channel.name].remove(channel)
        members = self._presence[channel.name]
        key = channel.presence_key
        if key in members:
            left = members.pop(key).model_copy(update={"action": PresenceAction.LEAVE, "timestamp": self.now_ms()})
            self._broadcast_presence(channel.name, left)
        self._publish_occupancy(channel.name)

    def publish(self, channel_name: str, message: InboundMessage) -> None:
        """把事件扇出到所有已 attach 的同名通道。"""
        loop = asyncio.get_running_loop()
        for channel in list(self._attached[channel_name]):
            loop.call_soon(channel.deliver, message)

    # ── 在线状态 ──────────────────────────────────────────────────────

    def presence_action(self, channel: InMemoryChannel, action: PresenceAction, data: Any) -> None:
        members = self._presence[channel.name]
        message = PresenceMessage(
            action=action,
            client_id=channel.client_id,
            connection_id=channel.connection_id,
            data=data,
            timestamp=self.now_ms(),
        )
        if action is PresenceAction.LEAVE:
            if members.pop(channel.presence_key, None) is None:
                return
        else:
            members[channel.presence_key] = message
        self._broadcast_presence(channel.name, message)
        self._publish_occupancy(channel.name)

    def presence_members(self, channel_name: str) -> list[PresenceMessage]:
        return [
            member.model_copy(update={"action": PresenceAction.PRESENT})
            for member in self._presence[channel_name].values()
        ]

    def _broadcast_presence(self, channel_name: str, message: PresenceMessage) -> None:
        loop = asyncio.get_running_loop()
        for channel in list(self._attached[channel_name]):
            loop.call_soon(channel.presence.deliver, message)

    # ── 在线人数 ──────────────────────────────────────────────────────

    def occupancy(self, channel_name: str) -> OccupancyData:
        return OccupancyData(
            connections=len(self._attached[channel_name]),
            presence_members=len(self._presence[channel_name]),
        )

    def _publish_occupancy(self, channel_name: str) -> None:
        metrics = self.occupancy(channel_name)
        message = InboundMessage(
            name=OCCUPANCY_EVENT,
            data={"metrics": {"connections": metrics.connections, "presenceMembers": metrics.presence_members}},
            timestamp=self.now_ms(),
        )
        loop = asyncio.get_running_loop()
        for channel in list(self._attached[channel_name]):
            if channel.wants_occupancy:
                loop.call_soon(channel.deliver, message)

    # ── 历史消息 ──────────────────────────────────────────────────────

    def store(self, room_id: str, record: dict[str, Any]) -> None:
        self._history[room_id].append(record)

    def find(self, room_id: str, serial: str) -> dict[str, Any] | None:
        for record in self._history[room_id]:
            if record["serial"] == serial:
                return record
        return None

    def records(self, room_id: str) -> list[dict[str, Any]]:
        return list(self._history[room_id])


class InMemoryPresence:
    """单个通道的在线状态原语。"""

    def __init__(self, channel: InMemoryChannel) -> None:
        self._channel = channel
        self._handlers: list[PresenceHandler] = []

    async def enter(self, data: Any = None) -> None:
        self._require_attached("enter presence")
        self._channel.hub.presence_action(self._channel, PresenceAction.ENTER, data)

    async def update(self, data: Any = None) -> None:
        self._require_attached("update presence")
        self._channel.hub.presence_action(self._channel, PresenceAction.UPDATE, data)

    async def leave(self, data: Any = None) -> None:
        self._require_attached("leave presence")
        self._channel.hub.presence_action(self._channel, PresenceAction.LEAVE, data)

    async def get(self) -> list[PresenceMessage]:
        await asyncio.sleep(0)
        hub = self._channel.hub
        if hub.presence_get_failures > 0:
            hub.presence_get_failures -= 1
            raise ChatError("presence get failed", ErrorCode.UNKNOWN, 500)
        return hub.presence_members(self._channel.name)

    def subscribe(self, handler: PresenceHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def deliver(self, message: PresenceMessage) -> None:
        for handler in list(self._handlers):
            handler(message)

    def _require_attached(self, operation: str) -> None:
        if self._channel.state is not ChannelState.ATTACHED:
            raise ChatError(
                f"unable to {operation}; channel is {self._channel.state.value}",
                ErrorCode.ROOM_IN_INVALID_STATE,
                400,
            )


class InMemoryChannel:
    """``RealtimeChannel`` 的内存实现。

    Attributes:
        fail_next_attach: 非空时下一次 attach 以该错误失败并进入 failed。
        fail_next_detach: 非空时下一次 detach 以该错误失败。
        attach_delay: attach 前的等待秒数。
        attach_calls / detach_calls: 调用次数统计。
    """

    def __init__(self, hub: InMemoryHub, realtime: InMemoryRealtime, name: str, options: dict[str, Any]) -> None:
        self.hub = hub
        self.name = name
        self.options = options
        self._realtime = realtime
        self._state = ChannelState.INITIALIZED
        self._error: ChatError | None = None
        self._properties = ChannelProperties()
        self._handlers: list[tuple[MessageHandler, frozenset[str] | None]] = []
        self._state_listeners: list[Callable[[ChannelStateChange], None]] = []
        self._presence = InMemoryPresence(self)

        self.fail_next_attach: ChatError | None = None
        self.fail_next_detach: ChatError | None = None
        self.attach_delay: float = 0.0
        self.attach_calls = 0
        self.detach_calls = 0

    # ── 属性 ──────────────────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def error_reason(self) -> ChatError | None:
        return self._error

    @property
    def properties(self) -> ChannelProperties:
        return self._properties

    @property
    def presence(self) -> InMemoryPresence:
        return self._presence

    @property
    def client_id(self) -> str:
        return self._realtime.client_id

    @property
    def connection_id(self) -> str:
        return self._realtime.connection_id

    @property
    def presence_key(self) -> str:
        return f"{self.client_id}:{self.connection_id}"

    @property
    def wants_occupancy(self) -> bool:
        return self.options.get("params", {}).get("occupancy") == "metrics"

    # ── 操作 ──────────────────────────────────────────────────────────

    async def attach(self) -> None:
        self.attach_calls += 1
        if self._state is ChannelState.ATTACHED:
            return
        self._set_state(ChannelState.ATTACHING)
        await asyncio.sleep(self.attach_delay)

        if self.fail_next_attach is not None:
            error, self.fail_next_attach = self.fail_next_attach, None
            self._set_state(ChannelState.FAILED, error)
            raise error

        position = self.hub.next_serial()
        self._properties = ChannelProperties(attach_serial=position, channel_serial=position)
        self.hub.join(self)
        self._set_state(ChannelState.ATTACHED)

    async def detach(self) -> None:
        self.detach_calls += 1
        if self._state in (ChannelState.DETACHED, ChannelState.INITIALIZED):
            return
        self._set_state(ChannelState.DETACHING)
        await asyncio.sleep(0)

        if self.fail_next_detach is not None:
            error, self.fail_next_detach = self.fail_next_detach, None
            self._set_state(ChannelState.ATTACHED)
            raise error

        self.hub.leave(self)
        self._set_state(ChannelState.DETACHED)

    def subscribe(self, handler: MessageHandler, names: Sequence[str] | None = None) -> None:
        self._handlers.append((handler, frozenset(names) if names is not None else None))

    def unsubscribe(self, handler: MessageHandler) -> None:
        self._handlers = [entry for entry in self._handlers if entry[0] is not handler]

    async def publish(self, name: str, data: Any, extras: dict[str, Any] | None = None) -> None:
        if self._state is not ChannelState.ATTACHED:
            raise ChatError(f"unable to publish; channel is {self._state.value}", ErrorCode.ROOM_IN_INVALID_STATE, 400)
        message = InboundMessage(
            name=name,
            data=data,
            client_id=self.client_id,
            connection_id=self.connection_id,
            serial=self.hub.next_serial(),
            timestamp=self.hub.now_ms(),
            extras=extras or {},
        )
        self.hub.publish(self.name, message)

    def on_state_change(self, listener: Callable[[ChannelStateChange], None]) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def _off() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _off

    def deliver(self, message: InboundMessage) -> None:
        if self._state is not ChannelState.ATTACHED:
            return
        position = (message.version or {}).get("serial", message.serial)
        if position is not None:
            self._properties = self._properties.model_copy(update={"channel_serial": position})
        for handler, names in list(self._handlers):
            if names is None or message.name in names:
                handler(message)

    # ── 测试钩子 ──────────────────────────────────────────────────────

    def simulate_state(self, state: ChannelState, reason: ChatError | None = None, resumed: bool = False) -> None:
        """模拟传输层驱动的状态变化（断线、恢复等）。"""
        if state is ChannelState.ATTACHED:
            self.hub.join(self)
            if not resumed:
                position = self.hub.next_serial()
                self._properties = ChannelProperties(attach_serial=position, channel_serial=position)
        elif state in (ChannelState.DETACHED, ChannelState.FAILED, ChannelState.SUSPENDED):
            self.hub.leave(self)
        self._set_state(state, reason, resumed)

    def _set_state(self, state: ChannelState, reason: ChatError | None = None, resumed: bool = False) -> None:
        previous, self._state = self._state, state
        self._error = reason
        change = ChannelStateChange(current=state, previous=previous, reason=reason, resumed=resumed)
        for listener in list(self._state_listeners):
            listener(change)


class InMemoryChannels:
    def __init__(self, realtime: InMemoryRealtime) -> None:
        self._realtime = realtime
        self._channels: dict[str, InMemoryChannel] = {}
        self.released: list[str] = []

    def get(self, name: str, options: dict[str, Any] | None = None) -> InMemoryChannel:
        channel = self._channels.get(name)
        if channel is None:
            channel = InMemoryChannel(self._realtime.hub, self._realtime, name, options or {})
            self._channels[name] = channel
        return channel

    def release(self, name: str) -> None:
        channel = self._channels.pop(name, None)
        if channel is not None:
            self._realtime.hub.leave(channel)
            self.released.append(name)


class InMemoryConnection:
    def __init__(self, state: ConnectionState = ConnectionState.CONNECTED) -> None:
        self._state: str = state.value
        self._error: ChatError | None = None
        self._listeners: list[Callable[[ConnectionStateChange], None]] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def error_reason(self) -> ChatError | None:
        return self._error

    def on_state_change(self, listener: Callable[[ConnectionStateChange], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _off

    def set_state(self, state: str, reason: ChatError | None = None, retry_in: float | None = None) -> None:
        """模拟连接状态变化。"""
        previous, self._state = self._state, state
        self._error = reason
        change = ConnectionStateChange(current=state, previous=previous, reason=reason, retry_in=retry_in)
        for listener in list(self._listeners):
            listener(change)


class InMemoryRealtime:
    """``RealtimeClient`` 的内存实现。"""

    def __init__(self, hub: InMemoryHub, client_id: str | None = None) -> None:
        self.hub = hub
        self._client_id = client_id or f"client-{uuid.uuid4().hex[:8]}"
        self.connection_id = uuid.uuid4().hex[:12]
        self._connection = InMemoryConnection()
        self._channels = InMemoryChannels(self)

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def connection(self) -> InMemoryConnection:
        return self._connection

    @property
    def channels(self) -> InMemoryChannels:
        return self._channels


class InMemoryChatApi:
    """``ChatApi`` 的内存实现：写入 hub 并通过通道发布实时回显。"""

    def __init__(self, hub: InMemoryHub, client_id: str) -> None:
        self._hub = hub
        self._client_id = client_id

    # ── 消息 ──────────────────────────────────────────────────────────

    async def send_message(
        self,
        room_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> SendMessageResponse:
        await asyncio.sleep(0)
        serial = self._hub.next_serial()
        created_at = self._hub.now_ms()
        record = {
            "serial": serial,
            "version": {"serial": serial, "timestamp": created_at},
            "text": text,
            "clientId": self._client_id,
            "action": MessageAction.CREATE.value,
            "metadata": metadata or {},
            "headers": headers or {},
            "timestamp": created_at,
            "reactions": {},
        }
        self._hub.store(room_id, record)
        self._publish_message(room_id, record)
        return SendMessageResponse(serial=serial, created_at=from_millis(created_at))

    async def update_message(
        self,
        room_id: str,
        serial: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> MessageOperationResponse:
        return await self._new_version(
            room_id,
            serial,
            MessageAction.UPDATE,
            {"text": text, "metadata": metadata or {}, "headers": headers or {}},
            description,
            operation_metadata,
        )

    async def delete_message(
        self,
        room_id: str,
        serial: str,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> MessageOperationResponse:
        return await self._new_version(room_id, serial, MessageAction.DELETE, {}, description, operation_metadata)

    async def get_messages(self, room_id: str, options: QueryOptions) -> PaginatedResult[Message]:
        await asyncio.sleep(0)
        records = self._hub.records(room_id)
        if options.from_serial is not None:
            records = [r for r in records if not Serial.parse(r["serial"]).after(options.from_serial)]
        if options.start is not None:
            records = [r for r in records if r["timestamp"] >= to_millis(options.start)]
        if options.end is not None:
            records = [r for r in records if r["timestamp"] <= to_millis(options.end)]
        if options.order_by is OrderBy.NEWEST_FIRST:
            records.reverse()
        messages = [message_from_rest(room_id, record) for record in records]
        return _paginate(messages, options.limit)

    async def get_message(self, room_id: str, serial: str) -> Message:
        self._hub.fetch_calls.append(serial)
        if self._hub.fetch_gate is not None:
            await self._hub.fetch_gate.wait()
        else:
            await asyncio.sleep(0)
        if serial in self._hub.failing_fetches:
            raise ChatError(f"unable to get message; message {serial} not found", ErrorCode.NOT_FOUND, 404)
        record = self._hub.find(room_id, serial)
        if record is None:
            raise ChatError(f"unable to get message; message {serial} not found", ErrorCode.NOT_FOUND, 404)
        return message_from_rest(room_id, record)

    # ── 消息反应 ──────────────────────────────────────────────────────

    async def send_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str,
        count: int = 1,
    ) -> None:
        await asyncio.sleep(0)
        record = self._require(room_id, serial, "send message reaction")
        clients: dict[str, dict[str, int]] = record["reactions"]
        if reaction_type is MessageReactionType.UNIQUE:
            for per_client in clients.values():
                per_client.pop(self._client_id, None)
            clients.setdefault(name, {})[self._client_id] = 1
        elif reaction_type is MessageReactionType.DISTINCT:
            clients.setdefault(name, {})[self._client_id] = 1
        else:
            per_client = clients.setdefault(name, {})
            per_client[self._client_id] = per_client.get(self._client_id, 0) + count
        record["reactions"] = {k: v for k, v in clients.items() if v}

        data = {"type": annotation_type(reaction_type), "name": name, "messageSerial": serial}
        if reaction_type is MessageReactionType.MULTIPLE:
            data["count"] = count
        self._publish_reaction(room_id, REACTION_CREATE_ACTION, data)
        self._publish_summary(room_id, record)

    async def delete_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str | None = None,
    ) -> None:
        await asyncio.sleep(0)
        record = self._require(room_id, serial, "delete message reaction")
        clients: dict[str, dict[str, int]] = record["reactions"]
        if reaction_type is MessageReactionType.UNIQUE:
            for per_client in clients.values():
                per_client.pop(self._client_id, None)
        elif name is not None:
            clients.get(name, {}).pop(self._client_id, None)
        record["reactions"] = {k: v for k, v in clients.items() if v}

        data = {"type": annotation_type(reaction_type), "name": name, "messageSerial": serial}
        self._publish_reaction(room_id, REACTION_DELETE_ACTION, data)
        self._publish_summary(room_id, record)

    async def get_occupancy(self, room_id: str) -> OccupancyData:
        await asyncio.sleep(0)
        return self._hub.occupancy(room_channel_name(room_id))

    # ── 内部 ──────────────────────────────────────────────────────────

    async def _new_version(
        self,
        room_id: str,
        serial: str,
        action: MessageAction,
        changes: dict[str, Any],
        description: str | None,
        operation_metadata: dict[str, str] | None,
    ) -> MessageOperationResponse:
        await asyncio.sleep(0)
        operation = "update message" if action is MessageAction.UPDATE else "delete message"
        record = self._require(room_id, serial, operation)
        version = self._hub.next_serial()
        timestamp = self._hub.now_ms()
        record.update(changes)
        record["action"] = action.value
        record["version"] = {
            "serial": version,
            "timestamp": timestamp,
            "clientId": self._client_id,
            "description": description,
            "metadata": operation_metadata,
        }
        self._publish_message(room_id, record)
        return MessageOperationResponse(version=version, timestamp=from_millis(timestamp))

    def _require(self, room_id: str, serial: str, operation: str) -> dict[str, Any]:
        record = self._hub.find(room_id, serial)
        if record is None:
            raise ChatError(f"unable to {operation}; message {serial} not found", ErrorCode.NOT_FOUND, 404)
        return record

    def _publish_message(self, room_id: str, record: dict[str, Any]) -> None:
        self._hub.publish(
            room_channel_name(room_id),
            InboundMessage(
                name=MESSAGE_EVENT,
                action=record["action"],
                data={"text": record["text"], "metadata": record["metadata"]},
                client_id=record["clientId"],
                serial=record["serial"],
                version=dict(record["version"]),
                timestamp=record["timestamp"],
                extras={"headers": record["headers"]},
            ),
        )

    def _publish_reaction(self, room_id: str, action: str, data: dict[str, Any]) -> None:
        self._hub.publish(
            room_channel_name(room_id),
            InboundMessage(
                name=MESSAGE_REACTION_EVENT,
                action=action,
                data=data,
                client_id=self._client_id,
                timestamp=self._hub.now_ms(),
            ),
        )

    def _publish_summary(self, room_id: str, record: dict[str, Any]) -> None:
        self._hub.publish(
            room_channel_name(room_id),
            InboundMessage(
                name=MESSAGE_REACTION_EVENT,
                action=REACTION_SUMMARY_ACTION,
                data={
                    "messageSerial": record["serial"],
                    "summary": {name: dict(per_client) for name, per_client in record["reactions"].items()},
                },
                timestamp=self._hub.now_ms(),
            ),
        )


def _paginate(messages: list[Message], limit: int, offset: int = 0) -> PaginatedResult[Message]:
    page = messages[offset:offset + limit]
    if offset + limit >= len(messages):
        return PaginatedResult(page)

    async def _next() -> PaginatedResult[Message]:
        return _paginate(messages, limit, offset + limit)

    return PaginatedResult(page, _next)
