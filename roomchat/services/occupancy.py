"""
roomchat.services.occupancy
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间在线人数。

实时更新来自通道元事件 ``[meta]occupancy``（需在房间选项中开启），
也可以随时通过 REST 主动查询。
"""
from __future__ import annotations

from collections.abc import Callable

from pydantic import ValidationError

from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.features import OccupancyData, OccupancyEvent, OccupancyEventType
from roomchat.schemas.room import OccupancyOptions
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.transport.channel import InboundMessage
from roomchat.transport.chat_api import ChatApi
from roomchat.transport.wire import OCCUPANCY_EVENT

logger = get_logger(__name__)


class Occupancy:
    def __init__(
        self,
        room_id: str,
        channels: ChannelManager,
        lifecycle: RoomLifecycle,
        chat_api: ChatApi,
        options: OccupancyOptions,
    ) -> None:
        self._room_id = room_id
        self._channels = channels
        self._channel = channels.channel
        self._lifecycle = lifecycle
        self._api = chat_api
        self._options = options
        self._current: OccupancyData | None = None
        self._emitter: EventEmitter[OccupancyEventType, OccupancyEvent] = EventEmitter(
            OccupancyEventType, "occupancy",
        )
        self._channel.subscribe(self._on_inbound, [OCCUPANCY_EVENT])

    @property
    def current(self) -> OccupancyData | None:
        """最近一次观察到的在线人数；尚未收到任何数据时为 None。"""
        return self._current

    async def get(self) -> OccupancyData:
        operation = "get occupancy"
        self._lifecycle.ensure_usable(operation)
        try:
            data = await self._api.get_occupancy(self._room_id)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc
        self._current = data
        return data

    def subscribe(self, listener: Callable[[OccupancyEvent], None]) -> Subscription:
        operation = "subscribe to occupancy"
        self._lifecycle.ensure_usable(operation)
        if not self._options.enable_events:
            raise ChatError(
                f"unable to {operation}; occupancy events are not enabled in room options",
                ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM,
                400,
            )
        subscription = self._emitter.subscribe(listener)
        self._channels.hold("occupancy")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            self._channels.drop("occupancy")

        return Subscription(_unsubscribe)

    def dispose(self) -> None:
        self._channel.unsubscribe(self._on_inbound)
        self._emitter.clear()

    def _on_inbound(self, inbound: InboundMessage) -> None:
        metrics = inbound.data.get("metrics") if isinstance(inbound.data, dict) else None
        if not isinstance(metrics, dict):
            logger.warning("在线人数事件缺少 metrics，已丢弃 | room=%s", self._room_id)
            return
        try:
            data = OccupancyData.model_validate(metrics, strict=True)
        except ValidationError as exc:
            logger.warning("在线人数事件格式无效，已丢弃 | room=%s | error=%s", self._room_id, exc)
            return

        self._current = data
        self._emitter.emit(OccupancyEventType.UPDATED, OccupancyEvent(occupancy=data))
