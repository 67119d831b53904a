"""
roomchat.services.room_reactions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间级瞬时表情反应：发布即走，不保留任何状态。
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError, ErrorCode, invalid_argument, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.reactions import RoomReaction, RoomReactionEvent, RoomReactionEventType
from roomchat.schemas.types import from_millis
from roomchat.services.channel_manager import ChannelManager
from roomchat.services.connection import Connection
from roomchat.services.lifecycle import RoomLifecycle
from roomchat.transport.channel import InboundMessage
from roomchat.transport.wire import ROOM_REACTION_EVENT

logger = get_logger(__name__)


class RoomReactions:
    def __init__(
        self,
        room_id: str,
        channels: ChannelManager,
        lifecycle: RoomLifecycle,
        connection: Connection,
        client_id: str | None,
    ) -> None:
        self._room_id = room_id
        self._channels = channels
        self._channel = channels.channel
        self._lifecycle = lifecycle
        self._connection = connection
        self._client_id = client_id
        self._emitter: EventEmitter[RoomReactionEventType, RoomReactionEvent] = EventEmitter(
            RoomReactionEventType, "room_reactions",
        )
        self._channel.subscribe(self._on_inbound, [ROOM_REACTION_EVENT])

    async def send(
        self,
        name: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """向房间发送一个瞬时反应。"""
        operation = "send room reaction"
        self._lifecycle.ensure_usable(operation)
        if not name:
            raise invalid_argument(operation, "name must be a non-empty string")
        if not self._connection.is_connected:
            raise ChatError(
                f"unable to {operation}; connection is {self._connection.status.value}",
                ErrorCode.DISCONNECTED,
                400,
            )

        payload = {"name": name, "metadata": metadata or {}}
        extras = {"headers": headers or {}, "ephemeral": True}
        try:
            await self._channel.publish(ROOM_REACTION_EVENT, payload, extras=extras)
        except Exception as exc:
            raise wrap_error(operation, exc) from exc

    def subscribe(self, listener: Callable[[RoomReactionEvent], None]) -> Subscription:
        self._lifecycle.ensure_usable("subscribe to room reactions")
        subscription = self._emitter.subscribe(listener)
        self._channels.hold("reactions")

        def _unsubscribe() -> None:
            subscription.unsubscribe()
            self._channels.drop("reactions")

        return Subscription(_unsubscribe)

    def dispose(self) -> None:
        self._channel.unsubscribe(self._on_inbound)
        self._emitter.clear()

    def _on_inbound(self, inbound: InboundMessage) -> None:
        data = inbound.data if isinstance(inbound.data, dict) else {}
        try:
            reaction = RoomReaction(
                name=data.get("name") or "",
                client_id=inbound.client_id or "",
                metadata=data.get("metadata") or {},
                headers=inbound.extras.get("headers") or {},
                created_at=from_millis(inbound.timestamp),
                is_self=inbound.client_id is not None and inbound.client_id == self._client_id,
            )
        except ValidationError as exc:
            logger.warning("无法解析的房间反应，已丢弃 | room=%s | error=%s", self._room_id, exc)
            return
        if not reaction.name or not reaction.client_id:
            logger.warning("房间反应缺少 name 或 client_id，已丢弃 | room=%s", self._room_id)
            return
        self._emitter.emit(RoomReactionEventType.REACTION, RoomReactionEvent(reaction=reaction))
