"""
roomchat.services.rooms
~~~~~~~~~~~~~~~~~~~~~~~

房间注册表：保证每个房间 ID 在进程内最多只有一个存活实例。

每个房间 ID 处于以下之一：

- absent：没有实例；
- live：有实例（或一个等待释放完成的待创建项）；
- releasing：实例正在释放。

所有注册表变更都在协程第一次 ``await`` 之前同步完成，因此事件循环本身就是
每个房间 ID 的唯一写者；不同房间 ID 之间互不等待。

释放期间调用 ``get()`` 会登记一个待创建项，释放完成后再创建新实例；
若在此期间又调用了 ``release()``，待创建项会以
``ROOM_RELEASED_BEFORE_OPERATION_COMPLETED`` 失败。
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any

from roomchat.core.config import Settings
from roomchat.core.errors import ChatError, ErrorCode, invalid_argument
from roomchat.core.logging import get_logger
from roomchat.schemas.room import RoomOptions
from roomchat.services.connection import Connection
from roomchat.services.room import Room
from roomchat.transport.channel import RealtimeClient
from roomchat.transport.chat_api import ChatApi

logger = get_logger(__name__)


@dataclass
class _RoomEntry:
    options: RoomOptions
    room: Room | None = None
    # 释放完成前的待创建项
    future: asyncio.Future[Room] | None = None


@dataclass
class _ReleaseEntry:
    generation: int
    task: asyncio.Task[None]


class Rooms:
    """房间注册表。

    Args:
        realtime: 实时客户端。
        chat_api: REST 协作者。
        connection: 连接状态包装。
        settings: 全局配置。
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        chat_api: ChatApi,
        connection: Connection,
        settings: Settings,
    ) -> None:
        self._realtime = realtime
        self._api = chat_api
        self._connection = connection
        self._settings = settings
        self._rooms: dict[str, _RoomEntry] = {}
        self._releasing: dict[str, _ReleaseEntry] = {}
        self._generations = itertools.count(1)

    @property
    def client_options(self) -> Settings:
        return self._settings

    @property
    def count(self) -> int:
        """当前登记的房间数（含待创建项，不含正在释放的实例）。"""
        return len(self._rooms)

    async def get(self, room_id: str, options: RoomOptions | dict[str, Any] | None = None) -> Room:
        """获取房间实例；同一 ID 同一配置总是返回同一个实例。

        Raises:
            ChatError: ID 为空（``INVALID_ARGUMENT``）、配置非法（``INVALID_ROOM_OPTIONS``）、
                与已有实例配置不同（``ROOM_EXISTS_WITH_DIFFERENT_OPTIONS``），
                或等待期间房间被释放（``ROOM_RELEASED_BEFORE_OPERATION_COMPLETED``）。
        """
        if not room_id:
            raise invalid_argument("get room", "room id must be a non-empty string")
        if options is None:
            options = RoomOptions()
        elif isinstance(options, dict):
            options = RoomOptions.from_dict(options)

        entry = self._rooms.get(room_id)
        if entry is not None:
            if entry.options != options:
                raise ChatError(
                    f"unable to get room; room {room_id!r} already exists with different options",
                    ErrorCode.ROOM_EXISTS_WITH_DIFFERENT_OPTIONS,
                    400,
                )
            if entry.room is not None:
                return entry.room
            return await asyncio.shield(entry.future)

        releasing = self._releasing.get(room_id)
        if releasing is None:
            room = self._create(room_id, options)
            self._rooms[room_id] = _RoomEntry(options=options, room=room)
            return room

        logger.info("房间正在释放，等待释放完成后再创建 | room=%s", room_id)
        future: asyncio.Future[Room] = asyncio.get_running_loop().create_future()
        self._rooms[room_id] = _RoomEntry(options=options, future=future)
        releasing.task.add_done_callback(lambda _: self._complete_pending_get(room_id, future))
        return await asyncio.shield(future)

    async def release(self, room_id: str) -> None:
        """释放房间（幂等）。不存在的房间直接返回，或等待进行中的释放。"""
        entry = self._rooms.get(room_id)
        releasing = self._releasing.get(room_id)

        if entry is None:
            if releasing is not None:
                await asyncio.shield(releasing.task)
            return

        del self._rooms[room_id]
        if entry.room is None:
            logger.info("取消等待中的房间获取 | room=%s", room_id)
            if entry.future is not None and not entry.future.done():
                entry.future.set_exception(
                    ChatError(
                        "unable to get room; room released before get operation could complete",
                        ErrorCode.ROOM_RELEASED_BEFORE_OPERATION_COMPLETED,
                        400,
                    ),
                )
            if releasing is not None:
                await asyncio.shield(releasing.task)
            return

        generation = next(self._generations)
        task = asyncio.get_running_loop().create_task(self._release_room(room_id, entry.room, generation))
        self._releasing[room_id] = _ReleaseEntry(generation=generation, task=task)
        await asyncio.shield(task)

    async def dispose(self) -> None:
        """释放所有房间。"""
        room_ids = set(self._rooms) | set(self._releasing)
        await asyncio.gather(*(self.release(room_id) for room_id in room_ids))

    # ── 内部 ──────────────────────────────────────────────────────────

    def _create(self, room_id: str, options: RoomOptions) -> Room:
        return Room(room_id, options, self._realtime, self._api, self._connection, self._settings)

    def _complete_pending_get(self, room_id: str, future: asyncio.Future[Room]) -> None:
        entry = self._rooms.get(room_id)
        if entry is None or entry.future is not future or future.done():
            return
        room = self._create(room_id, entry.options)
        entry.room = room
        entry.future = None
        future.set_result(room)

    async def _release_room(self, room_id: str, room: Room, generation: int) -> None:
        try:
            await room.release()
        finally:
            current = self._releasing.get(room_id)
            if current is not None and current.generation == generation:
                del self._releasing[room_id]
