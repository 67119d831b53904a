"""
roomchat.client
~~~~~~~~~~~~~~~

SDK 入口：组合连接状态、REST 协作者与房间注册表。

日志系统不会被隐式初始化，应用应在启动时自行调用
``roomchat.core.logging.setup_logging()``。
"""
from __future__ import annotations

from types import TracebackType

from roomchat.core.config import Settings, get_settings
from roomchat.core.logging import get_logger
from roomchat.services.connection import Connection
from roomchat.services.rooms import Rooms
from roomchat.transport.channel import RealtimeClient
from roomchat.transport.chat_api import ChatApi, HttpChatApi

logger = get_logger(__name__)


class ChatClient:
    """聊天客户端。

    Args:
        realtime: 实时客户端（连接、通道、在线状态）。
        chat_api: REST 协作者；缺省时按配置创建 ``HttpChatApi``。
        settings: 全局配置；缺省读取环境变量。

    Example::

        async with ChatClient(realtime) as client:
            room = await client.rooms.get("lobby")
            await room.attach()
            await room.messages.send("hello")
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        chat_api: ChatApi | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._realtime = realtime
        self._settings = settings or get_settings()
        self._owned_api: HttpChatApi | None = None
        if chat_api is None:
            self._owned_api = HttpChatApi.from_settings(self._settings)
            chat_api = self._owned_api
        self._api = chat_api
        self._connection = Connection(realtime.connection)
        self._rooms = Rooms(realtime, chat_api, self._connection, self._settings)
        self._closed = False
        logger.info(
            "聊天客户端已创建 | client_id=%s | env=%s", realtime.client_id, self._settings.ENVIRONMENT,
        )

    @property
    def client_id(self) -> str | None:
        return self._realtime.client_id

    @property
    def rooms(self) -> Rooms:
        return self._rooms

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def settings(self) -> Settings:
        return self._settings

    async def close(self) -> None:
        """释放所有房间并停止监听连接状态（幂等）。"""
        if self._closed:
            return
        self._closed = True
        await self._rooms.dispose()
        self._connection.dispose()
        if self._owned_api is not None:
            await self._owned_api.aclose()
        logger.info("聊天客户端已关闭 | client_id=%s", self.client_id)

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
