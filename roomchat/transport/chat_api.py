"""
roomchat.transport.chat_api
~~~~~~~~~~~~~~~~~~~~~~~~~~~

聊天 REST API 协作者。

``ChatApi`` 定义 SDK 消费的窄接口；``HttpChatApi`` 基于 ``httpx.AsyncClient``
实现真实的 HTTP 调用，非 2xx 响应统一转换为 ``ChatError``。
"""
from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from roomchat.core.config import Settings
from roomchat.core.errors import ChatError, ErrorCode, wrap_error
from roomchat.core.logging import get_logger
from roomchat.schemas.features import OccupancyData
from roomchat.schemas.message import Message
from roomchat.schemas.query import (
    MessageOperationResponse,
    OrderBy,
    PaginatedResult,
    QueryOptions,
    SendMessageResponse,
)
from roomchat.schemas.reactions import MessageReactionType
from roomchat.schemas.types import from_millis, to_millis
from roomchat.transport.wire import annotation_type, message_from_rest

logger = get_logger(__name__)

_API_PREFIX: str = "/chat/v4/rooms"


class ChatApi(Protocol):
    """SDK 依赖的 REST 接口。"""

    async def send_message(
        self,
        room_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> SendMessageResponse: ...

    async def update_message(
        self,
        room_id: str,
        serial: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> MessageOperationResponse: ...

    async def delete_message(
        self,
        room_id: str,
        serial: str,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> MessageOperationResponse: ...

    async def get_messages(self, room_id: str, options: QueryOptions) -> PaginatedResult[Message]: ...

    async def get_message(self, room_id: str, serial: str) -> Message: ...

    async def send_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str,
        count: int = 1,
    ) -> None: ...

    async def delete_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str | None = None,
    ) -> None: ...

    async def get_occupancy(self, room_id: str) -> OccupancyData: ...


class HttpChatApi:
    """``ChatApi`` 的 HTTP 实现。

    Args:
        base_url: REST 服务根地址。
        api_key: 可选的 Bearer 鉴权密钥。
        timeout: 请求超时（秒）。
        client: 外部传入的 ``httpx.AsyncClient``（测试时可注入 MockTransport）。
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpChatApi:
        return cls(settings.CHAT_API_URL, settings.CHAT_API_KEY, settings.CHAT_API_TIMEOUT)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── 消息 ──────────────────────────────────────────────────────────

    async def send_message(
        self,
        room_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> SendMessageResponse:
        body: dict[str, Any] = {"text": text}
        if metadata:
            body["metadata"] = metadata
        if headers:
            body["headers"] = headers

        data = await self._request("send message", "POST", f"{_room_path(room_id)}/messages", json=body)
        return SendMessageResponse(serial=data["serial"], created_at=from_millis(data.get("createdAt")))

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
        body = {
            "message": {"text": text, "metadata": metadata, "headers": headers},
            "description": description,
            "metadata": operation_metadata,
        }
        data = await self._request(
            "update message", "PUT", f"{_room_path(room_id)}/messages/{quote(serial, safe='')}", json=body,
        )
        return MessageOperationResponse(version=data["version"], timestamp=from_millis(data.get("timestamp")))

    async def delete_message(
        self,
        room_id: str,
        serial: str,
        description: str | None = None,
        operation_metadata: dict[str, str] | None = None,
    ) -> MessageOperationResponse:
        body = {"description": description, "metadata": operation_metadata}
        data = await self._request(
            "delete message", "POST", f"{_room_path(room_id)}/messages/{quote(serial, safe='')}/delete", json=body,
        )
        return MessageOperationResponse(version=data["version"], timestamp=from_millis(data.get("timestamp")))

    async def get_messages(self, room_id: str, options: QueryOptions) -> PaginatedResult[Message]:
        params: dict[str, Any] = {
            "limit": options.limit,
            "direction": "backwards" if options.order_by is OrderBy.NEWEST_FIRST else "forwards",
        }
        if options.start is not None:
            params["start"] = to_millis(options.start)
        if options.end is not None:
            params["end"] = to_millis(options.end)
        if options.from_serial is not None:
            params["fromSerial"] = options.from_serial
        return await self._get_page(room_id, f"{_room_path(room_id)}/messages", params)

    async def get_message(self, room_id: str, serial: str) -> Message:
        data = await self._request(
            "get message", "GET", f"{_room_path(room_id)}/messages/{quote(serial, safe='')}",
        )
        return message_from_rest(room_id, data)

    # ── 消息反应 ──────────────────────────────────────────────────────

    async def send_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str,
        count: int = 1,
    ) -> None:
        body: dict[str, Any] = {"type": annotation_type(reaction_type), "name": name}
        if reaction_type is MessageReactionType.MULTIPLE:
            body["count"] = count
        await self._request(
            "send message reaction",
            "POST",
            f"{_room_path(room_id)}/messages/{quote(serial, safe='')}/reactions",
            json=body,
        )

    async def delete_message_reaction(
        self,
        room_id: str,
        serial: str,
        reaction_type: MessageReactionType,
        name: str | None = None,
    ) -> None:
        params = {"type": annotation_type(reaction_type)}
        if name is not None:
            params["name"] = name
        await self._request(
            "delete message reaction",
            "DELETE",
            f"{_room_path(room_id)}/messages/{quote(serial, safe='')}/reactions",
            params=params,
        )

    # ── 在线人数 ──────────────────────────────────────────────────────

    async def get_occupancy(self, room_id: str) -> OccupancyData:
        data = await self._request("get occupancy", "GET", f"{_room_path(room_id)}/occupancy")
        return OccupancyData.model_validate(data)

    # ── 内部 ──────────────────────────────────────────────────────────

    async def _get_page(self, room_id: str, url: str, params: dict[str, Any] | None) -> PaginatedResult[Message]:
        response = await self._send("get messages", "GET", url, params=params)
        body = response.json()
        items = body if isinstance(body, list) else body.get("items", [])
        messages = [message_from_rest(room_id, item) for item in items]

        next_url = response.links.get("next", {}).get("url")
        if not next_url:
            return PaginatedResult(messages)
        return PaginatedResult(messages, lambda: self._get_page(room_id, next_url, None))

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        response = await self._send(operation, method, url, json=json, params=params)
        if not response.content:
            return None
        return response.json()

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.error("REST 请求失败 | method=%s | url=%s | error=%s", method, url, exc)
            raise wrap_error(operation, exc) from exc

        if response.is_error:
            error = _error_from_response(response)
            logger.error(
                "REST 请求返回错误 | method=%s | url=%s | status=%s | code=%s",
                method, url, response.status_code, int(error.code),
            )
            raise wrap_error(operation, error)
        return response


def _room_path(room_id: str) -> str:
    return f"{_API_PREFIX}/{quote(room_id, safe='')}"


def _error_from_response(response: httpx.Response) -> ChatError:
    message = response.reason_phrase or f"HTTP {response.status_code}"
    code: ErrorCode | None = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            message = error.get("message", message)
            try:
                code = ErrorCode(int(error.get("code", 0)))
            except (TypeError, ValueError):
                code = None

    if code is None:
        code = {
            400: ErrorCode.BAD_REQUEST,
            404: ErrorCode.NOT_FOUND,
            504: ErrorCode.OPERATION_TIMEOUT,
        }.get(response.status_code, ErrorCode.UNKNOWN)
    return ChatError(message, code, response.status_code)
