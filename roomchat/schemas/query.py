"""
roomchat.schemas.query
~~~~~~~~~~~~~~~~~~~~~~

历史消息查询参数、分页结果以及 REST 写操作的应答模型。
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from roomchat.schemas.types import SerialField

T = TypeVar("T")


class OrderBy(str, Enum):
    OLDEST_FIRST = "oldestFirst"
    NEWEST_FIRST = "newestFirst"


class QueryOptions(BaseModel):
    """历史消息查询参数。"""

    model_config = ConfigDict(frozen=True)

    start: datetime | None = Field(default=None, description="起始时间（含）")
    end: datetime | None = Field(default=None, description="结束时间（含）")
    limit: int = Field(default=100, ge=1, le=1000, description="单页最大条数")
    order_by: OrderBy = Field(default=OrderBy.NEWEST_FIRST, description="排序方向")
    from_serial: str | None = Field(default=None, description="仅返回该订阅点之前的消息（内部使用）")


class PaginatedResult(Generic[T]):
    """分页结果。

    Args:
        items: 当前页数据。
        fetch_next: 拉取下一页的协程工厂；``None`` 表示已是最后一页。
    """

    def __init__(
        self,
        items: list[T],
        fetch_next: Callable[[], Awaitable[PaginatedResult[T]]] | None = None,
    ) -> None:
        self.items = items
        self._fetch_next = fetch_next

    def has_next(self) -> bool:
        return self._fetch_next is not None

    def is_last(self) -> bool:
        return self._fetch_next is None

    async def next(self) -> PaginatedResult[T] | None:
        """拉取下一页，没有下一页时返回 ``None``。"""
        if self._fetch_next is None:
            return None
        return await self._fetch_next()

    def __repr__(self) -> str:
        return f"PaginatedResult(items={len(self.items)}, has_next={self.has_next()})"


class SendMessageResponse(BaseModel):
    serial: SerialField = Field(..., description="新消息序列号")
    created_at: datetime = Field(..., description="服务端创建时间")


class MessageOperationResponse(BaseModel):
    version: SerialField = Field(..., description="新版本序列号")
    timestamp: datetime = Field(..., description="操作时间")
