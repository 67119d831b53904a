"""
roomchat.schemas.reactions
~~~~~~~~~~~~~~~~~~~~~~~~~~

房间表情反应与消息反应的数据模型，以及单条消息上的反应聚合。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from roomchat.schemas.types import SerialField

# 聚合中 "mine" / "latest" 列表的上限
MAX_MINE_REACTIONS: int = 10
MAX_LATEST_REACTIONS: int = 5


class MessageReactionType(str, Enum):
    """消息反应的计数语义。

    - ``unique``: 每个用户在一条消息上只能保留一个反应，新反应替换旧反应。
    - ``distinct``: 每个用户对每种反应只计一次。
    - ``multiple``: 同一用户可对同一反应重复计数。
    """

    UNIQUE = "unique"
    DISTINCT = "distinct"
    MULTIPLE = "multiple"


class MessageReactionEventType(str, Enum):
    CREATE = "reaction.create"
    DELETE = "reaction.delete"
    SUMMARY = "reaction.summary"


class MessageReaction(BaseModel):
    """一次原始的消息反应操作。"""

    model_config = ConfigDict(frozen=True)

    type: MessageReactionType = Field(..., description="反应类型")
    name: str = Field(..., description="反应名称，例如表情符号")
    message_serial: SerialField = Field(..., description="被反应消息的序列号")
    client_id: str = Field(..., description="反应发起者")
    count: int = Field(default=1, ge=1, description="计数（仅 multiple 类型有意义）")
    created_at: datetime = Field(..., description="反应时间")


class MessageReactionSummary(BaseModel):
    """单条消息上的反应聚合。

    ``clients`` 记录 ``反应名 -> {client_id: 计数}``，``counts`` 由其派生；
    ``mine`` 为当前客户端参与过的反应名，``latest`` 为最近的原始反应（新在前）。
    """

    model_config = ConfigDict(frozen=True)

    clients: dict[str, dict[str, int]] = Field(default_factory=dict, description="各反应的参与者计数")
    mine: list[str] = Field(default_factory=list, description="当前客户端参与的反应名")
    latest: list[MessageReaction] = Field(default_factory=list, description="最近的原始反应")

    @property
    def counts(self) -> dict[str, int]:
        return {name: sum(per_client.values()) for name, per_client in self.clients.items()}

    def with_reaction(self, reaction: MessageReaction, own_client_id: str | None) -> MessageReactionSummary:
        """应用一次新增反应，返回新的聚合。"""
        clients = {name: dict(per_client) for name, per_client in self.clients.items()}

        if reaction.type is MessageReactionType.UNIQUE:
            for per_client in clients.values():
                per_client.pop(reaction.client_id, None)
            clients.setdefault(reaction.name, {})[reaction.client_id] = 1
        elif reaction.type is MessageReactionType.DISTINCT:
            clients.setdefault(reaction.name, {})[reaction.client_id] = 1
        else:
            per_client = clients.setdefault(reaction.name, {})
            per_client[reaction.client_id] = per_client.get(reaction.client_id, 0) + reaction.count

        latest = [reaction, *self.latest][:MAX_LATEST_REACTIONS]
        return self._rebuild(clients, own_client_id, latest)

    def without_reaction(self, reaction: MessageReaction, own_client_id: str | None) -> MessageReactionSummary:
        """应用一次删除反应，返回新的聚合。"""
        clients = {name: dict(per_client) for name, per_client in self.clients.items()}

        if reaction.type is MessageReactionType.UNIQUE:
            for per_client in clients.values():
                per_client.pop(reaction.client_id, None)
        else:
            clients.get(reaction.name, {}).pop(reaction.client_id, None)

        latest = [
            item for item in self.latest
            if not (item.client_id == reaction.client_id
                    and (reaction.type is MessageReactionType.UNIQUE or item.name == reaction.name))
        ]
        return self._rebuild(clients, own_client_id, latest)

    def with_clients(self, clients: dict[str, dict[str, int]], own_client_id: str | None) -> MessageReactionSummary:
        """用服务端下发的完整聚合替换本地计数。"""
        return self._rebuild(clients, own_client_id, list(self.latest))

    def _rebuild(
        self,
        clients: dict[str, dict[str, int]],
        own_client_id: str | None,
        latest: list[MessageReaction],
    ) -> MessageReactionSummary:
        clients = {name: per_client for name, per_client in clients.items() if per_client}
        mine: list[str] = []
        if own_client_id is not None:
            mine = [name for name, per_client in clients.items() if own_client_id in per_client]
        return MessageReactionSummary(
            clients=clients,
            mine=mine[:MAX_MINE_REACTIONS],
            latest=latest,
        )


class MessageReactionRawEvent(BaseModel):
    """原始消息反应事件（需开启 raw_message_reactions）。"""

    type: MessageReactionEventType = Field(..., description="reaction.create / reaction.delete")
    reaction: MessageReaction = Field(..., description="原始反应")


class MessageReactionSummaryEvent(BaseModel):
    """消息反应聚合变化事件。"""

    type: MessageReactionEventType = Field(default=MessageReactionEventType.SUMMARY)
    message_serial: SerialField = Field(..., description="消息序列号")
    summary: MessageReactionSummary = Field(..., description="最新聚合")


class RoomReaction(BaseModel):
    """房间级别的瞬时表情反应，不做持久化。"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="反应名称")
    client_id: str = Field(..., description="发送者")
    metadata: dict[str, Any] = Field(default_factory=dict, description="附加元数据")
    headers: dict[str, Any] = Field(default_factory=dict, description="附加头信息")
    created_at: datetime = Field(..., description="发送时间")
    is_self: bool = Field(default=False, description="是否为当前客户端发送")


class RoomReactionEventType(str, Enum):
    REACTION = "reaction"


class RoomReactionEvent(BaseModel):
    type: RoomReactionEventType = Field(default=RoomReactionEventType.REACTION)
    reaction: RoomReaction
