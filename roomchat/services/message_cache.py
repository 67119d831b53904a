"""
roomchat.services.message_cache
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

有界的消息快照缓存（LRU），以消息创建序列号为键。
"""
from __future__ import annotations

from collections import OrderedDict

from roomchat.schemas.message import Message


class MessageCache:
    """消息身份 -> 最新已知快照。

    Args:
        capacity: 最大条目数，超出时淘汰最久未访问的条目。
    """

    def __init__(self, capacity: int = 1000) -> None:
        self._capacity = capacity
        self._entries: OrderedDict[str, Message] = OrderedDict()

    def get(self, serial: str) -> Message | None:
        message = self._entries.get(serial)
        if message is not None:
            self._entries.move_to_end(serial)
        return message

    def put(self, message: Message) -> Message:
        """写入快照；已有更新版本时保留较新的版本。返回最终保存的快照。"""
        key = str(message.serial)
        existing = self._entries.get(key)
        if existing is not None and not message.version.after(existing.version):
            self._entries.move_to_end(key)
            return existing

        self._entries[key] = message
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
        return message

    def replace(self, message: Message) -> None:
        """无条件覆盖快照（用于反应聚合等不改变版本的更新）。"""
        key = str(message.serial)
        self._entries[key] = message
        self._entries.move_to_end(key)

    def __contains__(self, serial: object) -> bool:
        return serial in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
