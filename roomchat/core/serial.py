"""
roomchat.core.serial
~~~~~~~~~~~~~~~~~~~~

消息序列号（Serial）解析与全序比较。

序列号的规范字符串形式为 ``seriesId@timestamp-counter[:index]``，
无需中心化的发号器即可对消息及其版本进行全局排序。
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from functools import cmp_to_key
from typing import Any, Callable, Union

from roomchat.core.errors import invalid_argument


class SerialOrder(IntEnum):
    """两个序列号的比较结果。"""

    BEFORE = -1
    EQUAL = 0
    AFTER = 1


@dataclass(frozen=True)
class Serial:
    """不可变的序列号值对象。

    排序规则：依次比较 ``timestamp``、``counter``、``series_id``（字典序），
    仅当双方都带 ``index`` 时才比较 ``index``；只有一方带 ``index`` 时视为相等。

    Attributes:
        series_id: 序列标识。
        timestamp: 毫秒时间戳。
        counter: 同一时间戳内的计数器。
        index: 可选的批内下标。
    """

    series_id: str
    timestamp: int
    counter: int
    index: int | None = None

    @classmethod
    def parse(cls, value: SerialLike) -> Serial:
        """把字符串解析为 ``Serial``，格式非法时抛出 ``INVALID_ARGUMENT``。"""
        if isinstance(value, Serial):
            return value
        if not isinstance(value, str) or not value:
            raise invalid_argument("parse serial", f"invalid serial: {value!r}")

        series_id, at, rest = value.partition("@")
        if not at or not series_id or not rest:
            raise invalid_argument("parse serial", f"invalid serial: {value!r}")

        timestamp_part, dash, tail = rest.partition("-")
        if not dash or not timestamp_part or not tail:
            raise invalid_argument("parse serial", f"invalid serial: {value!r}")

        counter_part, colon, index_part = tail.partition(":")
        if not counter_part or (colon and not index_part):
            raise invalid_argument("parse serial", f"invalid serial: {value!r}")

        try:
            timestamp = _parse_int(timestamp_part)
            counter = _parse_int(counter_part)
            index = _parse_int(index_part) if colon else None
        except ValueError:
            raise invalid_argument("parse serial", f"invalid serial: {value!r}") from None

        return cls(series_id=series_id, timestamp=timestamp, counter=counter, index=index)

    def compare(self, other: SerialLike) -> SerialOrder:
        """与另一个序列号比较。"""
        other = Serial.parse(other)

        for mine, theirs in (
            (self.timestamp, other.timestamp),
            (self.counter, other.counter),
            (self.series_id, other.series_id),
        ):
            if mine != theirs:
                return SerialOrder.BEFORE if mine < theirs else SerialOrder.AFTER

        if self.index is not None and other.index is not None and self.index != other.index:
            return SerialOrder.BEFORE if self.index < other.index else SerialOrder.AFTER
        return SerialOrder.EQUAL

    def before(self, other: SerialLike) -> bool:
        return self.compare(other) is SerialOrder.BEFORE

    def after(self, other: SerialLike) -> bool:
        return self.compare(other) is SerialOrder.AFTER

    def equal(self, other: SerialLike) -> bool:
        return self.compare(other) is SerialOrder.EQUAL

    def __str__(self) -> str:
        text = f"{self.series_id}@{self.timestamp}-{self.counter}"
        if self.index is not None:
            text += f":{self.index}"
        return text


SerialLike = Union[Serial, str]


def _parse_int(part: str) -> int:
    # 只接受规范的十进制数字，拒绝 "+1"、" 1"、"1_000"、"01" 等 int() 可接受的写法，
    # 保证 str(Serial.parse(s)) == s
    if not part.isdigit() or not part.isascii() or (len(part) > 1 and part[0] == "0"):
        raise ValueError(part)
    return int(part)


def compare(a: SerialLike, b: SerialLike) -> SerialOrder:
    """比较两个序列号（字符串或 ``Serial``）。"""
    return Serial.parse(a).compare(b)


def sort_key() -> Callable[[SerialLike], Any]:
    """返回可用于 ``sorted(..., key=...)`` 的序列号排序键。"""
    return cmp_to_key(lambda a, b: int(compare(a, b)))
