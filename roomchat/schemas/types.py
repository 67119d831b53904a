"""
roomchat.schemas.types
~~~~~~~~~~~~~~~~~~~~~~

schemas 之间共享的字段类型。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from pydantic import PlainSerializer, PlainValidator

from roomchat.core.serial import Serial

# 序列号字段：接受字符串或 Serial，序列化回规范字符串
SerialField = Annotated[
    Serial,
    PlainValidator(Serial.parse),
    PlainSerializer(str, return_type=str),
]


def from_millis(value: int | float | None) -> datetime:
    """毫秒时间戳转为带时区的 ``datetime``（缺省为当前时间）。"""
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_millis(value: datetime) -> int:
    """``datetime`` 转毫秒时间戳。"""
    return int(value.timestamp() * 1000)
