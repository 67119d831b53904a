"""
tests.test_serial
~~~~~~~~~~~~~~~~~

序列号解析与全序比较。
"""
from __future__ import annotations

import pytest

from roomchat.core.errors import ChatError, ErrorCode
from roomchat.core.serial import Serial, SerialOrder, compare, sort_key


class TestParse:
    """测试序列号解析。"""

    def test_parse_without_index(self) -> None:
        """不带下标的序列号应解析出三段字段。"""
        serial = Serial.parse("abc@1700000000000-5")

        assert serial.series_id == "abc"
        assert serial.timestamp == 1700000000000
        assert serial.counter == 5
        assert serial.index is None

    def test_parse_with_index(self) -> None:
        """带下标的序列号应解析出 index。"""
        serial = Serial.parse("abc@1700000000000-5:2")

        assert serial.index == 2

    def test_string_form_roundtrips(self) -> None:
        """``str()`` 应还原规范字符串形式。"""
        assert str(Serial.parse("abc@1-2:3")) == "abc@1-2:3"
        assert str(Serial.parse("abc@1-2")) == "abc@1-2"
        assert str(Serial.parse("abc@0-0:0")) == "abc@0-0:0"

    def test_parse_accepts_serial_instance(self) -> None:
        """传入 Serial 实例时原样返回。"""
        serial = Serial("x", 1, 2)

        assert Serial.parse(serial) is serial

    @pytest.mark.parametrize(
        "value",
        [
            "", "abc", "abc@", "@1-2", "abc@1", "abc@-2", "abc@1-", "abc@1-2:", "abc@x-2", "abc@1-+2", "abc@ 1-2",
            "abc@01-2", "abc@1-02", "abc@1-2:00",
        ],
    )
    def test_invalid_serial_rejected(self, value: str) -> None:
        """格式非法的序列号应抛出 INVALID_ARGUMENT。"""
        with pytest.raises(ChatError) as exc_info:
            Serial.parse(value)

        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT
        assert exc_info.value.message.startswith("unable to parse serial;")


class TestCompare:
    """测试序列号排序规则。"""

    def test_timestamp_dominates(self) -> None:
        """时间戳较小者在前，与计数器无关。"""
        assert compare("a@1-9", "a@2-0") is SerialOrder.BEFORE
        assert compare("a@2-0", "a@1-9") is SerialOrder.AFTER

    def test_counter_then_series(self) -> None:
        """时间戳相同时比较计数器，再比较序列标识。"""
        assert Serial.parse("a@1-1").before("a@1-2")
        assert Serial.parse("b@1-1").after("a@1-1")

    def test_index_only_compared_when_both_present(self) -> None:
        """只有一方带下标时视为相等。"""
        assert Serial.parse("a@1-1:3").equal("a@1-1")
        assert Serial.parse("a@1-1:1").before("a@1-1:2")

    def test_sort_key_orders_mixed_values(self) -> None:
        """排序键可以对字符串和 Serial 混合排序。"""
        values = ["a@3-0", Serial.parse("a@1-0"), "a@2-0"]

        ordered = sorted(values, key=sort_key())

        assert [str(value) for value in ordered] == ["a@1-0", "a@2-0", "a@3-0"]
