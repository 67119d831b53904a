"""
tests.test_core
~~~~~~~~~~~~~~~

错误模型、配置、日志与事件分发器的单元测试。
"""
from __future__ import annotations

import io
import logging
from enum import Enum
from unittest.mock import MagicMock

import pytest

from roomchat.core.config import Settings
from roomchat.core.emitter import EventEmitter
from roomchat.core.errors import ChatError, ErrorCode, error_is, invalid_argument, wrap_error
from roomchat.core.logging import PACKAGE_LOGGER, get_logger, setup_logging


class _Kind(str, Enum):
    A = "a"
    B = "b"


class _Other(str, Enum):
    C = "c"


# ── 错误模型 ──────────────────────────────────────────────────────────

class TestErrors:
    """测试错误构造与包装。"""

    def test_invalid_argument_message(self) -> None:
        """参数错误的消息格式为 ``unable to <op>; <reason>``。"""
        error = invalid_argument("send message", "text must be a non-empty string")

        assert error.code == ErrorCode.INVALID_ARGUMENT
        assert error.message == "unable to send message; text must be a non-empty string"
        assert error.kind == "INVALID_ARGUMENT"

    def test_wrap_keeps_code_and_cause(self) -> None:
        """包装 ChatError 时保留错误码并记录原异常。"""
        inner = ChatError("channel failed", ErrorCode.ROOM_IN_INVALID_STATE, 400)

        wrapped = wrap_error("attach room", inner)

        assert wrapped.code == ErrorCode.ROOM_IN_INVALID_STATE
        assert wrapped.message == "unable to attach room; channel failed"
        assert wrapped.cause is inner

    def test_wrap_does_not_double_prefix(self) -> None:
        """已带相同操作前缀的错误原样返回。"""
        inner = ChatError("unable to get message; not found", ErrorCode.NOT_FOUND, 404)

        assert wrap_error("get message", inner) is inner

    def test_wrap_foreign_exception_is_unknown(self) -> None:
        """非 ChatError 异常归类为 UNKNOWN。"""
        wrapped = wrap_error("send message", RuntimeError("boom"))

        assert wrapped.code == ErrorCode.UNKNOWN
        assert "boom" in wrapped.message

    def test_error_is(self) -> None:
        """error_is 只匹配同错误码的 ChatError。"""
        error = ChatError("x", ErrorCode.ROOM_IS_RELEASED, 400)

        assert error_is(error, ErrorCode.ROOM_IS_RELEASED)
        assert not error_is(error, ErrorCode.ROOM_IS_RELEASING)
        assert not error_is(ValueError("x"), ErrorCode.ROOM_IS_RELEASED)
        assert not error_is(None, ErrorCode.UNKNOWN)


# ── 配置 ──────────────────────────────────────────────────────────────

class TestSettings:
    """测试配置默认值与环境推断。"""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """未设置环境变量时使用字段默认值。"""
        monkeypatch.delenv("ECHO_TIMEOUT_SECONDS", raising=False)
        settings = Settings(ENVIRONMENT="dev")

        assert settings.ECHO_TIMEOUT_SECONDS == 10.0
        assert settings.RELEASE_DETACH_RETRY_INTERVAL == 0.25
        assert settings.is_dev

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """环境变量优先于默认值。"""
        monkeypatch.setenv("MESSAGE_CACHE_SIZE", "42")

        assert Settings().MESSAGE_CACHE_SIZE == 42

    def test_effective_log_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """test 环境默认 DEBUG，显式 LOG_LEVEL 覆盖推断。"""
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        assert Settings(ENVIRONMENT="test").effective_log_level == "DEBUG"
        assert Settings(ENVIRONMENT="prod").effective_log_level == "WARNING"

        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        assert Settings(ENVIRONMENT="test").effective_log_level == "ERROR"


# ── 日志 ──────────────────────────────────────────────────────────────

@pytest.fixture
def package_logger():
    """保存并恢复 ``roomchat`` 包 logger 的状态。"""
    logger = logging.getLogger(PACKAGE_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestLogging:
    """测试 SDK 日志配置。"""

    def test_silent_by_default(self, package_logger: logging.Logger) -> None:
        """未调用 setup_logging 时包 logger 只有 NullHandler。"""
        assert any(isinstance(h, logging.NullHandler) for h in package_logger.handlers)
        assert package_logger.propagate

    def test_setup_configures_package_only(
        self, package_logger: logging.Logger, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """setup_logging 只配置 roomchat 子树，根 logger 不受影响，重复调用不叠加输出。"""
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        root_handlers = list(logging.getLogger().handlers)
        stream = io.StringIO()

        setup_logging(Settings(ENVIRONMENT="prod"), stream=stream)
        setup_logging(Settings(ENVIRONMENT="prod"), stream=stream)
        get_logger("roomchat.services.rooms").warning("房间释放失败 | room=%s", "lobby")
        get_logger("roomchat.services.rooms").info("不应输出")

        assert logging.getLogger().handlers == root_handlers
        assert package_logger.level == logging.WARNING
        lines = stream.getvalue().splitlines()
        assert len(lines) == 1
        assert lines[0].endswith("| WARNING | roomchat.services.rooms | 房间释放失败 | room=lobby")


# ── 事件分发器 ────────────────────────────────────────────────────────

class TestEventEmitter:
    """测试类型化事件分发器。"""

    def test_emit_in_registration_order(self) -> None:
        """监听器按注册顺序同步调用。"""
        emitter: EventEmitter[_Kind, int] = EventEmitter(_Kind)
        calls: list[str] = []
        emitter.subscribe(lambda payload: calls.append(f"first:{payload}"))
        emitter.subscribe(lambda payload: calls.append(f"second:{payload}"))

        emitter.emit(_Kind.A, 1)

        assert calls == ["first:1", "second:1"]

    def test_kind_filter(self) -> None:
        """指定事件类型的监听器只收到对应事件。"""
        emitter: EventEmitter[_Kind, str] = EventEmitter(_Kind)
        listener = MagicMock()
        emitter.subscribe(listener, [_Kind.B])

        emitter.emit(_Kind.A, "a")
        emitter.emit(_Kind.B, "b")

        listener.assert_called_once_with("b")

    def test_foreign_kind_rejected(self) -> None:
        """订阅不属于该枚举的事件类型应报错。"""
        emitter: EventEmitter[_Kind, str] = EventEmitter(_Kind)

        with pytest.raises(ValueError):
            emitter.subscribe(MagicMock(), [_Other.C])  # type: ignore[list-item]

    def test_unsubscribe_idempotent(self) -> None:
        """取消订阅可重复调用，之后不再收到事件。"""
        emitter: EventEmitter[_Kind, str] = EventEmitter(_Kind)
        listener = MagicMock()
        subscription = emitter.subscribe(listener)

        subscription.unsubscribe()
        subscription.unsubscribe()
        emitter.emit(_Kind.A, "a")

        listener.assert_not_called()
        assert not subscription.active
        assert emitter.listener_count == 0

    def test_listener_error_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """单个监听器抛异常时，其余监听器仍然收到事件并记录错误日志。"""
        emitter: EventEmitter[_Kind, str] = EventEmitter(_Kind, "demo")
        after = MagicMock()
        emitter.subscribe(MagicMock(side_effect=RuntimeError("bad listener")))
        emitter.subscribe(after)

        with caplog.at_level(logging.ERROR, logger="roomchat.core.emitter"):
            emitter.emit(_Kind.A, "payload")

        after.assert_called_once_with("payload")
        assert any("监听器处理事件异常" in record.message for record in caplog.records)
