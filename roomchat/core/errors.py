"""
roomchat.core.errors
~~~~~~~~~~~~~~~~~~~~

统一错误模型。

所有公开的异步操作要么返回结果，要么抛出 ``ChatError``。
``ChatError.code`` 是稳定的机器可读错误类别，``message``
统一为 ``unable to <operation>; <reason>`` 的形式。
"""
from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """错误码枚举，取值与服务端错误码保持一致。"""

    # ── 通用 ──────────────────────────────────────────────────────────
    BAD_REQUEST = 40000
    INVALID_ROOM_OPTIONS = 40001
    INVALID_ARGUMENT = 40003
    NOT_FOUND = 40400
    UNKNOWN = 50000
    OPERATION_TIMEOUT = 50003

    # ── 连接 / 在线状态 ───────────────────────────────────────────────
    DISCONNECTED = 80003
    PRESENCE_AUTO_REENTRY_FAILED = 91004

    # ── 房间生命周期 ──────────────────────────────────────────────────
    ROOM_DISCONTINUITY = 102100
    ROOM_IN_FAILED_STATE = 102101
    ROOM_IS_RELEASING = 102102
    ROOM_IS_RELEASED = 102103
    ROOM_RELEASED_BEFORE_OPERATION_COMPLETED = 102106
    ROOM_EXISTS_WITH_DIFFERENT_OPTIONS = 102107
    FEATURE_NOT_ENABLED_IN_ROOM = 102108
    ROOM_IN_INVALID_STATE = 102112
    PRESENCE_FETCH_FAILED = 102202


class ChatError(Exception):
    """聊天 SDK 的结构化异常。

    Attributes:
        message: 人类可读的错误描述。
        code: 稳定的错误类别（``ErrorCode``）。
        status_code: 对应的 HTTP 语义状态码。
        cause: 触发本错误的底层异常（可选）。
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        status_code: int = 500,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.cause = cause

    @property
    def kind(self) -> str:
        """错误类别名称，例如 ``"ROOM_IS_RELEASED"``。"""
        return self.code.name

    def __repr__(self) -> str:
        return f"ChatError(code={int(self.code)}, message={self.message!r})"


def error_is(error: BaseException | None, code: ErrorCode) -> bool:
    """判断异常是否为指定错误码的 ``ChatError``。"""
    return isinstance(error, ChatError) and error.code == code


def invalid_argument(operation: str, reason: str) -> ChatError:
    """构造参数非法错误（调用方错误，同步抛出）。"""
    return ChatError(f"unable to {operation}; {reason}", ErrorCode.INVALID_ARGUMENT, 400)


def wrap_error(operation: str, error: BaseException) -> ChatError:
    """为底层异常补充操作上下文。

    已经是 ``ChatError`` 的异常保留原错误码，仅在消息前追加操作描述；
    其余异常统一归类为 ``UNKNOWN``。
    """
    if isinstance(error, ChatError):
        if error.message.startswith(f"unable to {operation};"):
            return error
        return ChatError(
            f"unable to {operation}; {error.message}",
            error.code,
            error.status_code,
            cause=error,
        )
    return ChatError(f"unable to {operation}; {error}", ErrorCode.UNKNOWN, 500, cause=error)
