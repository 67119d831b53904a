"""
roomchat.core.logging
~~~~~~~~~~~~~~~~~~~~~

SDK 日志。

``roomchat`` 作为库被嵌入到接入方的进程里，默认只在包 logger 上挂一个
``NullHandler``，日志去向完全由接入方的 logging 配置决定。
``setup_logging()`` 是可选的便捷入口：只配置 ``roomchat`` 这一棵 logger 子树，
不改动根 logger 和接入方已有的 handler，重复调用不会叠加输出。
"""
from __future__ import annotations

import logging
import sys
from typing import TextIO

from roomchat.core.config import Settings, get_settings

PACKAGE_LOGGER: str = "roomchat"

# 日志格式：时间 | 级别 | 模块名 | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())


class _RoomchatHandler(logging.StreamHandler):
    """``setup_logging()`` 安装的 handler，用类型区分以便重复调用时替换。"""


def setup_logging(settings: Settings | None = None, stream: TextIO | None = None) -> logging.Logger:
    """为 SDK 日志安装控制台输出，级别取自 ``settings.effective_log_level``。

    Args:
        settings: 配置，默认读取全局配置。
        stream: 输出流，默认 ``sys.stdout``。

    Returns:
        ``roomchat`` 包 logger。
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if isinstance(handler, _RoomchatHandler):
            package_logger.removeHandler(handler)

    handler = _RoomchatHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    # 已有自己的输出，不再向根 logger 重复传播
    package_logger.propagate = False

    # HTTP 客户端的请求日志过于频繁
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """获取指定模块的 logger，模块内通过 ``get_logger(__name__)`` 调用。"""
    return logging.getLogger(name)
