"""
roomchat.core.config
~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """SDK 全局配置，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="roomchat", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Chat REST API ─────────────────────────────────────────────────
    CHAT_API_URL: str = Field(
        default="http://127.0.0.1:8080",
        description="聊天 REST 服务根地址",
    )
    CHAT_API_KEY: str | None = Field(default=None, description="REST 鉴权密钥（可选）")
    CHAT_API_TIMEOUT: float = Field(default=10.0, description="REST 请求超时（秒）")

    # ── 消息 ──────────────────────────────────────────────────────────
    ECHO_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="send / update / delete 等待实时回显的最长时间（秒）",
    )
    MESSAGE_CACHE_SIZE: int = Field(
        default=1000,
        gt=0,
        description="每个房间消息缓存的最大条目数（LRU 淘汰）",
    )

    # ── 房间生命周期 ──────────────────────────────────────────────────
    RELEASE_DETACH_RETRY_INTERVAL: float = Field(
        default=0.25,
        description="释放房间时通道 detach 失败后的重试间隔（秒）",
    )
    SUSPENDED_RETRY_INTERVAL: float = Field(
        default=5.0,
        description="房间处于 suspended 时主动重新 attach 的间隔（秒）",
    )
    SUSPENDED_MAX_RETRIES: int = Field(
        default=6,
        ge=1,
        description="suspended 状态下的最大恢复尝试次数，超过后进入 failed",
    )

    # ── 在线状态 ──────────────────────────────────────────────────────
    PRESENCE_GET_RETRY_INTERVAL: float = Field(
        default=1.5,
        description="在线成员列表拉取失败后的初始重试间隔（秒）",
    )
    PRESENCE_GET_RETRY_MAX_INTERVAL: float = Field(
        default=30.0,
        description="在线成员列表拉取的最大退避间隔（秒）",
    )
    PRESENCE_GET_MAX_RETRIES: int = Field(
        default=5,
        ge=1,
        description="在线成员列表拉取的最大尝试次数",
    )

    # ── 输入状态 ──────────────────────────────────────────────────────
    TYPING_INACTIVITY_GRACE_MS: int = Field(
        default=2000,
        ge=0,
        description="远端输入状态在超时基础上额外等待的宽限时间（毫秒）",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
