"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures：内存版 hub / 实时客户端 / REST API，
以及把各类重试间隔压缩到毫秒级的测试配置，使单元测试可在无网络环境下快速运行。
"""
from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from roomchat.client import ChatClient  # noqa: E402
from roomchat.core.config import Settings  # noqa: E402
from roomchat.transport.memory import InMemoryChatApi, InMemoryHub, InMemoryRealtime  # noqa: E402


@pytest.fixture()
def settings() -> Settings:
    """压缩了所有等待时间的测试配置。"""
    return Settings(
        ENVIRONMENT="test",
        ECHO_TIMEOUT_SECONDS=0.5,
        MESSAGE_CACHE_SIZE=100,
        RELEASE_DETACH_RETRY_INTERVAL=0.01,
        SUSPENDED_RETRY_INTERVAL=0.01,
        SUSPENDED_MAX_RETRIES=3,
        PRESENCE_GET_RETRY_INTERVAL=0.01,
        PRESENCE_GET_RETRY_MAX_INTERVAL=0.02,
        PRESENCE_GET_MAX_RETRIES=3,
        TYPING_INACTIVITY_GRACE_MS=50,
    )


@pytest.fixture()
def hub() -> InMemoryHub:
    return InMemoryHub()


@pytest.fixture()
def realtime(hub: InMemoryHub) -> InMemoryRealtime:
    return InMemoryRealtime(hub, client_id="alice")


@pytest.fixture()
def chat_api(hub: InMemoryHub, realtime: InMemoryRealtime) -> InMemoryChatApi:
    return InMemoryChatApi(hub, realtime.client_id)


@pytest_asyncio.fixture()
async def client(
    realtime: InMemoryRealtime,
    chat_api: InMemoryChatApi,
    settings: Settings,
) -> AsyncGenerator[ChatClient, None]:
    """alice 的聊天客户端，测试结束后自动关闭。"""
    chat_client = ChatClient(realtime, chat_api, settings)
    yield chat_client
    await chat_client.close()


@pytest_asyncio.fixture()
async def other_client(hub: InMemoryHub, settings: Settings) -> AsyncGenerator[ChatClient, None]:
    """同一个 hub 上的第二个客户端 bob。"""
    realtime = InMemoryRealtime(hub, client_id="bob")
    chat_client = ChatClient(realtime, InMemoryChatApi(hub, "bob"), settings)
    yield chat_client
    await chat_client.close()
