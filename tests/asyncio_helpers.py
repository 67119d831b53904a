"""
tests.asyncio_helpers
~~~~~~~~~~~~~~~~~~~~~

测试用的事件循环小工具。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable


async def settle(rounds: int = 20) -> None:
    """让出事件循环若干轮，使 ``call_soon`` 投递的回显与后台任务跑完。"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """轮询直到条件成立，超时则让测试失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
