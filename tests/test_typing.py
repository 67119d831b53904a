"""
tests.test_typing
~~~~~~~~~~~~~~~~~

输入状态：心跳节流、超时自动停止、远端不活跃判定与断线时的错误。
"""
from __future__ import annotations

import asyncio

import pytest
from asyncio_helpers import settle, wait_until

from roomchat.client import ChatClient
from roomchat.core.errors import ChatError, ErrorCode
from roomchat.schemas.features import TypingEventType
from roomchat.schemas.room import RoomOptions, TypingOptions
from roomchat.transport.wire import TYPING_STARTED_EVENT

FAST_TYPING = RoomOptions(typing=TypingOptions(timeout_ms=100, heartbeat_throttle_ms=50))


def changes(events) -> list[tuple[str, TypingEventType]]:
    return [(e.change.client_id, e.change.type) for e in events]


class TestLocalTyping:
    """测试本地按键的发布行为。"""

    @pytest.mark.asyncio
    async def test_repeated_start_publishes_once(self, client: ChatClient, other_client: ChatClient) -> None:
        """连续按键只发布一次 started，超时后自动发布一次 stopped。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        bob_room = await other_client.rooms.get("lobby", FAST_TYPING)
        events = []
        bob_room.typing.subscribe(events.append)
        await room.attach()
        await bob_room.attach()

        for _ in range(3):
            await room.typing.start()
            await asyncio.sleep(0.01)

        await wait_until(lambda: len(events) == 2)
        await asyncio.sleep(0.1)

        assert changes(events) == [("alice", TypingEventType.STARTED), ("alice", TypingEventType.STOPPED)]
        assert events[0].current == frozenset({"alice"})
        assert events[1].current == frozenset()

    @pytest.mark.asyncio
    async def test_keystrokes_extend_timeout(self, client: ChatClient) -> None:
        """持续按键会推迟自动停止。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        events = []
        room.typing.subscribe(events.append)
        await room.attach()

        for _ in range(4):
            await room.typing.start()
            await asyncio.sleep(0.06)

        assert changes(events) == [("alice", TypingEventType.STARTED)]
        await wait_until(lambda: len(events) == 2)

    @pytest.mark.asyncio
    async def test_stop(self, client: ChatClient) -> None:
        """stop 立即发布 stopped，之后计时器不会再发布。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        events = []
        room.typing.subscribe(events.append)
        await room.attach()

        await room.typing.start()
        await room.typing.stop()
        await asyncio.sleep(0.15)

        assert changes(events) == [("alice", TypingEventType.STARTED), ("alice", TypingEventType.STOPPED)]

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, client: ChatClient) -> None:
        """未在输入时 stop 不发布任何事件。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        events = []
        room.typing.subscribe(events.append)
        await room.attach()

        await room.typing.stop()
        await settle()

        assert events == []

    @pytest.mark.asyncio
    async def test_start_while_disconnected(self, client: ChatClient, realtime) -> None:
        """连接断开时 start 抛出 DISCONNECTED。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        await room.attach()
        realtime.connection.set_state("disconnected")

        with pytest.raises(ChatError) as exc_info:
            await room.typing.start()

        assert exc_info.value.code == ErrorCode.DISCONNECTED


class TestRemoteTyping:
    """测试远端输入状态的维护。"""

    @pytest.mark.asyncio
    async def test_remote_inactivity(self, client: ChatClient, other_client: ChatClient) -> None:
        """远端只发 started 不发 stopped 时，超过超时加宽限期后视为停止。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        bob_room = await other_client.rooms.get("lobby", FAST_TYPING)
        events = []
        room.typing.subscribe(events.append)
        await room.attach()
        await bob_room.attach()

        await bob_room.channel.publish(TYPING_STARTED_EVENT, {})
        await wait_until(lambda: len(events) == 1)
        assert room.typing.current == frozenset({"bob"})

        await asyncio.sleep(0.1)
        assert room.typing.current == frozenset({"bob"})

        await wait_until(lambda: len(events) == 2)
        assert changes(events) == [("bob", TypingEventType.STARTED), ("bob", TypingEventType.STOPPED)]
        assert room.typing.current == frozenset()

    @pytest.mark.asyncio
    async def test_repeated_remote_started_emits_once(self, client: ChatClient, other_client: ChatClient) -> None:
        """已在输入的远端再次发 started 不会重复派发。"""
        room = await client.rooms.get("lobby", FAST_TYPING)
        bob_room = await other_client.rooms.get("lobby", FAST_TYPING)
        events = []
        room.typing.subscribe(events.append)
        await room.attach()
        await bob_room.attach()

        await bob_room.channel.publish(TYPING_STARTED_EVENT, {})
        await bob_room.channel.publish(TYPING_STARTED_EVENT, {})
        await settle()

        assert changes(events) == [("bob", TypingEventType.STARTED)]
