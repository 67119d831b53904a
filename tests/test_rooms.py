"""
tests.test_rooms
~~~~~~~~~~~~~~~~

房间注册表：单实例、配置冲突、释放期间的获取与释放。
"""
from __future__ import annotations

import asyncio

import pytest

from roomchat.client import ChatClient
from roomchat.core.errors import ChatError, ErrorCode
from roomchat.schemas.room import AllFeaturesEnabled, RoomOptions, RoomStatus, TypingOptions


class TestGet:
    """测试房间获取。"""

    @pytest.mark.asyncio
    async def test_same_instance_for_same_options(self, client: ChatClient) -> None:
        """同一 ID、同一配置返回同一个实例。"""
        first = await client.rooms.get("lobby", RoomOptions(typing=TypingOptions()))
        second = await client.rooms.get("lobby", {"typing": {}})

        assert first is second
        assert client.rooms.count == 1

    @pytest.mark.asyncio
    async def test_different_options_rejected(self, client: ChatClient) -> None:
        """同一 ID 不同配置抛出 ROOM_EXISTS_WITH_DIFFERENT_OPTIONS。"""
        await client.rooms.get("lobby")

        with pytest.raises(ChatError) as exc_info:
            await client.rooms.get("lobby", AllFeaturesEnabled)

        assert exc_info.value.code == ErrorCode.ROOM_EXISTS_WITH_DIFFERENT_OPTIONS

    @pytest.mark.asyncio
    async def test_empty_room_id_rejected(self, client: ChatClient) -> None:
        """空房间 ID 抛出 INVALID_ARGUMENT。"""
        with pytest.raises(ChatError) as exc_info:
            await client.rooms.get("")

        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_invalid_options_rejected(self, client: ChatClient) -> None:
        """非法字典配置抛出 INVALID_ROOM_OPTIONS。"""
        with pytest.raises(ChatError) as exc_info:
            await client.rooms.get("lobby", {"typing": {"timeout_ms": -5}})

        assert exc_info.value.code == ErrorCode.INVALID_ROOM_OPTIONS

    @pytest.mark.asyncio
    async def test_options_are_copied(self, client: ChatClient) -> None:
        """room.options() 返回与原配置相等的副本。"""
        room = await client.rooms.get("lobby", AllFeaturesEnabled)

        assert room.options() == AllFeaturesEnabled
        assert room.options() is not AllFeaturesEnabled

    @pytest.mark.asyncio
    async def test_disabled_feature_access(self, client: ChatClient) -> None:
        """访问未启用的功能抛出 FEATURE_NOT_ENABLED_IN_ROOM。"""
        room = await client.rooms.get("lobby")

        for name in ("presence", "typing", "reactions", "occupancy"):
            with pytest.raises(ChatError) as exc_info:
                getattr(room, name)
            assert exc_info.value.code == ErrorCode.FEATURE_NOT_ENABLED_IN_ROOM

        assert room.messages is not None

    @pytest.mark.asyncio
    async def test_different_ids_are_independent(self, client: ChatClient) -> None:
        """不同房间 ID 对应不同实例与不同通道。"""
        lobby = await client.rooms.get("lobby")
        kitchen = await client.rooms.get("kitchen")

        assert lobby is not kitchen
        assert lobby.channel.name == "lobby::$chat"
        assert kitchen.channel.name == "kitchen::$chat"


class TestRelease:
    """测试房间释放与释放期间的获取。"""

    @pytest.mark.asyncio
    async def test_release_then_get_returns_new_instance(self, client: ChatClient) -> None:
        """释放后再次获取得到新实例。"""
        first = await client.rooms.get("lobby")
        await first.attach()

        await client.rooms.release("lobby")
        second = await client.rooms.get("lobby")

        assert first.status is RoomStatus.RELEASED
        assert second is not first
        assert second.status is RoomStatus.INITIALIZED
        assert second.nonce != first.nonce

    @pytest.mark.asyncio
    async def test_release_unknown_room_is_noop(self, client: ChatClient) -> None:
        """释放不存在的房间什么也不做。"""
        await client.rooms.release("nowhere")

        assert client.rooms.count == 0

    @pytest.mark.asyncio
    async def test_get_during_release_waits(self, client: ChatClient) -> None:
        """释放进行中调用 get，会在释放完成后拿到新实例。"""
        first = await client.rooms.get("lobby")
        await first.attach()

        release = asyncio.create_task(client.rooms.release("lobby"))
        await asyncio.sleep(0)
        second = await client.rooms.get("lobby")
        await release

        assert second is not first
        assert first.status is RoomStatus.RELEASED
        assert second.status is RoomStatus.INITIALIZED

    @pytest.mark.asyncio
    async def test_concurrent_pending_gets_share_instance(self, client: ChatClient) -> None:
        """释放期间多个相同配置的 get 共享同一个新实例。"""
        first = await client.rooms.get("lobby")
        await first.attach()

        release = asyncio.create_task(client.rooms.release("lobby"))
        await asyncio.sleep(0)
        second, third = await asyncio.gather(client.rooms.get("lobby"), client.rooms.get("lobby"))
        await release

        assert second is third
        assert second is not first

    @pytest.mark.asyncio
    async def test_release_aborts_pending_get(self, client: ChatClient) -> None:
        """释放期间挂起的 get 被再次 release 时以 ROOM_RELEASED_BEFORE_OPERATION_COMPLETED 失败。"""
        first = await client.rooms.get("lobby")
        await first.attach()

        release = asyncio.create_task(client.rooms.release("lobby"))
        await asyncio.sleep(0)
        pending_get = asyncio.create_task(client.rooms.get("lobby"))
        await asyncio.sleep(0)
        await client.rooms.release("lobby")
        await release

        with pytest.raises(ChatError) as exc_info:
            await pending_get
        assert exc_info.value.code == ErrorCode.ROOM_RELEASED_BEFORE_OPERATION_COMPLETED
        assert client.rooms.count == 0

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, client: ChatClient) -> None:
        """并发释放同一房间只执行一次释放。"""
        room = await client.rooms.get("lobby")
        await room.attach()
        statuses: list[RoomStatus] = []
        room.on_status_change(lambda change: statuses.append(change.current))

        await asyncio.gather(client.rooms.release("lobby"), client.rooms.release("lobby"))

        assert statuses == [RoomStatus.RELEASING, RoomStatus.RELEASED]
        assert room.channel.detach_calls == 1

    @pytest.mark.asyncio
    async def test_dispose_releases_all(self, client: ChatClient) -> None:
        """dispose 释放所有房间。"""
        lobby = await client.rooms.get("lobby")
        kitchen = await client.rooms.get("kitchen")
        await lobby.attach()

        await client.rooms.dispose()

        assert lobby.status is RoomStatus.RELEASED
        assert kitchen.status is RoomStatus.RELEASED
        assert client.rooms.count == 0
