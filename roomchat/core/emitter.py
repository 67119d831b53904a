"""
roomchat.core.emitter
~~~~~~~~~~~~~~~~~~~~~

小型类型化发布/订阅原语。

每个功能模块用一个固定的事件类型枚举实例化 ``EventEmitter``，
监听器要么订阅全部事件，要么订阅一个显式的事件类型集合。
事件分发是同步的，按注册顺序调用；单个监听器抛出的异常只记录日志，
不影响其余监听器。
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import Enum
from typing import Generic, TypeVar

from roomchat.core.logging import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Enum)
P = TypeVar("P")


class Subscription:
    """订阅句柄，``unsubscribe()`` 可重复调用。"""

    def __init__(self, unsubscribe: Callable[[], None]) -> None:
        self._unsubscribe: Callable[[], None] | None = unsubscribe

    def unsubscribe(self) -> None:
        """取消订阅。"""
        callback, self._unsubscribe = self._unsubscribe, None
        if callback is not None:
            callback()

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None


class EventEmitter(Generic[K, P]):
    """固定事件枚举的同步事件分发器。

    Args:
        kinds: 允许分发的事件类型枚举。
        name: 用于日志的名字。
    """

    def __init__(self, kinds: type[K], name: str = "") -> None:
        self._kinds = kinds
        self._name = name or kinds.__name__
        self._listeners: list[tuple[Callable[[P], None], frozenset[K] | None]] = []

    def subscribe(
        self,
        listener: Callable[[P], None],
        kinds: Iterable[K] | None = None,
    ) -> Subscription:
        """注册监听器。

        Args:
            listener: 回调函数，接收事件负载。
            kinds: 关心的事件类型；``None`` 表示全部。

        Returns:
            ``Subscription`` 句柄。
        """
        selected: frozenset[K] | None = None
        if kinds is not None:
            selected = frozenset(kinds)
            unknown = [kind for kind in selected if not isinstance(kind, self._kinds)]
            if unknown:
                raise ValueError(f"{self._name} 不支持的事件类型: {unknown}")

        entry = (listener, selected)
        self._listeners.append(entry)

        def _remove() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass

        return Subscription(_remove)

    def emit(self, kind: K, payload: P) -> None:
        """同步分发事件给所有关心该类型的监听器。"""
        for listener, selected in list(self._listeners):
            if selected is not None and kind not in selected:
                continue
            try:
                listener(payload)
            except Exception:
                logger.exception("监听器处理事件异常 | emitter=%s | kind=%s", self._name, kind.value)

    def clear(self) -> None:
        """移除全部监听器。"""
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
