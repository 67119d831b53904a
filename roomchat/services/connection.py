"""
roomchat.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

进程级连接状态包装。

把传输层的连接状态映射为 ``ConnectionStatus``，未知状态视为 failed；
重复状态不会再次广播。
"""
from __future__ import annotations

from collections.abc import Callable

from roomchat.core.emitter import EventEmitter, Subscription
from roomchat.core.errors import ChatError
from roomchat.core.logging import get_logger
from roomchat.schemas.features import (
    ConnectionStatus,
    ConnectionStatusChange,
    ConnectionStatusEventType,
)
from roomchat.transport.channel import ConnectionStateChange, RealtimeConnection

logger = get_logger(__name__)


def _map_state(state: str) -> ConnectionStatus:
    try:
        return ConnectionStatus(state)
    except ValueError:
        logger.warning("未知的连接状态，按 failed 处理 | state=%s", state)
        return ConnectionStatus.FAILED


class Connection:
    """连接状态的只读视图。"""

    def __init__(self, connection: RealtimeConnection) -> None:
        self._status = _map_state(connection.state)
        self._error = connection.error_reason
        self._emitter: EventEmitter[ConnectionStatusEventType, ConnectionStatusChange] = EventEmitter(
            ConnectionStatusEventType, "connection",
        )
        self._off = connection.on_state_change(self._on_state_change)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def error(self) -> ChatError | None:
        return self._error

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    def on_status_change(self, listener: Callable[[ConnectionStatusChange], None]) -> Subscription:
        return self._emitter.subscribe(listener)

    def dispose(self) -> None:
        self._off()
        self._emitter.clear()

    def _on_state_change(self, change: ConnectionStateChange) -> None:
        status = _map_state(change.current)
        if status is self._status:
            return

        event = ConnectionStatusChange(
            current=status,
            previous=self._status,
            error=change.reason,
            retry_in=change.retry_in,
        )
        self._status = status
        self._error = change.reason
        logger.info("连接状态变化 | %s -> %s", event.previous.value, status.value)
        self._emitter.emit(ConnectionStatusEventType.STATUS_CHANGE, event)
