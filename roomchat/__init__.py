"""
roomchat
~~~~~~~~

构建在实时发布/订阅通道之上的聊天房间客户端 SDK。
"""
from roomchat.client import ChatClient
from roomchat.core.errors import ChatError, ErrorCode
from roomchat.core.serial import Serial
from roomchat.schemas.message import Message, MessageEvent, MessageEventType
from roomchat.schemas.room import AllFeaturesEnabled, RoomOptions, RoomStatus
from roomchat.services.room import Room
from roomchat.services.rooms import Rooms

__all__ = [
    "AllFeaturesEnabled",
    "ChatClient",
    "ChatError",
    "ErrorCode",
    "Message",
    "MessageEvent",
    "MessageEventType",
    "Room",
    "RoomOptions",
    "RoomStatus",
    "Rooms",
    "Serial",
]

__version__ = "0.1.0"
