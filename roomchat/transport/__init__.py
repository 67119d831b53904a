"""
roomchat.transport
~~~~~~~~~~~~~~~~~~
实时通道与 REST API 的协作者接口及其实现。
"""
from roomchat.transport.channel import RealtimeChannel, RealtimeClient, room_channel_name
from roomchat.transport.chat_api import ChatApi, HttpChatApi
from roomchat.transport.memory import InMemoryChatApi, InMemoryHub, InMemoryRealtime
