"""
roomchat.schemas
~~~~~~~~~~~~~~~~
领域模型与事件负载（Pydantic）。
"""
from roomchat.schemas.features import (
    ConnectionStatus,
    ConnectionStatusChange,
    OccupancyData,
    OccupancyEvent,
    PresenceEvent,
    PresenceEventType,
    PresenceMember,
    PresenceSetEvent,
    TypingEventType,
    TypingSetEvent,
)
from roomchat.schemas.message import Message, MessageAction, MessageEvent, MessageEventType, Operation
from roomchat.schemas.query import (
    MessageOperationResponse,
    OrderBy,
    PaginatedResult,
    QueryOptions,
    SendMessageResponse,
)
from roomchat.schemas.reactions import (
    MessageReaction,
    MessageReactionRawEvent,
    MessageReactionSummary,
    MessageReactionSummaryEvent,
    MessageReactionType,
    RoomReaction,
    RoomReactionEvent,
)
from roomchat.schemas.room import (
    AllFeaturesEnabled,
    DiscontinuityEvent,
    MessageOptions,
    OccupancyOptions,
    PresenceOptions,
    RoomOptions,
    RoomReactionsOptions,
    RoomStatus,
    RoomStatusChange,
    TypingOptions,
)
