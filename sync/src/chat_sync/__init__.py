"""Conversation timeline sync engine: live feed + paginated history + view model."""

from .config import SyncConfig, load_sync_config_from_env
from .errors import (
    BackendUnavailable,
    ConversationClosed,
    ConversationNotFound,
    OrderingViolation,
    StaleResponse,
    SyncError,
)
from .lifecycle import ArrivalReaction, ChatSync, ConversationSession, LifecycleState
from .message import DraftMessage, EventKind, Message, MessageEvent, start_of_day_ms
from .pagination import PaginationController, PaginationState, ScrollSignal
from .ports import BackendPort, ConversationInfo, IdentityProvider, LiveSubscription, StaticIdentity
from .projector import Drawable, GroupPosition, project
from .timeline import Timeline

__all__ = [
    "ArrivalReaction",
    "BackendPort",
    "BackendUnavailable",
    "ChatSync",
    "ConversationClosed",
    "ConversationInfo",
    "ConversationNotFound",
    "ConversationSession",
    "Drawable",
    "DraftMessage",
    "EventKind",
    "GroupPosition",
    "IdentityProvider",
    "LifecycleState",
    "LiveSubscription",
    "Message",
    "MessageEvent",
    "OrderingViolation",
    "PaginationController",
    "PaginationState",
    "ScrollSignal",
    "StaleResponse",
    "StaticIdentity",
    "SyncConfig",
    "SyncError",
    "Timeline",
    "load_sync_config_from_env",
    "project",
    "start_of_day_ms",
]
