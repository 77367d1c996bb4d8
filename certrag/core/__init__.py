"""
FAA Certification RAG - Core Configuration Package
"""

from .config import settings, get_settings, Settings, ConfigurationError
from .schemas import (
    CFRSource,
    DRSSource,
    TurnRole,
    ConversationTurn,
    StoredConversation,
    IndexQueueMessage,
    QueueStats,
    AskRequest,
    AskResponse,
    HealthResponse,
    ReindexRequest,
    ReindexedDocument,
    ReindexResponse,
)

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "ConfigurationError",
    "CFRSource",
    "DRSSource",
    "TurnRole",
    "ConversationTurn",
    "StoredConversation",
    "IndexQueueMessage",
    "QueueStats",
    "AskRequest",
    "AskResponse",
    "HealthResponse",
    "ReindexRequest",
    "ReindexedDocument",
    "ReindexResponse",
]
