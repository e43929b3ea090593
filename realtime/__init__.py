"""
Realtime module for survey studio.

Pushes document changes to connected editors and participant pages over
WebSocket so an open survey can reload when its project is saved.
"""

from .manager import (
    ConnectionManager,
    RealtimeMessage,
    MessageType,
    project_channel,
    realtime_manager,
    notify_document_saved,
    notify_document_deleted,
)

__all__ = [
    "ConnectionManager",
    "RealtimeMessage",
    "MessageType",
    "project_channel",
    "realtime_manager",
    "notify_document_saved",
    "notify_document_deleted",
]
