"""Persistence and durable-notification adapters."""
from .base import NotificationStore, ReadingStore
from .memory import InMemoryReadingStore
from .notifications import InMemoryNotificationStore

__all__ = [
    "InMemoryNotificationStore",
    "InMemoryReadingStore",
    "NotificationStore",
    "ReadingStore",
]
