"""Storage adapters for captured webhooks."""

from src.store.base import PutResult, TransitionResult, WebhookStore
from src.store.db import WebhookDB
from src.store.memory import InMemoryWebhookStore
from src.store.sqlite import SQLiteWebhookStore

__all__ = [
    "InMemoryWebhookStore",
    "PutResult",
    "SQLiteWebhookStore",
    "TransitionResult",
    "WebhookDB",
    "WebhookStore",
]
