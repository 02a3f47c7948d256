"""Persistence adapters (knowledge + relational) for the reasoning core."""

from .base import KnowledgeStore, RecordStore, StorageError
from .memory import InMemoryKnowledgeStore, InMemoryRecordStore

__all__ = [
    "KnowledgeStore",
    "RecordStore",
    "StorageError",
    "InMemoryKnowledgeStore",
    "InMemoryRecordStore",
]
