from conductor.storage.base import Page, PipelineStore
from conductor.storage.memory import InMemoryStore
from conductor.storage.persistence import SQLiteStore, get_store

__all__ = [
    "InMemoryStore",
    "Page",
    "PipelineStore",
    "SQLiteStore",
    "get_store",
]
