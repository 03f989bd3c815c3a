"""Normalized VT stores: PostgreSQL for production, in-memory for tests and dry runs."""
from .base import NormalizedStore, QueryResult
from .memory import MemoryStore
from .postgres import PostgresStore

__all__ = ["NormalizedStore", "QueryResult", "MemoryStore", "PostgresStore"]
