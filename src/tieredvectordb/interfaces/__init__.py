"""Interfaces package for TieredVectorDB."""

from .vector import RecordProtocol
from .storage_engine import VectorStore, StoreObserver
from .index import IndexProtocol
from .tiering import ArchivalBackend, TierManagerProtocol
from .query_processor import QueryRouterProtocol, QueryProcessorProtocol, QueryPath
from .embedding import EmbeddingSource

__all__ = [
    "RecordProtocol",
    "VectorStore",
    "StoreObserver",
    "IndexProtocol",
    "ArchivalBackend",
    "TierManagerProtocol",
    "QueryRouterProtocol",
    "QueryProcessorProtocol",
    "QueryPath",
    "EmbeddingSource",
]
