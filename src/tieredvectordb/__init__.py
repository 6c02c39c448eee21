"""
TieredVectorDB - tiered vector-similarity engine.

Hot embeddings live in memory behind a graph-based ANN index per year tier;
cold years are migrated to archival storage (Parquet) and stay queryable
through exact scans. A query router merges per-tier results by distance.
"""

__version__ = "0.1.0"
__author__ = "TieredVectorDB Team"

from .interfaces.vector import RecordProtocol
from .interfaces.index import IndexProtocol
from .interfaces.storage_engine import VectorStore
from .interfaces.query_processor import QueryProcessorProtocol
from .interfaces.tiering import ArchivalBackend, TierManagerProtocol

from .config import EngineSettings, GraphIndexConfig
from .exceptions import (
    VectorDBError,
    DimensionMismatch,
    NotFound,
    AlreadyExists,
    BuildError,
    EmbeddingUnavailable,
    MigrationPartialFailure,
    IndexDegraded,
    IndexClosed,
    UnknownMetric,
)

# Import implementations
from .implementations.vector import Record, SearchResult, QueryResult
from .implementations.distance import Metric, distance, batch_distances
from .implementations.storage_engine_in_memory import VectorStoreInMemory
from .implementations.index import GraphIndex, IndexState
from .implementations.tiered_index import TieredIndex
from .implementations.archival_backend import InMemoryArchivalBackend, ParquetArchivalBackend
from .implementations.tier_manager import TierManager, MigrationReport
from .implementations.query_router import QueryRouter
from .implementations.query_processor import QueryProcessor
from .implementations.embedding import OllamaEmbeddingSource, CallableEmbeddingSource
from .implementations.cancellation import CancellationToken, Deadline

__all__ = [
    "RecordProtocol",
    "IndexProtocol",
    "VectorStore",
    "QueryProcessorProtocol",
    "ArchivalBackend",
    "TierManagerProtocol",
    "EngineSettings",
    "GraphIndexConfig",
    "VectorDBError",
    "DimensionMismatch",
    "NotFound",
    "AlreadyExists",
    "BuildError",
    "EmbeddingUnavailable",
    "MigrationPartialFailure",
    "IndexDegraded",
    "IndexClosed",
    "UnknownMetric",
    "Record",
    "SearchResult",
    "QueryResult",
    "Metric",
    "distance",
    "batch_distances",
    "VectorStoreInMemory",
    "GraphIndex",
    "IndexState",
    "TieredIndex",
    "InMemoryArchivalBackend",
    "ParquetArchivalBackend",
    "TierManager",
    "MigrationReport",
    "QueryRouter",
    "QueryProcessor",
    "OllamaEmbeddingSource",
    "CallableEmbeddingSource",
    "CancellationToken",
    "Deadline",
]
