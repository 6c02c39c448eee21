"""
Query interfaces for TieredVectorDB.

The QueryRouter fans a top-k query out over tiers and merges the ranked
per-tier results; the QueryProcessor is the client-facing facade
(insert/update/delete/search/migrate/stats).
"""

from datetime import datetime
from typing import Protocol, List, Optional, Dict, Any, Sequence, Mapping
from enum import Enum

import numpy as np
from typing_extensions import runtime_checkable


class QueryPath(str, Enum):
    """How a single tier is answered."""
    ANN = "ann"  # graph search over a hot tier
    EXACT_HOT = "exact-hot"  # linear scan of a hot tier
    EXACT_ARCHIVE = "exact-archive"  # linear scan of an archived tier


@runtime_checkable
class QueryRouterProtocol(Protocol):
    def query(
        self,
        query_vector: np.ndarray,
        k: int,
        metric: Optional[str] = None,
        deadline: Optional[Any] = None,
        search_list_size: Optional[int] = None,
    ) -> Any:
        """
        Execute a top-k query across all tiers.

        Args:
            query_vector: Query embedding of the store's dimension
            k: Number of results to return
            metric: Distance metric; defaults to the index metric
            deadline: Optional Deadline; on expiry partial results are returned

        Returns:
            QueryResult with results ordered by ascending distance
        """
        ...

    def explain(self, k: int, metric: Optional[str] = None) -> Dict[str, Any]:
        """
        Explain the execution plan for a query without executing it.

        Returns:
            Dict[str, Any]: per-tier path and candidate budget
        """
        ...


@runtime_checkable
class QueryProcessorProtocol(Protocol):
    def insert(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Mapping[str, Any]] = None) -> Any: ...

    def update(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Mapping[str, Any]] = None) -> Any: ...

    def delete(self, record_id: int) -> None: ...

    def get(self, record_id: int) -> Any: ...

    def search(self, vector: Sequence[float], k: int, metric: Optional[str] = None,
               deadline_seconds: Optional[float] = None) -> Any: ...

    def search_text(self, text: str, k: int, metric: Optional[str] = None,
                    deadline_seconds: Optional[float] = None) -> Any: ...

    def migrate_tier(self, tier_id: str) -> Any: ...

    def stats(self) -> Dict[str, Any]: ...

    def list_tiers(self) -> List[Dict[str, Any]]: ...
