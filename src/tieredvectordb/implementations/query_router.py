import heapq
import logging
import warnings
from itertools import islice
from typing import Dict, Any, Iterator, List, Optional

import numpy as np

from ..exceptions import DimensionMismatch, IndexDegraded
from ..interfaces.query_processor import QueryPath, QueryRouterProtocol
from .cancellation import Deadline, is_expired
from .distance import Metric
from .index import IndexState, chunked_records, scan_top_k
from .storage_engine_in_memory import VectorStoreInMemory
from .tier_manager import TierManager
from .tiered_index import TieredIndex
from .vector import QueryResult, SearchResult


class QueryRouter(QueryRouterProtocol):
    """
    Fans a top-k query out over tiers and merges the ranked answers.

    Hot tiers with a usable graph for the requested metric go through ANN
    search, other hot tiers through an exact scan of the store, archived
    tiers through a bounded exact scan of their backend. Per-tier results are
    already sorted, so the merge is a k-way heap merge truncated to k.
    """

    def __init__(
        self,
        store: VectorStoreInMemory,
        index: TieredIndex,
        tier_manager: TierManager,
        metric: str = "cosine",
        max_scan_size: int = 100_000,
        search_list_size: Optional[int] = None,
    ):
        self._store = store
        self._index = index
        self._tiers = tier_manager
        self.metric = Metric.parse(metric)
        self.max_scan_size = max_scan_size
        self.search_list_size = search_list_size or index.config.search_list_size
        self.logger = logging.getLogger(__name__)

    def _plan(self, k: int, metric: Metric) -> List[Dict[str, Any]]:
        hot = self._tiers.hot_tiers()
        archived = self._tiers.archived_tiers()
        tier_count = max(1, len(hot) + len(archived))
        plan: List[Dict[str, Any]] = []
        for tier_id in hot:
            graph = self._index.get(tier_id)
            usable = (
                graph is not None
                and metric is graph.metric
                and graph.state in (IndexState.READY, IndexState.DEGRADED, IndexState.BUILDING)
            )
            plan.append({
                "tier_id": tier_id,
                "path": QueryPath.ANN if usable else QueryPath.EXACT_HOT,
                "candidates": k * tier_count,
                "search_list_size": max(self.search_list_size, k * tier_count) if usable else None,
                "index_state": graph.state.value if graph is not None else None,
            })
        for tier_id in archived:
            plan.append({
                "tier_id": tier_id,
                "path": QueryPath.EXACT_ARCHIVE,
                "candidates": k,
                "max_scan": self.max_scan_size,
                "backend": self._tiers.backend_for(tier_id).descriptor.to_dict(),
            })
        return plan

    def explain(self, k: int, metric: Optional[str] = None) -> Dict[str, Any]:
        resolved = Metric.parse(metric, default=self.metric)
        with self._tiers.visibility.read():
            plan = self._plan(k, resolved)
        return {
            "k": k,
            "metric": resolved.value,
            "tiers": [{**step, "path": step["path"].value} for step in plan],
        }

    def query(
        self,
        query_vector: np.ndarray,
        k: int,
        metric: Optional[str] = None,
        deadline: Optional[Deadline] = None,
        search_list_size: Optional[int] = None,
    ) -> QueryResult:
        """
        Top-k across every tier by ascending distance, ties by ascending id.

        Raises:
            DimensionMismatch: query of the wrong dimension
            UnknownMetric: metric other than cosine, euclidean or dot
        """
        resolved = Metric.parse(metric, default=self.metric)
        q = np.asarray(query_vector, dtype=np.float32).ravel()
        if q.shape[0] != self._store.dimension:
            raise DimensionMismatch(self._store.dimension, q.shape[0], what="query")
        if k <= 0:
            return QueryResult()

        ranked: List[List[SearchResult]] = []
        partial = False
        degraded = False
        with self._tiers.visibility.read():
            plan = self._plan(k, resolved)
            for step in plan:
                if is_expired(deadline):
                    partial = True
                    step["skipped"] = True
                    continue
                tier_id = step["tier_id"]
                if step["path"] is QueryPath.ANN:
                    graph = self._index.get(tier_id)
                    with warnings.catch_warnings():
                        warnings.simplefilter("ignore", IndexDegraded)
                        found = graph.search(
                            q,
                            step["candidates"],
                            search_list_size=max(search_list_size or 0, step["search_list_size"]),
                            deadline=deadline,
                        )
                elif step["path"] is QueryPath.EXACT_HOT:
                    records = self._store.scan(lambda r, t=tier_id: r.tier == t)
                    found = scan_top_k(q, chunked_records(records, 1000), k, resolved, deadline=deadline)
                else:
                    batches = ((b.ids, b.matrix) for b in self._tiers.scan_archived(tier_id))
                    found = scan_top_k(q, batches, k, resolved, deadline=deadline, max_scan=self.max_scan_size)
                    if found.partial and not is_expired(deadline):
                        self.logger.warning(f"Archived tier {tier_id} scan truncated at {self.max_scan_size} rows")
                partial = partial or found.partial
                degraded = degraded or found.degraded
                step["returned"] = len(found)
                ranked.append([SearchResult(n.id, n.distance, tier_id) for n in found])

        if degraded:
            warnings.warn("query served by a degraded index; recall may be reduced", IndexDegraded, stacklevel=2)
        results = list(islice(_dedupe(heapq.merge(*ranked, key=lambda r: (r.distance, r.id))), k))
        return QueryResult(
            results=results,
            partial=partial,
            degraded=degraded,
            plan=[{**step, "path": step["path"].value} for step in plan],
        )


def _dedupe(results: Iterator[SearchResult]) -> Iterator[SearchResult]:
    seen = set()
    for r in results:
        if r.id not in seen:
            seen.add(r.id)
            yield r
