"""
Graph-based approximate nearest neighbor index (DiskANN / Vamana shape).

Nodes are integer ids in a flat ``id -> tuple(neighbor ids)`` mapping; vectors
are never copied into the index, they are read from the vector store on
demand. Adjacency tuples are replaced atomically, so searches read them
without locks while writers hold striped node locks.
"""

import heapq
import logging
import random
import threading
import warnings
from enum import Enum
from itertools import islice
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Any

import numpy as np

from ..config import GraphIndexConfig
from ..exceptions import BuildError, DimensionMismatch, IndexClosed, IndexDegraded
from ..interfaces.index import IndexProtocol
from ..interfaces.storage_engine import VectorStore
from ..interfaces.vector import RecordProtocol
from .cancellation import CancellationToken, Deadline, is_cancelled, is_expired
from .distance import Metric, batch_distances
from .locks import StripedLocks
from .vector import Neighbor, Neighbors

logger = logging.getLogger(__name__)


class IndexState(str, Enum):
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


def scan_top_k(
    query: np.ndarray,
    batches: Iterable[Tuple[np.ndarray, np.ndarray]],
    k: int,
    metric: Metric,
    deadline: Optional[Deadline] = None,
    cancel: Optional[CancellationToken] = None,
    max_scan: Optional[int] = None,
) -> Neighbors:
    """
    Exact top-k over ``(ids, matrix)`` batches.

    Stops early, with ``partial=True``, on deadline expiry, cancellation or
    once ``max_scan`` rows have been examined.
    """
    best: List[Tuple[float, int]] = []
    scanned = 0
    partial = False
    for ids, matrix in batches:
        if is_expired(deadline) or is_cancelled(cancel):
            partial = True
            break
        if max_scan is not None and scanned >= max_scan:
            partial = True
            break
        if max_scan is not None and scanned + len(ids) > max_scan:
            room = max_scan - scanned
            ids, matrix = ids[:room], matrix[:room]
            partial = True
        if len(ids) == 0:
            continue
        dists = batch_distances(query, matrix, metric)
        scanned += len(ids)
        pairs = zip(dists.tolist(), (int(i) for i in ids))
        best = heapq.nsmallest(k, list(best) + list(pairs))
        if partial:
            break
    return Neighbors(items=[Neighbor(i, d) for d, i in best], partial=partial, visited=scanned)


def chunked_records(records: Iterable[RecordProtocol], size: int) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
    it = iter(records)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        ids = np.fromiter((r.id for r in chunk), dtype=np.int64, count=len(chunk))
        yield ids, np.stack([r.vector for r in chunk])


class GraphIndex(IndexProtocol):
    """
    Navigable graph over the records of one store (optionally one tier of it).

    States: empty -> building -> ready <-> degraded -> closed. Degraded means
    too many tombstones or an interrupted build; queries still succeed.
    """

    def __init__(
        self,
        store: VectorStore,
        metric: str = "cosine",
        config: Optional[GraphIndexConfig] = None,
        tier: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self._store = store
        self._metric = Metric.parse(metric)
        # dot-product distances can be negative, so diversity pruning runs in euclidean space
        self._prune_metric = Metric.EUCLIDEAN if self._metric is Metric.DOT else self._metric
        self.config = config or GraphIndexConfig()
        self.tier = tier
        self.name = name or (f"graph[{tier}]" if tier else "graph")

        self._adjacency: Dict[int, Tuple[int, ...]] = {}
        self._node_tier: Dict[int, Optional[str]] = {}
        self._tombstones: Set[int] = set()
        # removed ids still present in the store; kept out of exact scans
        self._withdrawn: Set[int] = set()
        self._pending: List[int] = []
        self._entry_point: Optional[int] = None
        self._state = IndexState.EMPTY

        self._locks = StripedLocks()
        self._meta_lock = threading.Lock()
        self._maintenance_lock = threading.Lock()
        self._rng = random.Random(self.config.seed)

    @property
    def metric(self) -> Metric:
        return self._metric

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def entry_point(self) -> Optional[int]:
        return self._entry_point

    def __len__(self) -> int:
        return len(self._adjacency) - len(self._tombstones)

    def __contains__(self, record_id: int) -> bool:
        return record_id in self._adjacency and record_id not in self._tombstones

    def neighbors(self, record_id: int) -> Tuple[int, ...]:
        return self._adjacency.get(record_id, ())

    def tombstones(self) -> Set[int]:
        with self._meta_lock:
            return set(self._tombstones)

    def withdrawn(self) -> Set[int]:
        """Ids removed from this index that the store still holds."""
        with self._meta_lock:
            return set(self._withdrawn)

    # ------------------------------------------------------------------ build

    def build(self, records: Iterable[RecordProtocol], cancel: Optional[CancellationToken] = None) -> None:
        """
        Build the graph from scratch over ``records``.

        Raises:
            BuildError: fewer than two records, or a record of the wrong dimension
        """
        self._check_open()
        records = list(records)
        if len(records) < 2:
            raise BuildError(f"need at least 2 records to build {self.name}, got {len(records)}")
        dim = self._store.dimension
        for r in records:
            if len(r.vector) != dim:
                raise BuildError(f"record {r.id} has dimension {len(r.vector)}, expected {dim}")

        with self._maintenance_lock:
            with self._meta_lock:
                self._adjacency = {}
                self._node_tier = {}
                self._tombstones = set()
                self._withdrawn = set()
                self._pending = []
                self._entry_point = None
                self._state = IndexState.BUILDING

            ids = np.fromiter((r.id for r in records), dtype=np.int64, count=len(records))
            matrix = np.stack([r.vector for r in records]).astype(np.float64)
            centroid = matrix.mean(axis=0)
            dists = batch_distances(centroid, matrix, self._prune_metric)
            medoid_pos = min(range(len(records)), key=lambda i: (dists[i], int(ids[i])))
            medoid = records[medoid_pos]
            with self._meta_lock:
                self._adjacency[medoid.id] = ()
                self._node_tier[medoid.id] = medoid.tier
                self._entry_point = medoid.id

            order = [r for i, r in enumerate(records) if i != medoid_pos]
            self._rng.shuffle(order)
            interval = self.config.cancel_check_interval
            for i, record in enumerate(order):
                if i % interval == 0 and is_cancelled(cancel):
                    with self._meta_lock:
                        self._pending = [r.id for r in order[i:]]
                        self._state = IndexState.DEGRADED
                    logger.warning(
                        f"{self.name}: build cancelled after {i + 1}/{len(records)} records, "
                        f"index left degraded"
                    )
                    return
                self._link(record.id, record.vector, record.tier)

            with self._meta_lock:
                self._state = IndexState.READY
        logger.info(f"{self.name}: built over {len(records)} records (entry={self._entry_point})")

    # ----------------------------------------------------------------- writes

    def insert(self, record: RecordProtocol) -> None:
        """Add or re-link one record against the live graph; no global rebuild."""
        self._check_open()
        if len(record.vector) != self._store.dimension:
            raise DimensionMismatch(self._store.dimension, len(record.vector))
        with self._meta_lock:
            self._tombstones.discard(record.id)
            self._withdrawn.discard(record.id)
            if self._entry_point is None:
                self._adjacency[record.id] = ()
                self._node_tier[record.id] = record.tier
                self._entry_point = record.id
                if self._state is IndexState.EMPTY:
                    self._state = IndexState.READY
                return
        self._link(record.id, record.vector, record.tier)
        with self._meta_lock:
            if self._state is IndexState.EMPTY:
                self._state = IndexState.READY

    def remove(self, record_id: int) -> None:
        """Tombstone a node. It keeps routing searches until ``repair`` compacts it."""
        with self._meta_lock:
            if record_id not in self._adjacency or record_id in self._tombstones:
                return
            self._tombstones.add(record_id)
            self._withdrawn.add(record_id)
            if self._entry_point == record_id:
                self._entry_point = self._pick_entry(exclude=record_id)
            self._refresh_state()

    def _link(self, rid: int, vector: np.ndarray, tier: Optional[str]) -> None:
        L = self.config.search_list_size
        R = self.config.max_degree
        _, scored, _, _ = self._greedy_search(vector, L, self.config.visit_budget(L), deadline=None)
        tombstones = self._tombstones
        pool = {i: d for i, d in scored.items() if i != rid and i not in tombstones}
        for old in self._adjacency.get(rid, ()):
            if old != rid and old not in tombstones and old not in pool:
                pool[old] = None
        out = self._robust_prune(vector, pool, R)

        with self._locks.hold([rid, *out]):
            self._adjacency[rid] = tuple(out)
            self._node_tier[rid] = tier
            for j in out:
                adj = self._adjacency.get(j)
                if adj is None or rid in adj:
                    continue
                self._adjacency[j] = self._relink(j, adj + (rid,))

    def _relink(self, node: int, candidates: Tuple[int, ...]) -> Tuple[int, ...]:
        """Neighbor list of ``node`` ordered by distance, robust-pruned if over max degree."""
        vec = self._store.vectors_for([node]).get(node)
        if vec is None:
            return candidates[: self.config.max_degree]
        pool = {c: None for c in candidates if c != node}
        if len(pool) <= self.config.max_degree:
            return tuple(self._order(vec, pool))
        return tuple(self._robust_prune(vec, pool, self.config.max_degree))

    def _order(self, vector: np.ndarray, pool: Dict[int, Optional[float]]) -> List[int]:
        ids, _, dists = self._pool_matrix(vector, pool)
        ranked = sorted(zip(dists.tolist(), ids))
        return [i for _, i in ranked]

    def _pool_matrix(self, vector: np.ndarray, pool: Dict[int, Optional[float]]):
        vecs = self._store.vectors_for(list(pool))
        ids = [i for i in pool if i in vecs]
        if not ids:
            return [], np.empty((0, len(vector))), np.empty(0)
        matrix = np.stack([vecs[i] for i in ids])
        if self._prune_metric is self._metric and all(pool[i] is not None for i in ids):
            dists = np.array([pool[i] for i in ids], dtype=np.float64)
        else:
            dists = batch_distances(vector, matrix, self._prune_metric)
        return ids, matrix, dists

    def _robust_prune(self, vector: np.ndarray, pool: Dict[int, Optional[float]], degree: int) -> List[int]:
        """
        Pick up to ``degree`` diverse neighbors from ``pool``.

        Candidates are taken closest first; after picking p*, every remaining
        candidate c with ``alpha * d(p*, c) <= d(point, c)`` is dropped.
        """
        ids, matrix, dists = self._pool_matrix(vector, pool)
        if not ids:
            return []
        order = sorted(range(len(ids)), key=lambda i: (dists[i], ids[i]))
        ids = [ids[i] for i in order]
        matrix = matrix[order]
        dists = dists[order]
        alive = np.ones(len(ids), dtype=bool)
        alpha = self.config.alpha
        out: List[int] = []
        for pos in range(len(ids)):
            if not alive[pos]:
                continue
            out.append(ids[pos])
            alive[pos] = False
            if len(out) >= degree:
                break
            rest = np.nonzero(alive)[0]
            if rest.size == 0:
                break
            d_star = batch_distances(matrix[pos], matrix[rest], self._prune_metric)
            alive[rest[alpha * d_star <= dists[rest]]] = False
        return out

    # ----------------------------------------------------------------- search

    def _greedy_search(
        self,
        query: np.ndarray,
        L: int,
        budget: int,
        deadline: Optional[Deadline],
    ) -> Tuple[List[Tuple[float, int]], Dict[int, float], bool, int]:
        """
        Beam search from the entry point.

        Returns the frontier, every scored node, whether the deadline cut the
        search short and the number of expanded nodes. Nodes whose vector is
        gone from the store are passed through: their neighbors are scored in
        their place, so tombstones keep the graph navigable until repair.
        """
        entry = self._entry_point
        if entry is None:
            return [], {}, False, 0

        scored: Dict[int, float] = {}
        seen: Set[int] = set()
        frontier: List[Tuple[float, int]] = []
        expanded: Set[int] = set()
        partial = False

        def score(candidates: Sequence[int]) -> None:
            todo = [c for c in candidates if c not in seen]
            seen.update(todo)
            vecs = self._store.vectors_for(todo)
            passthrough: List[int] = []
            for c in todo:
                if c not in vecs:
                    passthrough.extend(n for n in self._adjacency.get(c, ()) if n not in seen)
            if passthrough:
                seen.update(passthrough)
                vecs.update(self._store.vectors_for(passthrough))
            found = [c for c in todo + passthrough if c in vecs]
            if not found:
                return
            dists = batch_distances(query, np.stack([vecs[c] for c in found]), self._metric)
            for c, d in zip(found, dists.tolist()):
                scored[c] = d
                frontier.append((d, c))

        score([entry])
        frontier.sort()
        del frontier[L:]

        while True:
            if len(expanded) >= budget:
                break
            if is_expired(deadline):
                partial = True
                break
            current = next((c for _, c in frontier if c not in expanded), None)
            if current is None:
                break
            expanded.add(current)
            score(self._adjacency.get(current, ()))
            frontier.sort()
            del frontier[L:]
        return frontier, scored, partial, len(expanded)

    def search(
        self,
        query: np.ndarray,
        k: int,
        search_list_size: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> Neighbors:
        """
        Approximate top-k by ascending distance (ties by ascending id).

        Recall grows with ``search_list_size``. On deadline expiry the best
        results found so far come back with ``partial=True``.
        """
        self._check_open()
        q = self._check_query(query)
        if k <= 0 or self._entry_point is None:
            return Neighbors()
        L = max(search_list_size or self.config.search_list_size, k)
        _, scored, partial, visited = self._greedy_search(q, L, self.config.visit_budget(L), deadline)
        live = [(d, i) for i, d in scored.items() if self._is_live(i)]
        best = heapq.nsmallest(k, live)
        degraded = self._state is IndexState.DEGRADED
        if degraded:
            warnings.warn(f"{self.name} is degraded; recall may be reduced", IndexDegraded, stacklevel=2)
        if partial:
            logger.warning(f"{self.name}: search deadline expired after {visited} expansions")
        return Neighbors(
            items=[Neighbor(i, d) for d, i in best],
            partial=partial,
            degraded=degraded,
            visited=visited,
        )

    def exact_search(
        self,
        query: np.ndarray,
        k: int,
        deadline: Optional[Deadline] = None,
        cancel: Optional[CancellationToken] = None,
        max_scan: Optional[int] = None,
    ) -> Neighbors:
        """Linear scan of the store (this index's tier only), the correctness oracle."""
        self._check_open()
        q = self._check_query(query)
        if k <= 0:
            return Neighbors()
        tier = self.tier
        dead = self.withdrawn()
        records = self._store.scan(lambda r: r.id not in dead and (tier is None or r.tier == tier))
        return scan_top_k(
            q,
            chunked_records(records, self.config.cancel_check_interval),
            k,
            self._metric,
            deadline=deadline,
            cancel=cancel,
            max_scan=max_scan,
        )

    def _check_query(self, query: Any) -> np.ndarray:
        q = np.asarray(query, dtype=np.float32).ravel()
        if q.shape[0] != self._store.dimension:
            raise DimensionMismatch(self._store.dimension, q.shape[0], what="query")
        return q

    def _is_live(self, record_id: int) -> bool:
        if record_id in self._tombstones or record_id not in self._node_tier:
            return False
        record = self._store.find(record_id)
        return record is not None and record.tier == self._node_tier.get(record_id)

    # ------------------------------------------------------------ maintenance

    def is_repair_required(self) -> bool:
        return self._state is IndexState.DEGRADED

    def stale_fraction(self) -> float:
        return len(self._tombstones) / max(1, len(self._adjacency))

    def repair(self) -> int:
        """
        Compact tombstoned and stale nodes and finish an interrupted build.

        Every surviving node that pointed at a removed node is re-linked to the
        removed node's neighbors, and the removed node's neighbors are offered
        to each other, all bounded by max degree. Returns the number of nodes
        removed.
        """
        self._check_open()
        with self._maintenance_lock:
            snapshot = self._adjacency.copy()
            with self._meta_lock:
                dead = set(self._tombstones)
                pending = list(self._pending)
                withdrawn = set(self._withdrawn)
            gone = {rid for rid in withdrawn if not self._store.exists(rid)}
            dead.update(n for n in snapshot if n not in dead and not self._is_live(n))

            offered: Dict[int, Set[int]] = {}
            for d in dead:
                alive_nbrs = [n for n in snapshot.get(d, ()) if n not in dead and n in snapshot]
                for u in alive_nbrs:
                    offered.setdefault(u, set()).update(n for n in alive_nbrs if n != u)

            for node, adj in snapshot.items():
                if node in dead:
                    continue
                touched = dead.intersection(adj)
                if not touched and node not in offered:
                    continue
                with self._locks.hold([node]):
                    current = self._adjacency.get(node, adj)
                    candidates = {n for n in current if n not in dead}
                    for d in dead.intersection(current):
                        candidates.update(n for n in snapshot.get(d, ()) if n not in dead and n != node)
                    candidates.update(n for n in offered.get(node, ()) if n not in dead)
                    candidates.discard(node)
                    self._adjacency[node] = self._relink(node, tuple(candidates))

            with self._meta_lock:
                for d in dead:
                    self._adjacency.pop(d, None)
                    self._node_tier.pop(d, None)
                self._tombstones.difference_update(dead)
                self._withdrawn.difference_update(gone)
                if self._entry_point is None or self._entry_point in dead:
                    self._entry_point = self._pick_entry(exclude=None)
                self._pending = []

        restored = 0
        for rid in pending:
            record = self._store.find(rid)
            if record is not None and (self.tier is None or record.tier == self.tier):
                self.insert(record)
                restored += 1

        with self._meta_lock:
            if not self._adjacency:
                self._state = IndexState.EMPTY
            else:
                self._state = IndexState.READY
                self._refresh_state()
        logger.info(f"{self.name}: repair removed {len(dead)} nodes, linked {restored} pending records")
        return len(dead)

    def close(self) -> None:
        with self._meta_lock:
            self._state = IndexState.CLOSED
            self._adjacency = {}
            self._node_tier = {}
            self._tombstones = set()
            self._withdrawn = set()
            self._pending = []
            self._entry_point = None
        logger.info(f"{self.name}: closed")

    def _check_open(self) -> None:
        if self._state is IndexState.CLOSED:
            raise IndexClosed(f"{self.name} is closed")

    def _pick_entry(self, exclude: Optional[int]) -> Optional[int]:
        # caller holds _meta_lock
        if exclude is not None:
            for n in self._adjacency.get(exclude, ()):
                if n not in self._tombstones and n in self._adjacency:
                    return n
        for n in self._adjacency.copy():
            if n != exclude and n not in self._tombstones:
                return n
        return None

    def _refresh_state(self) -> None:
        # caller holds _meta_lock
        if self._state not in (IndexState.READY, IndexState.DEGRADED):
            return
        if self._pending or self.stale_fraction() > self.config.stale_threshold:
            if self._state is not IndexState.DEGRADED:
                logger.warning(
                    f"{self.name}: {len(self._tombstones)} tombstones "
                    f"({self.stale_fraction():.0%}), index degraded until repair"
                )
            self._state = IndexState.DEGRADED
        else:
            self._state = IndexState.READY

    def get_index_info(self) -> Dict[str, Any]:
        adjacency = self._adjacency.copy()
        degrees = [len(v) for v in adjacency.values()]
        return {
            "name": self.name,
            "index_type": "graph",
            "tier": self.tier,
            "metric": self._metric.value,
            "state": self._state.value,
            "nodes": len(adjacency),
            "live_nodes": len(adjacency) - len(self._tombstones),
            "tombstones": len(self._tombstones),
            "pending": len(self._pending),
            "entry_point": self._entry_point,
            "avg_degree": float(np.mean(degrees)) if degrees else 0.0,
            "max_degree": self.config.max_degree,
            "search_list_size": self.config.search_list_size,
            "alpha": self.config.alpha,
        }
