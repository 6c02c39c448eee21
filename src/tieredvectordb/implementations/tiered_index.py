import logging
import threading
from typing import Dict, Any, List, Optional

from ..config import GraphIndexConfig
from ..exceptions import NotFound
from ..interfaces.storage_engine import VectorStore, StoreObserver
from ..interfaces.vector import RecordProtocol
from .cancellation import CancellationToken
from .index import GraphIndex, IndexState


class TieredIndex(StoreObserver):
    """
    One GraphIndex per hot tier, kept in step with the store.

    Subscribes to the store: puts insert or re-link the node in its tier's
    graph, deletes tombstone it. Graphs are created on the first record of a
    tier and dropped when the tier leaves the hot store.
    """

    def __init__(self, store: VectorStore, metric: str = "cosine", config: Optional[GraphIndexConfig] = None):
        self._store = store
        self.metric = metric
        self.config = config or GraphIndexConfig()
        self._indexes: Dict[str, GraphIndex] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)
        store.subscribe(self)

    def index_for(self, tier_id: str) -> GraphIndex:
        with self._lock:
            index = self._indexes.get(tier_id)
            if index is None:
                index = GraphIndex(self._store, self.metric, self.config, tier=tier_id)
                self._indexes[tier_id] = index
                self.logger.info(f"Created graph index for tier {tier_id}")
            return index

    def get(self, tier_id: str) -> Optional[GraphIndex]:
        return self._indexes.get(tier_id)

    def tiers(self) -> List[str]:
        return sorted(self._indexes)

    def on_put(self, record: RecordProtocol, previous: Optional[RecordProtocol]) -> None:
        if previous is not None and previous.tier != record.tier:
            old = self._indexes.get(previous.tier)
            if old is not None:
                old.remove(previous.id)
        self.index_for(record.tier).insert(record)

    def on_delete(self, record: RecordProtocol) -> None:
        index = self._indexes.get(record.tier)
        if index is not None:
            index.remove(record.id)

    def rebuild(self, tier_id: str, cancel: Optional[CancellationToken] = None) -> GraphIndex:
        """Build the tier's graph from scratch over its current hot records."""
        records = list(self._store.scan(lambda r: r.tier == tier_id))
        if not records:
            raise NotFound(tier_id, kind="tier")
        index = self.index_for(tier_id)
        if len(records) == 1:
            index.insert(records[0])
        else:
            index.build(records, cancel=cancel)
        return index

    def drop(self, tier_id: str) -> None:
        with self._lock:
            index = self._indexes.pop(tier_id, None)
        if index is not None:
            index.close()
            self.logger.info(f"Dropped graph index for tier {tier_id}")

    def repair_required(self) -> List[str]:
        return [t for t, index in list(self._indexes.items()) if index.is_repair_required()]

    def repair(self, tier_id: Optional[str] = None) -> Dict[str, int]:
        targets = [tier_id] if tier_id is not None else self.tiers()
        repaired: Dict[str, int] = {}
        for tier in targets:
            index = self._indexes.get(tier)
            if index is None:
                continue
            repaired[tier] = index.repair()
            if index.state is IndexState.EMPTY and not self._store_has_tier(tier):
                self.drop(tier)
        return repaired

    def _store_has_tier(self, tier_id: str) -> bool:
        return next(iter(self._store.scan(lambda r: r.tier == tier_id)), None) is not None

    def state(self) -> str:
        """Worst state across tiers."""
        states = {index.state for index in list(self._indexes.values())}
        for candidate in (IndexState.DEGRADED, IndexState.BUILDING, IndexState.READY):
            if candidate in states:
                return candidate.value
        return IndexState.EMPTY.value

    def close(self) -> None:
        self._store.unsubscribe(self)
        with self._lock:
            indexes, self._indexes = list(self._indexes.values()), {}
        for index in indexes:
            index.close()

    def get_index_info(self) -> Dict[str, Any]:
        return {
            "state": self.state(),
            "metric": self.metric,
            "tiers": {tier: index.get_index_info() for tier, index in list(self._indexes.items())},
        }
