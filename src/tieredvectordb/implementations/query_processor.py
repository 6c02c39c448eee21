from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Sequence, List, Dict, Any, Optional, Mapping, Callable

from ..config import EngineSettings
from ..exceptions import AlreadyExists, EmbeddingUnavailable, NotFound
from ..interfaces.embedding import EmbeddingSource
from ..interfaces.query_processor import QueryProcessorProtocol
from ..interfaces.tiering import ArchivalBackend
from .archival_backend import InMemoryArchivalBackend, ParquetArchivalBackend
from .cancellation import CancellationToken, Deadline
from .embedding import OllamaEmbeddingSource
from .locks import StripedLocks
from .query_router import QueryRouter
from .storage_engine_in_memory import VectorStoreInMemory
from .tier_manager import MigrationReport, ReclassifyReport, TierManager
from .tiered_index import TieredIndex
from .vector import QueryResult, Record, as_vector, utcnow

logger = logging.getLogger(__name__)


class QueryProcessor(QueryProcessorProtocol):
    """
    Client-facing facade over the store, the per-tier graphs, the tier manager
    and the query router.

    Writes to one id are serialised; ``get`` and queries see every record in
    exactly one place (hot store or archive) even while a tier migrates.
    """

    def __init__(
        self,
        store: VectorStoreInMemory,
        index: TieredIndex,
        tier_manager: TierManager,
        router: QueryRouter,
        embedding: Optional[EmbeddingSource] = None,
        auto_repair: bool = True,
    ):
        self._store = store
        self._index = index
        self._tiers = tier_manager
        self._router = router
        self._embedding = embedding
        self._auto_repair = auto_repair
        self._id_locks = StripedLocks()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="index-repair")
        self._repair_lock = threading.Lock()
        self._repair_future: Optional[Future] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[EngineSettings] = None,
        backend: Optional[ArchivalBackend] = None,
        embedding: Optional[EmbeddingSource] = None,
        auto_repair: bool = True,
    ) -> "QueryProcessor":
        settings = settings or EngineSettings()
        store = VectorStoreInMemory(settings.dimension)
        index = TieredIndex(store, settings.metric, settings.index)
        if backend is None:
            if settings.archive_dir is not None:
                backend = ParquetArchivalBackend(settings.archive_dir, settings.archive_prefix, settings.dimension)
            else:
                backend = InMemoryArchivalBackend()
        tiers = TierManager(
            store,
            backend,
            index,
            hot_from_year=settings.hot_from_year,
            batch_size=settings.migration_batch_size,
        )
        router = QueryRouter(store, index, tiers, settings.metric, settings.max_scan_size)
        if embedding is None and settings.embedding_url:
            embedding = OllamaEmbeddingSource(
                settings.embedding_url,
                settings.embedding_model,
                settings.dimension,
                settings.embedding_timeout,
            )
        logger.info(
            f"Engine ready: dimension={settings.dimension}, metric={settings.metric}, "
            f"archive={backend.descriptor.to_dict()}"
        )
        return cls(store, index, tiers, router, embedding, auto_repair)

    @property
    def store(self) -> VectorStoreInMemory:
        return self._store

    @property
    def index(self) -> TieredIndex:
        return self._index

    @property
    def tier_manager(self) -> TierManager:
        return self._tiers

    @property
    def router(self) -> QueryRouter:
        return self._router

    @property
    def dimension(self) -> int:
        return self._store.dimension

    # ---------------------------------------------------------------- writes

    def insert(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Mapping[str, Any]] = None) -> Record:
        """
        Insert a new record. A record whose year tier is already archived goes
        straight to the archive.

        Raises:
            AlreadyExists: the id is present in any tier
            DimensionMismatch: wrong vector length
        """
        record_id = int(record_id)
        values = as_vector(vector, self.dimension)
        ts = timestamp or utcnow()
        with self._id_locks.hold([record_id]):
            with self._tiers.visibility.read():
                self._check_absent(record_id)
                draft = Record(record_id, values, ts, metadata=metadata)
                tier = self._tiers.classify(draft)
                if not self._tiers.is_archived_tier(tier):
                    return self._store.put(record_id, values, ts, metadata)
            record = draft.with_tier(tier)
            self._tiers.write_archived(record)
            logger.debug(f"Inserted record {record_id} into archived tier {tier}")
            return record

    def _check_absent(self, record_id: int) -> None:
        hot = self._store.find(record_id)
        if hot is not None:
            raise AlreadyExists(record_id, hot.tier)
        archived_tier = self._tiers.locate(record_id)
        if archived_tier is not None:
            raise AlreadyExists(record_id, archived_tier)

    def update(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Mapping[str, Any]] = None) -> Record:
        """
        Replace the vector of an existing record; ``created_at`` and tier are kept.
        An archived record is promoted back to the hot store first.

        Raises:
            NotFound: no such id in any tier
        """
        record_id = int(record_id)
        values = as_vector(vector, self.dimension)
        ts = timestamp or utcnow()
        with self._id_locks.hold([record_id]):
            with self._tiers.visibility.read():
                if self._store.exists(record_id):
                    return self._store.put(record_id, values, ts, metadata)
                if self._tiers.locate(record_id) is None:
                    raise NotFound(record_id)
            self._tiers.promote_record(record_id)
            logger.info(f"Record {record_id} promoted from the archive for update")
            return self._store.put(record_id, values, ts, metadata)

    def upsert(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Mapping[str, Any]] = None) -> Record:
        try:
            return self.update(record_id, vector, timestamp, metadata)
        except NotFound:
            return self.insert(record_id, vector, timestamp, metadata)

    def delete(self, record_id: int) -> None:
        """
        Raises:
            NotFound: no such id in any tier
        """
        record_id = int(record_id)
        with self._id_locks.hold([record_id]):
            with self._tiers.visibility.read():
                deleted = self._store.exists(record_id)
                if deleted:
                    self._store.delete(record_id)
            if not deleted:
                self._tiers.delete_archived(record_id)
        if self._auto_repair and self._index.repair_required():
            self.schedule_repair()

    # ----------------------------------------------------------------- reads

    def get(self, record_id: int) -> Record:
        record_id = int(record_id)
        with self._tiers.visibility.read():
            record = self._store.find(record_id)
            if record is None:
                record = self._tiers.read_archived(record_id)
        if record is None:
            raise NotFound(record_id)
        return record

    def search(self, vector: Sequence[float], k: int, metric: Optional[str] = None,
               deadline_seconds: Optional[float] = None, search_list_size: Optional[int] = None) -> QueryResult:
        return self._router.query(
            vector,
            k,
            metric=metric,
            deadline=Deadline.after(deadline_seconds),
            search_list_size=search_list_size,
        )

    def search_text(self, text: str, k: int, metric: Optional[str] = None,
                    deadline_seconds: Optional[float] = None) -> QueryResult:
        """Embed ``text`` with the configured source, then search."""
        if self._embedding is None:
            raise EmbeddingUnavailable("no embedding source configured")
        return self.search(self._embedding.embed(text), k, metric, deadline_seconds)

    def explain(self, k: int, metric: Optional[str] = None) -> Dict[str, Any]:
        return self._router.explain(k, metric)

    # ---------------------------------------------------------------- tiers

    def migrate_tier(self, tier_id: str, cancel: Optional[CancellationToken] = None) -> MigrationReport:
        return self._tiers.migrate(tier_id, cancel=cancel)

    def reclassify_boundary(self, hot_from_year: Optional[int] = None) -> ReclassifyReport:
        return self._tiers.reclassify_boundary(hot_from_year)

    def archive_cold_tiers(self, is_cold: Optional[Callable[[str], bool]] = None) -> List[MigrationReport]:
        return self._tiers.archive_cold_tiers(is_cold)

    def list_tiers(self) -> List[Dict[str, Any]]:
        tiers = self._tiers.get_tier_info()
        for tier_id, info in tiers.items():
            graph = self._index.get(tier_id)
            info["index_state"] = graph.state.value if graph is not None else None
        return list(tiers.values())

    # ---------------------------------------------------------------- index

    def rebuild_index(self, tier_id: str, cancel: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return self._index.rebuild(tier_id, cancel).get_index_info()

    def repair_indexes(self, tier_id: Optional[str] = None) -> Dict[str, int]:
        repaired = self._index.repair(tier_id)
        if repaired:
            logger.info(f"Index repair: {repaired}")
        return repaired

    def schedule_repair(self) -> Future:
        """Run ``repair_indexes`` in the background unless a repair is already queued."""
        with self._repair_lock:
            if self._repair_future is None or self._repair_future.done():
                self._repair_future = self._executor.submit(self.repair_indexes)
                self._repair_future.add_done_callback(_log_repair_failure)
            return self._repair_future

    def stats(self) -> Dict[str, Any]:
        tiers = self._tiers.get_tier_info()
        hot = self._store.total_records
        archived = self._tiers.archived_count()
        return {
            "record_count": hot + archived,
            "hot_records": hot,
            "archived_records": archived,
            "tier_counts": {t: info["record_count"] for t, info in tiers.items()},
            "index_state": self._index.state(),
            "dimension": self.dimension,
            "metric": self._router.metric.value,
            "hot_from_year": self._tiers.boundary_year(),
            "embedding": self._embedding is not None,
        }

    def get_index_info(self) -> Dict[str, Any]:
        return self._index.get_index_info()

    def get_storage_info(self) -> Dict[str, Any]:
        return self._store.get_storage_info()

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._index.close()
        logger.info("Engine closed")


def _log_repair_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(f"Background index repair failed: {exc!r}")
