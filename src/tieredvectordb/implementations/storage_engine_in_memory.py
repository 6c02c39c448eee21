import logging
import sys
import threading
from collections import Counter
from datetime import datetime
from typing import Dict, Any, Optional, List, Callable, Iterator, Sequence, Mapping

import numpy as np

from ..exceptions import NotFound, DimensionMismatch
from ..interfaces.storage_engine import VectorStore, StoreObserver
from ..interfaces.vector import RecordProtocol
from .locks import StripedLocks
from .vector import Record, as_vector, utcnow


def year_partition(record: RecordProtocol) -> str:
    """Default tier predicate: the calendar year of ``created_at``."""
    return str(record.created_at.year)


class VectorStoreInMemory(VectorStore):
    """
    Hot-tier record store.

    Reads are lock-free dictionary lookups of immutable records. Writers to the
    same id serialise on a striped lock and notify observers synchronously while
    holding it, so observers see the writes of one id in the order applied;
    writes to different ids proceed in parallel.
    """

    def __init__(self, dimension: int, classifier: Optional[Callable[[RecordProtocol], str]] = None):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = int(dimension)
        self._records: Dict[int, Record] = {}
        self._id_locks = StripedLocks()
        self._observers_lock = threading.Lock()
        self._observers: List[StoreObserver] = []
        self.classifier: Callable[[RecordProtocol], str] = classifier or year_partition
        self.logger = logging.getLogger(__name__)

    @property
    def storage_type(self) -> str:
        return "in-memory"

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def total_records(self) -> int:
        return len(self._records)

    @property
    def storage_size(self) -> int:
        records = list(self._records.values())
        return sum(
            sys.getsizeof(r.id) + r.vector.nbytes + (sys.getsizeof(r.metadata) if r.metadata else 0)
            for r in records
        )

    def put(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
            metadata: Optional[Mapping[str, Any]] = None) -> Record:
        """
        Insert or replace a record.

        A new id gets ``created_at = timestamp`` and a tier from the classifier;
        an existing id keeps ``created_at`` and tier and gets ``updated_at = timestamp``.

        Raises:
            DimensionMismatch: if ``len(vector)`` differs from the store dimension
        """
        values = as_vector(vector, self._dimension)
        ts = timestamp or utcnow()
        record_id = int(record_id)
        with self._id_locks.hold([record_id]):
            previous = self._records.get(record_id)
            if previous is None:
                draft = Record(record_id, values, created_at=ts, metadata=metadata)
                record = draft.with_tier(self.classifier(draft))
            else:
                record = previous.with_vector(values, ts, metadata)
            self._records[record_id] = record
            self._notify_put(record, previous)
        return record

    def restore(self, record: RecordProtocol) -> Record:
        """Put back a fully formed record (timestamps and tier preserved), e.g. on promotion."""
        if len(record.vector) != self._dimension:
            raise DimensionMismatch(self._dimension, len(record.vector))
        restored = record if isinstance(record, Record) else Record(
            record.id, record.vector, record.created_at, record.updated_at, record.tier, record.metadata
        )
        with self._id_locks.hold([restored.id]):
            previous = self._records.get(restored.id)
            self._records[restored.id] = restored
            self._notify_put(restored, previous)
        return restored

    def get(self, record_id: int) -> Record:
        record = self._records.get(int(record_id))
        if record is None:
            raise NotFound(record_id)
        return record

    def find(self, record_id: int) -> Optional[Record]:
        return self._records.get(int(record_id))

    def delete(self, record_id: int) -> Record:
        record_id = int(record_id)
        with self._id_locks.hold([record_id]):
            record = self._records.pop(record_id, None)
            if record is None:
                raise NotFound(record_id)
            self._notify_delete(record)
        return record

    def exists(self, record_id: int) -> bool:
        return int(record_id) in self._records

    def scan(self, predicate: Optional[Callable[[RecordProtocol], bool]] = None) -> Iterator[Record]:
        """Lazy, finite pass over a point-in-time snapshot of the store. Call again to restart."""
        snapshot = list(self._records.values())
        for record in snapshot:
            if predicate is None or predicate(record):
                yield record

    def vectors_for(self, record_ids: Sequence[int]) -> Dict[int, np.ndarray]:
        records = self._records
        out: Dict[int, np.ndarray] = {}
        for rid in record_ids:
            record = records.get(rid)
            if record is not None:
                out[rid] = record.vector
        return out

    def tier_counts(self) -> Dict[str, int]:
        return dict(Counter(r.tier for r in list(self._records.values())))

    def clear_all(self) -> bool:
        for record_id in list(self._records):
            with self._id_locks.hold([record_id]):
                record = self._records.pop(record_id, None)
                if record is not None:
                    self._notify_delete(record)
        return True

    def subscribe(self, observer: StoreObserver) -> None:
        with self._observers_lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def unsubscribe(self, observer: StoreObserver) -> None:
        with self._observers_lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _notify_put(self, record: Record, previous: Optional[Record]) -> None:
        for observer in list(self._observers):
            observer.on_put(record, previous)

    def _notify_delete(self, record: Record) -> None:
        for observer in list(self._observers):
            observer.on_delete(record)

    def get_storage_info(self) -> Dict[str, Any]:
        counts = self.tier_counts()
        return {
            "storage_type": self.storage_type,
            "dimension": self._dimension,
            "total_records": self.total_records,
            "storage_size_bytes": self.storage_size,
            "tiers": sorted(counts),
            "records_per_tier": counts,
            "tier_count": len(counts),
        }

    @property
    def list_tiers(self) -> List[str]:
        return sorted(self.tier_counts())
