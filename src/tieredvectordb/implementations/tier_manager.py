"""
Реализация TierManager для TieredVectorDB.

Модуль классифицирует записи по ярусам (год created_at) и переносит ярусы
между горячим хранилищем и архивными бэкендами: copy, verify, commit.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any, Iterator, Sequence

import numpy as np

from ..exceptions import MigrationPartialFailure, NotFound
from ..interfaces.storage_engine import StoreObserver
from ..interfaces.tiering import ArchivalBackend, TierManagerProtocol
from ..interfaces.vector import RecordProtocol
from .archival_backend import InMemoryArchivalBackend, RecordBatch
from .cancellation import CancellationToken, is_cancelled
from .locks import ReadWriteLock
from .storage_engine_in_memory import VectorStoreInMemory, year_partition
from .tiered_index import TieredIndex
from .vector import Record, utcnow


class TierInfo:
    """Информация о ярусе."""

    def __init__(self, tier_id: str, backend: Optional[ArchivalBackend] = None):
        self.tier_id = tier_id
        self.backend = backend
        self.migrating: bool = False
        self.last_migrated_at = None
        self.lock = threading.Lock()

    def __repr__(self):
        return f"TierInfo(id={self.tier_id}, migrating={self.migrating})"


@dataclass
class MigrationReport:
    tier_id: str
    moved_count: int = 0
    failed_ids: List[int] = field(default_factory=list)
    cancelled: bool = False
    direction: str = "archive"

    @property
    def ok(self) -> bool:
        return not self.failed_ids and not self.cancelled

    def raise_for_failures(self) -> "MigrationReport":
        if self.failed_ids:
            raise MigrationPartialFailure(self)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "moved_count": self.moved_count,
            "failed_ids": sorted(self.failed_ids),
            "cancelled": self.cancelled,
            "direction": self.direction,
        }


@dataclass
class ReclassifyReport:
    hot_from_year: int
    archived: Dict[str, MigrationReport] = field(default_factory=dict)
    promoted: Dict[str, MigrationReport] = field(default_factory=dict)

    @property
    def moved_count(self) -> int:
        return sum(r.moved_count for r in list(self.archived.values()) + list(self.promoted.values()))

    @property
    def failed_ids(self) -> List[int]:
        return [i for r in list(self.archived.values()) + list(self.promoted.values()) for i in r.failed_ids]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hot_from_year": self.hot_from_year,
            "moved_count": self.moved_count,
            "archived": {t: r.to_dict() for t, r in self.archived.items()},
            "promoted": {t: r.to_dict() for t, r in self.promoted.items()},
        }


class TierManager(TierManagerProtocol, StoreObserver):
    """
    Менеджер ярусов.

    Поддерживает:
    - Классификацию записей по году created_at
    - Перенос яруса в архив с проверкой байтов копии перед удалением из хранилища
    - Сдвиг границы горячего яруса в обе стороны (идемпотентно)
    - Чтение, обновление и удаление архивных записей по id

    Видимость записи переключается под ``visibility.write()``: запрос,
    держащий ``visibility.read()``, видит каждую запись ровно в одном месте.
    """

    def __init__(
        self,
        store: VectorStoreInMemory,
        backend: Optional[ArchivalBackend] = None,
        index: Optional[TieredIndex] = None,
        hot_from_year: Optional[int] = None,
        batch_size: int = 1000,
        classifier: Callable[[RecordProtocol], str] = year_partition,
    ):
        """
        Инициализация менеджера ярусов.

        Args:
            store: Горячее хранилище векторов
            backend: Архивный бэкенд по умолчанию
            index: Индексы горячих ярусов; индекс яруса закрывается после его переноса
            hot_from_year: Первый год горячего яруса (None: текущий год)
            batch_size: Размер пакета при переносе
            classifier: Функция запись -> id яруса
        """
        self._store = store
        self.backend: ArchivalBackend = backend or InMemoryArchivalBackend()
        self._index = index
        self.hot_from_year = hot_from_year
        self.batch_size = batch_size
        self._classifier = classifier

        self.visibility = ReadWriteLock()
        self._lock = threading.RLock()
        self._tiers: Dict[str, TierInfo] = {}
        self._hot_counts: Counter = Counter()
        self._archived_ids: Dict[int, str] = {}

        self.logger = logging.getLogger(__name__)

        store.classifier = self.classify
        store.subscribe(self)
        for tier_id, count in store.tier_counts().items():
            self._hot_counts[tier_id] = count
            self._tier(tier_id)
        self._attach_backend(self.backend)

    def _attach_backend(self, backend: ArchivalBackend) -> None:
        """Подхватить ярусы, уже лежащие в бэкенде (например, Parquet после перезапуска)."""
        for tier_id in backend.list_tiers():
            info = self._tier(tier_id)
            info.backend = backend
            for record_id in backend.ids(tier_id):
                self._archived_ids[record_id] = tier_id
            self.logger.info(f"Attached archived tier {tier_id} ({backend.count(tier_id)} records)")

    def _tier(self, tier_id: str) -> TierInfo:
        with self._lock:
            info = self._tiers.get(tier_id)
            if info is None:
                info = TierInfo(tier_id)
                self._tiers[tier_id] = info
            return info

    # ------------------------------------------------------------ observers

    def on_put(self, record: RecordProtocol, previous: Optional[RecordProtocol]) -> None:
        with self._lock:
            if previous is None:
                self._hot_counts[record.tier] += 1
            elif previous.tier != record.tier:
                self._hot_counts[previous.tier] -= 1
                self._hot_counts[record.tier] += 1
            self._tier(record.tier)

    def on_delete(self, record: RecordProtocol) -> None:
        with self._lock:
            self._hot_counts[record.tier] -= 1
            if self._hot_counts[record.tier] <= 0:
                del self._hot_counts[record.tier]

    # -------------------------------------------------------- classification

    def classify(self, record: RecordProtocol) -> str:
        return self._classifier(record)

    def boundary_year(self) -> int:
        return self.hot_from_year if self.hot_from_year is not None else utcnow().year

    def is_cold(self, tier_id: str, hot_from_year: Optional[int] = None) -> bool:
        """Ярус холодный, если его год меньше границы. Нечисловые ярусы всегда горячие."""
        try:
            year = int(tier_id)
        except ValueError:
            return False
        return year < (hot_from_year if hot_from_year is not None else self.boundary_year())

    def hot_tiers(self) -> List[str]:
        with self._lock:
            return sorted(t for t, n in self._hot_counts.items() if n > 0)

    def archived_tiers(self) -> List[str]:
        with self._lock:
            return sorted(set(self._archived_ids.values()))

    def is_archived_tier(self, tier_id: str) -> bool:
        """Ярус целиком в архиве: есть архивные записи и нет горячих."""
        with self._lock:
            return tier_id in set(self._archived_ids.values()) and self._hot_counts.get(tier_id, 0) <= 0

    def backend_for(self, tier_id: str) -> ArchivalBackend:
        info = self._tiers.get(tier_id)
        return info.backend if info is not None and info.backend is not None else self.backend

    # ------------------------------------------------------------ migration

    def migrate(
        self,
        tier_id: str,
        target_backend: Optional[ArchivalBackend] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> MigrationReport:
        """
        Перенести все горячие записи яруса в архив.

        Каждый пакет записывается, читается обратно и сверяется побайтно;
        только проверенные записи удаляются из хранилища. Записи, не прошедшие
        проверку, остаются горячими и попадают в ``failed_ids``. Повторный
        (или параллельный, дождавшийся первого) перенос ничего не переносит.

        Raises:
            NotFound: ярус неизвестен
        """
        info = self._tiers.get(tier_id)
        if info is None:
            raise NotFound(tier_id, kind="tier")
        with info.lock:
            backend = target_backend or info.backend or self.backend
            report = MigrationReport(tier_id)
            records = sorted(self._store.scan(lambda r: r.tier == tier_id), key=lambda r: r.id)
            if not records:
                self.logger.info(f"Tier {tier_id}: nothing to migrate")
                return report

            info.migrating = True
            info.backend = backend
            self.logger.info(f"Migrating tier {tier_id}: {len(records)} records -> {backend.descriptor}")
            try:
                for start in range(0, len(records), self.batch_size):
                    if is_cancelled(cancel):
                        report.cancelled = True
                        self.logger.warning(f"Tier {tier_id}: migration cancelled after {report.moved_count} records")
                        break
                    self._migrate_batch(tier_id, backend, records[start:start + self.batch_size], report)
            finally:
                info.migrating = False
                info.last_migrated_at = utcnow()

        if self._index is not None and self._hot_counts.get(tier_id, 0) <= 0:
            self._index.drop(tier_id)
        if report.failed_ids:
            self.logger.error(
                f"Tier {tier_id}: {len(report.failed_ids)} records failed to migrate, hot copies retained"
            )
        self.logger.info(f"Tier {tier_id}: migrated {report.moved_count} records")
        return report

    def _migrate_batch(self, tier_id: str, backend: ArchivalBackend,
                       batch: Sequence[RecordProtocol], report: MigrationReport) -> None:
        ids = [r.id for r in batch]
        try:
            backend.write_batch(tier_id, batch)
        except (OSError, ValueError) as exc:
            self.logger.error(f"Tier {tier_id}: failed to write batch of {len(batch)} records: {exc}")
            report.failed_ids.extend(ids)
            return

        verified: List[RecordProtocol] = []
        rejected: List[int] = []
        for record in batch:
            copy = backend.read(tier_id, record.id)
            if copy is not None and _same_record(record, copy):
                verified.append(record)
            else:
                rejected.append(record.id)

        with self.visibility.write():
            for record in verified:
                current = self._store.find(record.id)
                if current is None or current.updated_at != record.updated_at or not _same_record(current, record):
                    # changed or deleted after the copy was taken
                    rejected.append(record.id)
                    continue
                self._store.delete(record.id)
                with self._lock:
                    self._archived_ids[record.id] = tier_id
                report.moved_count += 1
            if rejected:
                backend.delete(tier_id, rejected)

        if rejected:
            current_ids = {r.id for r in batch if self._store.exists(r.id)}
            report.failed_ids.extend(i for i in rejected if i in current_ids)

    def promote(self, tier_id: str) -> MigrationReport:
        """Вернуть архивный ярус в горячее хранилище (индексы пополняются через наблюдателя)."""
        info = self._tier(tier_id)
        report = MigrationReport(tier_id, direction="promote")
        with info.lock:
            backend = self.backend_for(tier_id)
            for batch in list(backend.scan(tier_id, self.batch_size)):
                restored: List[int] = []
                with self.visibility.write():
                    for record in batch.records():
                        if self._archived_ids.get(record.id) != tier_id or self._store.exists(record.id):
                            continue
                        self._store.restore(record)
                        with self._lock:
                            del self._archived_ids[record.id]
                        restored.append(record.id)
                    backend.delete(tier_id, restored)
                report.moved_count += len(restored)
        self.logger.info(f"Tier {tier_id}: promoted {report.moved_count} records to the hot store")
        return report

    def reclassify_boundary(self, hot_from_year: Optional[int] = None) -> ReclassifyReport:
        """
        Сдвинуть границу: ярусы старше ``hot_from_year`` уходят в архив,
        архивные ярусы не старше границы возвращаются. Повторный вызов с той
        же границей ничего не переносит.
        """
        if hot_from_year is not None:
            self.hot_from_year = hot_from_year
        year = self.boundary_year()
        report = ReclassifyReport(year)
        for tier_id in self.hot_tiers():
            if self.is_cold(tier_id, year):
                report.archived[tier_id] = self.migrate(tier_id)
        for tier_id in self.archived_tiers():
            if not self.is_cold(tier_id, year):
                report.promoted[tier_id] = self.promote(tier_id)
        self.logger.info(f"Reclassified at {year}: moved {report.moved_count} records")
        return report

    def archive_cold_tiers(self, is_cold: Optional[Callable[[str], bool]] = None) -> List[MigrationReport]:
        """Перенести все горячие ярусы, для которых ``is_cold(tier_id)`` истинно."""
        predicate = is_cold or self.is_cold
        return [self.migrate(tier_id) for tier_id in self.hot_tiers() if predicate(tier_id)]

    # ------------------------------------------------------- archived records

    def locate(self, record_id: int) -> Optional[str]:
        """Архивный ярус записи или None."""
        return self._archived_ids.get(int(record_id))

    def read_archived(self, record_id: int) -> Optional[Record]:
        tier_id = self.locate(record_id)
        if tier_id is None:
            return None
        return self.backend_for(tier_id).read(tier_id, record_id)

    def write_archived(self, record: RecordProtocol) -> None:
        """Записать запись прямо в архивный ярус (вставка в уже перенесенный год)."""
        tier_id = record.tier
        with self.visibility.write():
            self.backend_for(tier_id).write_batch(tier_id, [record])
            with self._lock:
                self._archived_ids[record.id] = tier_id

    def promote_record(self, record_id: int) -> Record:
        """Поднять одну архивную запись в горячее хранилище (перед обновлением)."""
        tier_id = self.locate(record_id)
        if tier_id is None:
            raise NotFound(record_id)
        backend = self.backend_for(tier_id)
        with self.visibility.write():
            record = backend.read(tier_id, record_id)
            if record is None:
                raise NotFound(record_id)
            restored = self._store.restore(record)
            with self._lock:
                self._archived_ids.pop(record_id, None)
            backend.delete(tier_id, [record_id])
        return restored

    def delete_archived(self, record_id: int) -> RecordProtocol:
        tier_id = self.locate(record_id)
        if tier_id is None:
            raise NotFound(record_id)
        backend = self.backend_for(tier_id)
        with self.visibility.write():
            record = backend.read(tier_id, record_id)
            backend.delete(tier_id, [record_id])
            with self._lock:
                self._archived_ids.pop(record_id, None)
        return record

    def scan_archived(self, tier_id: str, batch_size: Optional[int] = None) -> Iterator[RecordBatch]:
        """
        Пакеты архивного яруса; вызывающий держит ``visibility.read()``.

        Строки, записанные переносом, но еще не зафиксированные, пропускаются.
        """
        backend = self.backend_for(tier_id)
        for batch in backend.scan(tier_id, batch_size or self.batch_size):
            with self._lock:
                committed = np.fromiter(
                    (self._archived_ids.get(rid) == tier_id for rid in batch.ids.tolist()),
                    dtype=bool,
                    count=len(batch),
                )
            if committed.all():
                yield batch
            elif committed.any():
                yield batch.select(committed)

    def archived_count(self, tier_id: Optional[str] = None) -> int:
        with self._lock:
            if tier_id is None:
                return len(self._archived_ids)
            return sum(1 for t in self._archived_ids.values() if t == tier_id)

    # ----------------------------------------------------------------- info

    def get_tier_info(self) -> Dict[str, Any]:
        """Получить информацию о всех ярусах."""
        with self._lock:
            hot = dict(self._hot_counts)
            archived = Counter(self._archived_ids.values())
            tiers = dict(self._tiers)
        result: Dict[str, Any] = {}
        for tier_id in sorted(set(hot) | set(archived)):
            info = tiers.get(tier_id) or TierInfo(tier_id)
            hot_count = hot.get(tier_id, 0)
            archived_count = archived.get(tier_id, 0)
            if hot_count and archived_count:
                location = "split"
            elif archived_count:
                location = "archived"
            else:
                location = "hot"
            backend = self.backend_for(tier_id) if archived_count else None
            result[tier_id] = {
                "tier_id": tier_id,
                "location": location,
                "hot_records": hot_count,
                "archived_records": archived_count,
                "record_count": hot_count + archived_count,
                "backend": backend.descriptor.to_dict() if backend is not None else {"kind": "local", "location": "memory"},
                "queryable_directly": True,
                "migrating": info.migrating,
                "last_migrated_at": info.last_migrated_at.isoformat() if info.last_migrated_at else None,
            }
        return result


def _same_record(a: RecordProtocol, b: RecordProtocol) -> bool:
    return a.id == b.id and _as_bytes(a) == _as_bytes(b)


def _as_bytes(record: RecordProtocol) -> bytes:
    return np.asarray(record.vector, dtype=np.float32).tobytes()
