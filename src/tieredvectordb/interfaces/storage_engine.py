"""
Интерфейс VectorStore для TieredVectorDB.

Vector Store владеет записями горячего яруса: фиксированная размерность,
целочисленные id, синхронные уведомления наблюдателей на put/delete.
"""

from datetime import datetime
from typing import Protocol, Callable, Iterator, Optional, Sequence, Mapping, Any, List, Dict

import numpy as np
from typing_extensions import runtime_checkable

from .vector import RecordProtocol


@runtime_checkable
class StoreObserver(Protocol):
    """Получает уведомления об изменениях хранилища (индекс, менеджер ярусов)."""

    def on_put(self, record: RecordProtocol, previous: Optional[RecordProtocol]) -> None: ...

    def on_delete(self, record: RecordProtocol) -> None: ...


@runtime_checkable
class VectorStore(Protocol):
    """Protocol-интерфейс хранилища векторов."""

    @property
    def dimension(self) -> int: raise NotImplementedError

    @property
    def total_records(self) -> int: raise NotImplementedError

    def put(self, record_id: int, vector: Sequence[float], timestamp: Optional[datetime] = None,
            metadata: Optional[Mapping[str, Any]] = None) -> RecordProtocol:
        raise NotImplementedError

    def restore(self, record: RecordProtocol) -> RecordProtocol: raise NotImplementedError

    def get(self, record_id: int) -> RecordProtocol: raise NotImplementedError

    def find(self, record_id: int) -> Optional[RecordProtocol]: raise NotImplementedError

    def delete(self, record_id: int) -> RecordProtocol: raise NotImplementedError

    def exists(self, record_id: int) -> bool: raise NotImplementedError

    def scan(self, predicate: Optional[Callable[[RecordProtocol], bool]] = None) -> Iterator[RecordProtocol]:
        raise NotImplementedError

    def vectors_for(self, record_ids: Sequence[int]) -> Dict[int, np.ndarray]:
        """Векторы существующих id; отсутствующие id пропускаются."""
        raise NotImplementedError

    def tier_counts(self) -> Dict[str, int]: raise NotImplementedError

    def subscribe(self, observer: StoreObserver) -> None: raise NotImplementedError

    def unsubscribe(self, observer: StoreObserver) -> None: raise NotImplementedError

    def get_storage_info(self) -> Dict[str, Any]:
        """Получить детальную информацию и статистику хранилища."""
        raise NotImplementedError

    @property
    def list_tiers(self) -> List[str]: raise NotImplementedError
