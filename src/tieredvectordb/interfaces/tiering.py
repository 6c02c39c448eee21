"""
Интерфейсы ярусного хранения для TieredVectorDB.

ArchivalBackend хранит колоночные пакеты (id, vector, timestamps) архивных
ярусов с произвольным доступом по id. TierManager классифицирует записи по
ярусам и переносит их между горячим хранилищем и архивом.
"""

from typing import Protocol, Callable, Iterator, Iterable, List, Optional, Dict, Any, Sequence

from typing_extensions import runtime_checkable

from .vector import RecordProtocol


@runtime_checkable
class ArchivalBackend(Protocol):
    """Protocol-интерфейс архивного хранилища."""

    @property
    def descriptor(self) -> Any:
        """Описание бэкенда (тип и расположение)."""
        raise NotImplementedError

    def write_batch(self, tier_id: str, records: Sequence[RecordProtocol]) -> None:
        """
        Записать пакет записей яруса.

        Args:
            tier_id: Идентификатор яруса
            records: Записи для записи
        """
        raise NotImplementedError

    def read(self, tier_id: str, record_id: int) -> Optional[RecordProtocol]:
        """Прочитать запись по id, None если нет."""
        raise NotImplementedError

    def scan(self, tier_id: str, batch_size: int = 1000) -> Iterator[Any]:
        """Последовательно читать ярус колоночными пакетами."""
        raise NotImplementedError

    def delete(self, tier_id: str, record_ids: Iterable[int]) -> int:
        """Удалить записи яруса, вернуть число удаленных."""
        raise NotImplementedError

    def ids(self, tier_id: str) -> List[int]: raise NotImplementedError

    def list_tiers(self) -> List[str]: raise NotImplementedError

    def count(self, tier_id: str) -> int: raise NotImplementedError


@runtime_checkable
class TierManagerProtocol(Protocol):
    """Protocol-интерфейс менеджера ярусов."""

    def classify(self, record: RecordProtocol) -> str:
        """Определить ярус записи."""
        raise NotImplementedError

    def migrate(self, tier_id: str, target_backend: Optional[ArchivalBackend] = None,
                cancel: Optional[Any] = None) -> Any:
        """
        Перенести все записи яруса в архив.

        Returns:
            MigrationReport с числом перенесенных записей и списком неудачных id
        """
        raise NotImplementedError

    def reclassify_boundary(self, hot_from_year: Optional[int] = None) -> Any:
        """Сдвинуть границу горячего яруса; повторный запуск без изменений ничего не делает."""
        raise NotImplementedError

    def archived_tiers(self) -> List[str]: raise NotImplementedError

    def hot_tiers(self) -> List[str]: raise NotImplementedError

    def get_tier_info(self) -> Dict[str, Any]:
        """Получить информацию о всех ярусах."""
        raise NotImplementedError
