from typing import Protocol, Iterable, Optional, Dict, Any

import numpy as np
from typing_extensions import runtime_checkable

from .vector import RecordProtocol


@runtime_checkable
class IndexProtocol(Protocol):
    def build(self, records: Iterable[RecordProtocol], cancel: Optional[Any] = None) -> None: ...
    def insert(self, record: RecordProtocol) -> None: ...
    def remove(self, record_id: int) -> None: ...
    def search(self, query: np.ndarray, k: int, search_list_size: Optional[int] = None,
               deadline: Optional[Any] = None) -> Any: ...
    def exact_search(self, query: np.ndarray, k: int, deadline: Optional[Any] = None,
                     cancel: Optional[Any] = None, max_scan: Optional[int] = None) -> Any: ...
    def repair(self) -> int: ...
    def is_repair_required(self) -> bool: ...
    def close(self) -> None: ...
    def get_index_info(self) -> Dict[str, Any]: ...
