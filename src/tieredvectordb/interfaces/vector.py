from __future__ import annotations

from datetime import datetime
from typing import Protocol, Mapping, Any, Optional

import numpy as np
from typing_extensions import runtime_checkable


@runtime_checkable
class RecordProtocol(Protocol):
    id: int
    vector: np.ndarray
    created_at: datetime
    updated_at: Optional[datetime]
    tier: str
    metadata: Mapping[str, Any]

    def dimension(self) -> int:
        ...

