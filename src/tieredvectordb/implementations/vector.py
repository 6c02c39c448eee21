from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Any, Sequence, Optional, List, Iterator

import numpy as np

from ..exceptions import DimensionMismatch
from ..interfaces.vector import RecordProtocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_vector(values: Sequence[float], dimension: Optional[int] = None) -> np.ndarray:
    """Copy ``values`` into a read-only 1-D float32 array, checking the dimension."""
    arr = np.array(values, dtype=np.float32)
    if arr.ndim != 1:
        raise DimensionMismatch(dimension or 0, int(arr.size), what=f"vector of shape {arr.shape}")
    if dimension is not None and arr.shape[0] != dimension:
        raise DimensionMismatch(dimension, int(arr.shape[0]))
    arr.setflags(write=False)
    return arr


class Record(RecordProtocol):
    """Immutable stored embedding. Updates produce a new Record."""

    def __init__(self, id: int, vector: Sequence[float], created_at: Optional[datetime] = None,
                 updated_at: Optional[datetime] = None, tier: str = "",
                 metadata: Optional[Mapping[str, Any]] = None) -> None:
        self._id: int = int(id)
        self._vector: np.ndarray = vector if _is_frozen_f32(vector) else as_vector(vector)
        self._created_at: datetime = created_at or utcnow()
        self._updated_at: Optional[datetime] = updated_at
        self._tier: str = tier
        self._metadata: Mapping[str, Any] = dict(metadata or {})

    @property
    def id(self) -> int:
        return self._id

    @property
    def vector(self) -> np.ndarray:
        return self._vector

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def updated_at(self) -> Optional[datetime]:
        return self._updated_at

    @property
    def tier(self) -> str:
        return self._tier

    @property
    def metadata(self) -> Mapping[str, Any]:
        return self._metadata

    def dimension(self) -> int:
        return int(self._vector.shape[0])

    def with_vector(self, vector: np.ndarray, updated_at: datetime,
                    metadata: Optional[Mapping[str, Any]] = None) -> "Record":
        return Record(self._id, vector, self._created_at, updated_at, self._tier,
                      self._metadata if metadata is None else metadata)

    def with_tier(self, tier: str) -> "Record":
        return Record(self._id, self._vector, self._created_at, self._updated_at, tier, self._metadata)

    def same_bytes(self, other: RecordProtocol) -> bool:
        return self._vector.tobytes() == np.asarray(other.vector, dtype=np.float32).tobytes()

    def to_dict(self) -> dict:
        return {
            "id": self._id,
            "vector": self._vector.tolist(),
            "created_at": self._created_at.isoformat(),
            "updated_at": self._updated_at.isoformat() if self._updated_at else None,
            "tier": self._tier,
            "metadata": dict(self._metadata),
        }

    def __repr__(self) -> str:
        return f"Record(id={self.id}, dim={self.dimension()}, tier={self.tier!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return False
        return (
            self.id == other.id
            and self.same_bytes(other)
            and self.created_at == other.created_at
            and self.updated_at == other.updated_at
            and self.tier == other.tier
            and self.metadata == other.metadata
        )


def _is_frozen_f32(value: Any) -> bool:
    return (
        isinstance(value, np.ndarray)
        and value.dtype == np.float32
        and value.ndim == 1
        and not value.flags.writeable
    )


@dataclass(frozen=True)
class Neighbor:
    id: int
    distance: float


@dataclass(frozen=True)
class SearchResult:
    id: int
    distance: float
    tier: str


@dataclass
class Neighbors:
    """Ranked output of one index search, ascending distance then ascending id."""

    items: List[Neighbor] = field(default_factory=list)
    partial: bool = False
    degraded: bool = False
    visited: int = 0

    def ids(self) -> List[int]:
        return [n.id for n in self.items]

    def __iter__(self) -> Iterator[Neighbor]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, i: int) -> Neighbor:
        return self.items[i]


@dataclass
class QueryResult:
    """Merged cross-tier answer of the query router."""

    results: List[SearchResult] = field(default_factory=list)
    partial: bool = False
    degraded: bool = False
    plan: List[dict] = field(default_factory=list)

    def ids(self) -> List[int]:
        return [r.id for r in self.results]

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)
