"""
Archival backends for cold tiers.

Records of an archived tier are written in columnar batches (id, vector,
created_at, updated_at, metadata) and stay addressable by id, so the query
router can scan them and ``get`` can serve them without promotion.
"""

import bisect
import json
import logging
import os
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq

from ..interfaces.tiering import ArchivalBackend
from ..interfaces.vector import RecordProtocol
from .vector import Record, as_vector


@dataclass(frozen=True)
class BackendDescriptor:
    kind: str
    location: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "location": self.location}


@dataclass
class RecordBatch:
    """Columnar slice of one archived tier."""

    tier_id: str
    ids: np.ndarray
    matrix: np.ndarray
    created_at: List[datetime] = field(default_factory=list)
    updated_at: List[Optional[datetime]] = field(default_factory=list)
    metadata: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ids)

    def select(self, mask: np.ndarray) -> "RecordBatch":
        rows = np.flatnonzero(mask).tolist()
        return RecordBatch(
            tier_id=self.tier_id,
            ids=self.ids[mask],
            matrix=self.matrix[mask],
            created_at=[self.created_at[i] for i in rows] if self.created_at else [],
            updated_at=[self.updated_at[i] for i in rows] if self.updated_at else [],
            metadata=[self.metadata[i] for i in rows] if self.metadata else [],
        )

    def records(self) -> Iterator[Record]:
        for pos, rid in enumerate(self.ids.tolist()):
            yield Record(
                rid,
                as_vector(self.matrix[pos]),
                self.created_at[pos] if self.created_at else None,
                self.updated_at[pos] if self.updated_at else None,
                self.tier_id,
                self.metadata[pos] if self.metadata else None,
            )

    @classmethod
    def from_records(cls, tier_id: str, records: Sequence[RecordProtocol]) -> "RecordBatch":
        return cls(
            tier_id=tier_id,
            ids=np.fromiter((r.id for r in records), dtype=np.int64, count=len(records)),
            matrix=np.stack([np.asarray(r.vector, dtype=np.float32) for r in records]),
            created_at=[r.created_at for r in records],
            updated_at=[r.updated_at for r in records],
            metadata=[dict(r.metadata) for r in records],
        )


class InMemoryArchivalBackend(ArchivalBackend):
    """Archive kept in process memory; used by tests and as the default external tier."""

    def __init__(self, name: str = "memory"):
        self._tiers: Dict[str, Dict[int, Record]] = {}
        self._lock = threading.RLock()
        self._descriptor = BackendDescriptor("memory", name)

    @property
    def descriptor(self) -> BackendDescriptor:
        return self._descriptor

    def write_batch(self, tier_id: str, records: Sequence[RecordProtocol]) -> None:
        copies = [
            Record(r.id, np.array(r.vector, dtype=np.float32), r.created_at, r.updated_at, tier_id, r.metadata)
            for r in records
        ]
        with self._lock:
            tier = self._tiers.setdefault(tier_id, {})
            for record in copies:
                tier[record.id] = record

    def read(self, tier_id: str, record_id: int) -> Optional[Record]:
        with self._lock:
            return self._tiers.get(tier_id, {}).get(int(record_id))

    def scan(self, tier_id: str, batch_size: int = 1000) -> Iterator[RecordBatch]:
        with self._lock:
            records = sorted(self._tiers.get(tier_id, {}).values(), key=lambda r: r.id)
        for start in range(0, len(records), batch_size):
            yield RecordBatch.from_records(tier_id, records[start:start + batch_size])

    def delete(self, tier_id: str, record_ids: Iterable[int]) -> int:
        with self._lock:
            tier = self._tiers.get(tier_id, {})
            removed = sum(1 for rid in record_ids if tier.pop(int(rid), None) is not None)
            if not tier:
                self._tiers.pop(tier_id, None)
            return removed

    def ids(self, tier_id: str) -> List[int]:
        with self._lock:
            return sorted(self._tiers.get(tier_id, {}))

    def list_tiers(self) -> List[str]:
        with self._lock:
            return sorted(self._tiers)

    def count(self, tier_id: str) -> int:
        with self._lock:
            return len(self._tiers.get(tier_id, {}))


class ParquetArchivalBackend(ArchivalBackend):
    """
    Archive as Parquet files, one directory per tier:
    ``<root>/<prefix>/<tier_id>/part-00000.parquet``.

    An in-memory ``id -> (part file, row)`` map gives random access by id. It
    is rebuilt from the id columns when the backend is opened. Row-group start
    offsets are kept per part so ``read`` decodes a single row group.
    """

    def __init__(self, root: Path, prefix: str = "embeddings_archive", dimension: Optional[int] = None,
                 compression: str = "snappy", row_group_size: int = 4096):
        self.root = Path(root)
        self.prefix = prefix
        self.dimension = dimension
        self.compression = compression
        self.row_group_size = row_group_size
        self._row_groups: Dict[Path, List[int]] = {}
        self._locations: Dict[str, Dict[int, Tuple[Path, int]]] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._load_locations()

    @property
    def base_path(self) -> Path:
        return self.root / self.prefix

    @property
    def descriptor(self) -> BackendDescriptor:
        return BackendDescriptor("external", str(self.base_path))

    def tier_path(self, tier_id: str) -> Path:
        return self.base_path / tier_id

    def _parts(self, tier_id: str) -> List[Path]:
        path = self.tier_path(tier_id)
        if not path.is_dir():
            return []
        return sorted(path.glob("part-*.parquet"))

    def _load_locations(self) -> None:
        for tier_dir in sorted(p for p in self.base_path.iterdir() if p.is_dir()):
            locations: Dict[int, Tuple[Path, int]] = {}
            for part in self._parts(tier_dir.name):
                with pq.ParquetFile(part) as pf:
                    ids = pf.read(columns=["id"]).column("id").to_pylist()
                    self._row_groups[part] = _row_group_starts(pf.metadata)
                for row, rid in enumerate(ids):
                    locations[rid] = (part, row)
            if locations:
                self._locations[tier_dir.name] = locations
        if self._locations:
            self.logger.info(
                f"Opened archive at {self.base_path}: "
                + ", ".join(f"{t}={len(ids)}" for t, ids in sorted(self._locations.items()))
            )

    def _to_table(self, records: Sequence[RecordProtocol]) -> pa.Table:
        matrix = np.stack([np.asarray(r.vector, dtype=np.float32) for r in records])
        width = self.dimension or matrix.shape[1]
        vectors = pa.FixedSizeListArray.from_arrays(pa.array(matrix.ravel(), type=pa.float32()), width)
        return pa.Table.from_arrays(
            [
                pa.array([r.id for r in records], type=pa.int64()),
                vectors,
                pa.array([r.created_at for r in records], type=pa.timestamp("us", tz="UTC")),
                pa.array([r.updated_at for r in records], type=pa.timestamp("us", tz="UTC")),
                pa.array([json.dumps(dict(r.metadata)) if r.metadata else None for r in records],
                         type=pa.string()),
            ],
            names=["id", "vector", "created_at", "updated_at", "metadata"],
        )

    def write_batch(self, tier_id: str, records: Sequence[RecordProtocol]) -> None:
        if not records:
            return
        table = self._to_table(records)
        with self._lock:
            tier_dir = self.tier_path(tier_id)
            tier_dir.mkdir(parents=True, exist_ok=True)
            parts = self._parts(tier_id)
            next_no = int(parts[-1].stem.split("-")[1]) + 1 if parts else 0
            part = tier_dir / f"part-{next_no:05d}.parquet"
            self._write_part(table, part)
            locations = self._locations.setdefault(tier_id, {})
            for row, record in enumerate(records):
                locations[record.id] = (part, row)
        self.logger.debug(f"Wrote {len(records)} records of tier {tier_id} to {part}")

    def _write_part(self, table: pa.Table, part: Path) -> None:
        """Write ``table`` to a temp file and swap it in; open readers keep the old file."""
        tmp = part.with_name(part.name + ".tmp")
        pq.write_table(table, tmp, compression=self.compression, row_group_size=self.row_group_size)
        os.replace(tmp, part)
        self._row_groups[part] = _row_group_starts(pq.read_metadata(part))

    def read(self, tier_id: str, record_id: int) -> Optional[Record]:
        with self._lock:
            location = self._locations.get(tier_id, {}).get(int(record_id))
            if location is None:
                return None
            part, row = location
            starts = self._row_groups[part]
            group = bisect.bisect_right(starts, row) - 1
            with pq.ParquetFile(part) as pf:
                table = pf.read_row_group(group).slice(row - starts[group], 1)
        return next(self._to_batch(tier_id, table).records())

    def _to_batch(self, tier_id: str, table: Any) -> RecordBatch:
        ids = np.asarray(table.column("id").to_numpy(), dtype=np.int64)
        vectors = table.column("vector")
        if isinstance(vectors, pa.ChunkedArray):
            vectors = vectors.combine_chunks()
        flat = vectors.flatten().to_numpy(zero_copy_only=False).astype(np.float32)
        matrix = flat.reshape(len(ids), -1) if len(ids) else np.empty((0, self.dimension or 0), np.float32)
        metadata = [json.loads(m) if m else {} for m in table.column("metadata").to_pylist()]
        return RecordBatch(
            tier_id=tier_id,
            ids=ids,
            matrix=matrix,
            created_at=table.column("created_at").to_pylist(),
            updated_at=table.column("updated_at").to_pylist(),
            metadata=metadata,
        )

    def scan(self, tier_id: str, batch_size: int = 1000) -> Iterator[RecordBatch]:
        """
        Stream the tier's live rows as of the moment the scan starts.

        Part files are opened up front, so rows deleted or rewritten while the
        scan runs do not disturb it. Rows shadowed by a later write are skipped.
        """
        with ExitStack() as stack:
            with self._lock:
                locations = dict(self._locations.get(tier_id, {}))
                files = [(part, stack.enter_context(open(part, "rb"))) for part in self._parts(tier_id)]
            for part, handle in files:
                offset = 0
                for rb in pq.ParquetFile(handle).iter_batches(batch_size=batch_size):
                    batch = self._to_batch(tier_id, pa.Table.from_batches([rb]))
                    keep = np.fromiter(
                        (locations.get(rid) == (part, offset + pos) for pos, rid in enumerate(batch.ids.tolist())),
                        dtype=bool,
                        count=len(batch),
                    )
                    offset += len(batch)
                    if not keep.all():
                        batch = batch.select(keep)
                    if len(batch):
                        yield batch

    def delete(self, tier_id: str, record_ids: Iterable[int]) -> int:
        """Drop rows by rewriting the part files that hold them."""
        with self._lock:
            locations = self._locations.get(tier_id, {})
            by_part: Dict[Path, List[int]] = {}
            for rid in record_ids:
                location = locations.pop(int(rid), None)
                if location is not None:
                    by_part.setdefault(location[0], []).append(location[1])
            for part, rows in by_part.items():
                table = pq.read_table(part)
                mask = np.ones(table.num_rows, dtype=bool)
                mask[rows] = False
                kept = table.filter(pa.array(mask))
                if kept.num_rows == 0:
                    part.unlink()
                    self._row_groups.pop(part, None)
                    remap: List[int] = []
                else:
                    self._write_part(kept, part)
                    remap = kept.column("id").to_pylist()
                old_rows = np.nonzero(mask)[0].tolist()
                for new_row, (rid, old_row) in enumerate(zip(remap, old_rows)):
                    if locations.get(rid) == (part, old_row):
                        locations[rid] = (part, new_row)
            if not locations:
                self._locations.pop(tier_id, None)
            removed = sum(len(rows) for rows in by_part.values())
        if removed:
            self.logger.info(f"Deleted {removed} records from archived tier {tier_id}")
        return removed

    def ids(self, tier_id: str) -> List[int]:
        with self._lock:
            return sorted(self._locations.get(tier_id, {}))

    def list_tiers(self) -> List[str]:
        with self._lock:
            return sorted(self._locations)

    def count(self, tier_id: str) -> int:
        with self._lock:
            return len(self._locations.get(tier_id, {}))


def _row_group_starts(metadata: Any) -> List[int]:
    starts, total = [], 0
    for i in range(metadata.num_row_groups):
        starts.append(total)
        total += metadata.row_group(i).num_rows
    return starts
