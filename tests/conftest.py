from datetime import datetime, timezone

import numpy as np
import pytest

from tieredvectordb.config import EngineSettings, GraphIndexConfig
from tieredvectordb.implementations.archival_backend import InMemoryArchivalBackend
from tieredvectordb.implementations.query_processor import QueryProcessor
from tieredvectordb.implementations.storage_engine_in_memory import VectorStoreInMemory
from tieredvectordb.implementations.vector import Record


def ts(year: int, month: int = 6, day: int = 1) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


class CorruptingBackend(InMemoryArchivalBackend):
    """Negates the vector of selected ids on write so read-back verification fails."""

    def __init__(self, corrupt_ids):
        super().__init__()
        self.corrupt_ids = set(corrupt_ids)

    def write_batch(self, tier_id, records):
        damaged = [
            Record(r.id, -np.asarray(r.vector), r.created_at, r.updated_at, r.tier, r.metadata)
            if r.id in self.corrupt_ids else r
            for r in records
        ]
        super().write_batch(tier_id, damaged)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def populated_store(rng):
    """300 random 16-d records, all in tier 2024."""
    store = VectorStoreInMemory(16)
    for i, v in enumerate(rng.standard_normal((300, 16)).astype(np.float32)):
        store.put(i, v, ts(2024))
    return store


@pytest.fixture
def engine():
    """
    8-d engine with hot boundary 2022:
    ids 1-4 in 2023, ids 5-6 in 2020, ids 7-9 in 2021.
    """
    settings = EngineSettings(
        dimension=8,
        hot_from_year=2022,
        migration_batch_size=2,
        index=GraphIndexConfig(max_degree=8, search_list_size=16, seed=7),
    )
    qp = QueryProcessor.from_settings(settings, auto_repair=False)
    gen = np.random.default_rng(5)
    years = {1: 2023, 2: 2023, 3: 2023, 4: 2023, 5: 2020, 6: 2020, 7: 2021, 8: 2021, 9: 2021}
    for record_id, year in years.items():
        qp.insert(record_id, gen.standard_normal(8), ts(year))
    yield qp
    qp.close()
