import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from conftest import ts
from tieredvectordb.config import EngineSettings, GraphIndexConfig
from tieredvectordb.implementations.query_processor import QueryProcessor


def make_engine():
    settings = EngineSettings(
        dimension=8,
        hot_from_year=2022,
        migration_batch_size=16,
        index=GraphIndexConfig(max_degree=12, search_list_size=32, seed=4),
    )
    return QueryProcessor.from_settings(settings, auto_repair=False)


def test_concurrent_inserts_and_searches():
    engine = make_engine()
    data = np.random.default_rng(21).standard_normal((400, 8))
    errors = []

    def writer(offset):
        for i in range(offset, 400, 4):
            engine.insert(i, data[i], ts(2023 + i % 2))

    def reader():
        gen = np.random.default_rng()
        for _ in range(50):
            result = engine.search(gen.standard_normal(8), 5)
            ids = result.ids()
            if len(ids) != len(set(ids)):
                errors.append(ids)

    with ThreadPoolExecutor(max_workers=6) as pool:
        futures = [pool.submit(writer, o) for o in range(4)] + [pool.submit(reader) for _ in range(2)]
        for f in futures:
            f.result()

    assert errors == []
    assert engine.store.total_records == 400
    hits = sum(engine.search(data[i], 1).ids() == [i] for i in range(0, 400, 20))
    assert hits >= 18
    engine.close()


def test_queries_during_migration_see_each_record_once():
    engine = make_engine()
    data = np.random.default_rng(22).standard_normal((200, 8))
    for i, v in enumerate(data):
        engine.insert(i, v, ts(2020 if i < 120 else 2024))

    stop = threading.Event()
    problems = []

    def reader():
        while not stop.is_set():
            # exact paths on both sides, so every record must come back
            result = engine.search(data[0], 200, metric="euclidean")
            ids = result.ids()
            if len(ids) != 200 or len(set(ids)) != 200:
                problems.append(len(ids))

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    report = engine.migrate_tier("2020")
    stop.set()
    for t in threads:
        t.join()

    assert report.moved_count == 120
    assert problems == []
    assert engine.search(data[0], 1).ids() == [0]
    engine.close()


def test_concurrent_updates_and_deletes():
    engine = make_engine()
    for i in range(100):
        engine.insert(i, np.full(8, float(i + 1)), ts(2024))

    def churn(i):
        engine.update(i, np.full(8, -float(i + 1)))
        if i % 2:
            engine.delete(i)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(churn, range(100)))

    assert engine.store.total_records == 50
    assert all(engine.get(i).vector[0] < 0 for i in range(0, 100, 2))
    engine.repair_indexes()
    assert engine.index.get("2024").tombstones() == set()
    engine.close()
