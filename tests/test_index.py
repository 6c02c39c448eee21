import warnings

import numpy as np
import pytest

from conftest import ts
from tieredvectordb.config import GraphIndexConfig
from tieredvectordb.exceptions import BuildError, DimensionMismatch, IndexClosed, IndexDegraded
from tieredvectordb.implementations.cancellation import CancellationToken, Deadline
from tieredvectordb.implementations.index import GraphIndex, IndexState
from tieredvectordb.implementations.storage_engine_in_memory import VectorStoreInMemory
from tieredvectordb.implementations.vector import Record


@pytest.fixture
def config():
    return GraphIndexConfig(max_degree=12, search_list_size=40, seed=1)


@pytest.fixture
def built_index(populated_store, config):
    index = GraphIndex(populated_store, "cosine", config)
    index.build(populated_store.scan())
    return index


def recall(approx, exact):
    return len(set(approx.ids()) & set(exact.ids())) / max(1, len(exact))


@pytest.mark.parametrize("metric", ["cosine", "euclidean", "dot"])
def test_recall_against_exact(populated_store, config, metric):
    index = GraphIndex(populated_store, metric, config)
    index.build(populated_store.scan())
    queries = np.random.default_rng(3).standard_normal((20, 16))

    scores = []
    for q in queries:
        approx = index.search(q, 10)
        exact = index.exact_search(q, 10)
        scores.append(recall(approx, exact))
    assert np.mean(scores) >= 0.9


def test_results_sorted_by_distance_then_id(built_index, populated_store):
    result = built_index.search(populated_store.get(0).vector, 15)
    keys = [(n.distance, n.id) for n in result]
    assert keys == sorted(keys)
    assert result[0].id == 0


def test_ties_broken_by_ascending_id():
    store = VectorStoreInMemory(4)
    index = GraphIndex(store, "cosine", GraphIndexConfig(seed=0))
    vectors = {
        9: [1.0, 0.0, 0.0, 0.0],
        3: [1.0, 0.0, 0.0, 0.0],
        6: [1.0, 0.0, 0.0, 0.0],
        1: [0.0, 1.0, 0.0, 0.0],
        2: [0.0, 0.0, 1.0, 0.0],
    }
    for rid, v in vectors.items():
        index.insert(store.put(rid, v, ts(2024)))

    result = index.search([1.0, 0.0, 0.0, 0.0], 3)
    assert result.ids() == [3, 6, 9]


def test_degree_bound_and_no_self_loops(built_index, config):
    for node in range(300):
        neighbors = built_index.neighbors(node)
        assert len(neighbors) <= config.max_degree
        assert node not in neighbors


def test_build_requires_two_records(populated_store):
    index = GraphIndex(populated_store)
    with pytest.raises(BuildError):
        index.build([populated_store.get(0)])
    with pytest.raises(BuildError):
        index.build([])


def test_build_rejects_wrong_dimension(populated_store):
    index = GraphIndex(populated_store)
    bad = Record(1000, np.ones(8), created_at=ts(2024), tier="2024")
    with pytest.raises(BuildError):
        index.build([populated_store.get(0), bad])


def test_incremental_insert_without_build(config):
    store = VectorStoreInMemory(16)
    index = GraphIndex(store, "euclidean", config)
    data = np.random.default_rng(11).standard_normal((150, 16))
    for i, v in enumerate(data):
        index.insert(store.put(i, v, ts(2024)))
    assert index.state is IndexState.READY
    assert len(index) == 150

    hits = 0
    for i in range(0, 150, 10):
        hits += index.search(data[i], 1).ids() == [i]
    assert hits >= 14


def test_removed_node_never_returned(built_index, populated_store):
    query = populated_store.get(17).vector
    assert built_index.search(query, 1).ids() == [17]

    built_index.remove(17)
    assert 17 not in built_index
    assert 17 in built_index.tombstones()
    for k in (1, 10, 50):
        assert 17 not in built_index.search(query, k).ids()


def test_deleted_from_store_is_passed_through(built_index, populated_store):
    query = populated_store.get(42).vector
    populated_store.delete(42)
    result = built_index.search(query, 10)
    assert 42 not in result.ids()
    assert len(result) == 10


def test_tombstones_degrade_and_repair_restores(built_index, populated_store):
    removed = list(range(0, 300, 4))
    for rid in removed:
        built_index.remove(rid)
    assert built_index.state is IndexState.DEGRADED
    assert built_index.is_repair_required()

    with pytest.warns(IndexDegraded):
        result = built_index.search(populated_store.get(1).vector, 5)
    assert result.degraded
    assert not set(result.ids()) & set(removed)

    assert built_index.repair() == len(removed)
    assert built_index.state is IndexState.READY
    assert not built_index.tombstones()
    assert len(built_index) == 300 - len(removed)
    for node in range(300):
        assert not set(built_index.neighbors(node)) & set(removed)

    exact = built_index.exact_search(populated_store.get(1).vector, 10)
    approx = built_index.search(populated_store.get(1).vector, 10)
    assert recall(approx, exact) >= 0.8


def test_cancelled_build_leaves_degraded_index(populated_store, config):
    token = CancellationToken()
    token.cancel()
    index = GraphIndex(populated_store, "cosine", config)
    index.build(populated_store.scan(), cancel=token)

    assert index.state is IndexState.DEGRADED
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", IndexDegraded)
        assert len(index.search(populated_store.get(5).vector, 3)) >= 1

    index.repair()
    assert index.state is IndexState.READY
    assert len(index) == 300


def test_expired_deadline_returns_partial(built_index, populated_store):
    expired = Deadline(0.0)
    result = built_index.search(populated_store.get(3).vector, 10, deadline=expired)
    assert result.partial
    assert len(result) <= 10


def test_exact_search_max_scan(built_index, populated_store):
    result = built_index.exact_search(populated_store.get(3).vector, 5, max_scan=10)
    assert result.partial
    assert result.visited == 10


def test_exact_search_cancel(built_index, populated_store):
    token = CancellationToken()
    token.cancel()
    result = built_index.exact_search(populated_store.get(3).vector, 5, cancel=token)
    assert result.partial
    assert len(result) == 0


def test_query_dimension_mismatch(built_index):
    with pytest.raises(DimensionMismatch):
        built_index.search(np.ones(3), 5)


def test_closed_index_rejects_use(built_index):
    built_index.close()
    assert built_index.state is IndexState.CLOSED
    with pytest.raises(IndexClosed):
        built_index.search(np.ones(16), 5)


def test_empty_index_search(populated_store):
    index = GraphIndex(populated_store)
    assert index.search(np.ones(16), 5).ids() == []
    assert index.state is IndexState.EMPTY


def test_index_info(built_index):
    info = built_index.get_index_info()
    assert info["state"] == "ready"
    assert info["nodes"] == 300
    assert info["metric"] == "cosine"
    assert 0 < info["avg_degree"] <= 12


def test_exact_search_two_dimensional():
    store = VectorStoreInMemory(2)
    for rid, v in [(1, (1.0, 0.0)), (2, (0.0, 1.0)), (3, (-1.0, 0.0)), (4, (0.9, 0.1))]:
        store.put(rid, v, ts(2024))
    index = GraphIndex(store, "cosine")
    index.build(store.scan())

    exact = index.exact_search([1.0, 0.0], 2)
    assert exact.ids() == [1, 4]
    assert exact[0].distance == pytest.approx(0.0, abs=1e-7)
    assert exact[1].distance == pytest.approx(0.0061, abs=1e-4)
    assert index.search([1.0, 0.0], 2).ids() == [1, 4]


def test_exact_search_skips_tombstoned_nodes():
    store = VectorStoreInMemory(2)
    for rid, v in [(1, (1.0, 0.0)), (2, (0.0, 1.0)), (3, (-1.0, 0.0)), (4, (0.9, 0.1))]:
        store.put(rid, v, ts(2024))
    index = GraphIndex(store, "cosine")
    index.build(store.scan())

    index.remove(1)
    assert store.exists(1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", IndexDegraded)
        approx = index.search([1.0, 0.0], 2)
    exact = index.exact_search([1.0, 0.0], 2)
    assert exact.ids() == [4, 2]
    assert approx.ids() == exact.ids()

    index.repair()
    assert index.withdrawn() == {1}
    assert index.exact_search([1.0, 0.0], 2).ids() == [4, 2]

    index.insert(store.get(1))
    assert index.withdrawn() == set()
    assert index.exact_search([1.0, 0.0], 2).ids() == [1, 4]

    index.remove(1)
    store.delete(1)
    index.repair()
    assert index.withdrawn() == set()
