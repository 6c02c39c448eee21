import unittest
from datetime import datetime, timezone

import numpy as np

from tieredvectordb.exceptions import DimensionMismatch, NotFound
from tieredvectordb.implementations.storage_engine_in_memory import VectorStoreInMemory
from tieredvectordb.interfaces.storage_engine import VectorStore

T2020 = datetime(2020, 5, 1, tzinfo=timezone.utc)
T2023 = datetime(2023, 5, 1, tzinfo=timezone.utc)
T2024 = datetime(2024, 5, 1, tzinfo=timezone.utc)


class RecordingObserver:
    def __init__(self):
        self.puts = []
        self.deletes = []

    def on_put(self, record, previous):
        self.puts.append((record, previous))

    def on_delete(self, record):
        self.deletes.append(record)


class TestVectorStoreInMemory(unittest.TestCase):
    """Комплексные тесты для in-memory реализации хранилища."""

    def setUp(self):
        """Инициализация чистого хранилища перед каждым тестом."""
        self.storage = VectorStoreInMemory(3)
        self.observer = RecordingObserver()
        self.storage.subscribe(self.observer)

    def tearDown(self):
        """Очистка после каждого теста."""
        self.storage.clear_all()

    def test_initial_state(self):
        """Тест начального состояния хранилища."""
        self.assertIsInstance(self.storage, VectorStore)
        self.assertEqual(self.storage.storage_type, "in-memory")
        self.assertEqual(self.storage.total_records, 0)
        self.assertEqual(self.storage.storage_size, 0)
        self.assertEqual(self.storage.list_tiers, [])

    def test_put_and_get(self):
        """Новая запись получает created_at и ярус по году."""
        record = self.storage.put(1, [1.0, 2.0, 3.0], T2023, {"source": "post"})
        self.assertEqual(record.tier, "2023")
        self.assertEqual(record.created_at, T2023)
        self.assertIsNone(record.updated_at)

        stored = self.storage.get(1)
        np.testing.assert_array_equal(stored.vector, np.array([1.0, 2.0, 3.0], dtype=np.float32))
        self.assertEqual(stored.metadata, {"source": "post"})
        self.assertEqual(self.storage.total_records, 1)

    def test_put_existing_keeps_created_at_and_tier(self):
        """Повторный put заменяет вектор, но не меняет created_at и ярус."""
        self.storage.put(1, [1.0, 0.0, 0.0], T2020)
        record = self.storage.put(1, [0.0, 1.0, 0.0], T2024)
        self.assertEqual(record.created_at, T2020)
        self.assertEqual(record.updated_at, T2024)
        self.assertEqual(record.tier, "2020")
        self.assertEqual(self.storage.total_records, 1)

        _, previous = self.observer.puts[-1]
        np.testing.assert_array_equal(previous.vector, [1.0, 0.0, 0.0])

    def test_dimension_mismatch_rejected(self):
        """Вектор неверной размерности отклоняется, а не приводится."""
        with self.assertRaises(DimensionMismatch):
            self.storage.put(1, [1.0, 2.0], T2023)
        self.assertEqual(self.storage.total_records, 0)
        self.assertEqual(self.observer.puts, [])

    def test_get_and_delete_missing(self):
        with self.assertRaises(NotFound):
            self.storage.get(42)
        with self.assertRaises(NotFound):
            self.storage.delete(42)
        self.assertIsNone(self.storage.find(42))
        self.assertFalse(self.storage.exists(42))

    def test_delete_notifies(self):
        self.storage.put(1, [1.0, 2.0, 3.0], T2023)
        deleted = self.storage.delete(1)
        self.assertEqual(deleted.id, 1)
        self.assertEqual([r.id for r in self.observer.deletes], [1])
        self.assertFalse(self.storage.exists(1))

    def test_scan_is_lazy_and_restartable(self):
        for i, t in enumerate([T2020, T2023, T2023, T2024]):
            self.storage.put(i, [float(i), 0.0, 1.0], t)
        only_2023 = self.storage.scan(lambda r: r.tier == "2023")
        self.assertEqual(sorted(r.id for r in only_2023), [1, 2])
        self.assertEqual(list(only_2023), [])
        self.assertEqual(len(list(self.storage.scan())), 4)

    def test_vectors_for_skips_missing(self):
        self.storage.put(1, [1.0, 2.0, 3.0], T2023)
        out = self.storage.vectors_for([1, 2])
        self.assertEqual(list(out), [1])

    def test_tier_counts_and_info(self):
        self.storage.put(1, [1.0, 2.0, 3.0], T2020)
        self.storage.put(2, [1.0, 2.0, 3.0], T2023)
        self.storage.put(3, [1.0, 2.0, 3.0], T2023)
        self.assertEqual(self.storage.tier_counts(), {"2020": 1, "2023": 2})
        info = self.storage.get_storage_info()
        self.assertEqual(info["total_records"], 3)
        self.assertEqual(info["tiers"], ["2020", "2023"])
        self.assertEqual(info["dimension"], 3)

    def test_restore_preserves_timestamps(self):
        original = self.storage.put(5, [1.0, 2.0, 3.0], T2020)
        self.storage.delete(5)
        restored = self.storage.restore(original)
        self.assertEqual(restored, original)
        self.assertEqual(self.storage.get(5).created_at, T2020)

    def test_custom_classifier(self):
        storage = VectorStoreInMemory(1, classifier=lambda r: "all")
        self.assertEqual(storage.put(1, [1.0], T2020).tier, "all")

    def test_unsubscribe(self):
        self.storage.unsubscribe(self.observer)
        self.storage.put(1, [1.0, 2.0, 3.0], T2023)
        self.assertEqual(self.observer.puts, [])


if __name__ == '__main__':
    unittest.main()
