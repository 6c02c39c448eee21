"""Lock helpers shared by the graph index and the tier manager."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List


class StripedLocks:
    """
    Fixed pool of locks keyed by integer id.

    ``hold(ids)`` takes every stripe covering ``ids`` in ascending stripe order,
    so two writers locking overlapping id sets cannot deadlock.
    """

    def __init__(self, stripes: int = 256) -> None:
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def stripe(self, key: int) -> int:
        return int(key) % len(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[int]) -> Iterator[None]:
        order = sorted({self.stripe(k) for k in keys})
        acquired: List[threading.Lock] = []
        try:
            for s in order:
                lock = self._locks[s]
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()
