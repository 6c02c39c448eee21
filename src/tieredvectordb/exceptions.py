"""
Error taxonomy for TieredVectorDB.

Core operations raise these and never retry; retry policy belongs to the caller.
"""

from typing import Any, Optional


class VectorDBError(Exception):
    """Base class for every error raised by TieredVectorDB."""


class DimensionMismatch(VectorDBError, ValueError):
    def __init__(self, expected: int, actual: int, what: str = "vector"):
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what} has dimension {actual}, expected {expected}")


class UnknownMetric(VectorDBError, ValueError):
    def __init__(self, metric: Any):
        self.metric = metric
        super().__init__(f"unknown metric: {metric!r} (use cosine, euclidean or dot)")


class NotFound(VectorDBError, KeyError):
    def __init__(self, record_id: Any, kind: str = "record"):
        self.record_id = record_id
        self.kind = kind
        super().__init__(record_id)

    def __str__(self) -> str:
        return f"{self.kind} {self.record_id} not found"


class AlreadyExists(VectorDBError):
    def __init__(self, record_id: int, tier: Optional[str] = None):
        self.record_id = record_id
        self.tier = tier
        where = f" in tier {tier}" if tier else ""
        super().__init__(f"record {record_id} already exists{where}")


class BuildError(VectorDBError):
    """Index construction rejected its input (too few records, mixed dimensions)."""


class IndexClosed(VectorDBError):
    """Operation attempted on a closed index."""


class IndexDegraded(VectorDBError, RuntimeWarning):
    """
    Advisory: the index answers queries but recall may be reduced.

    Emitted with ``warnings.warn``; search never raises it.
    """


class EmbeddingUnavailable(VectorDBError):
    """The embedding source failed to produce a vector."""


class MigrationPartialFailure(VectorDBError):
    """Some records failed to copy or verify; their hot copies were retained."""

    def __init__(self, report: Any):
        self.report = report
        super().__init__(
            f"migration of tier {report.tier_id} moved {report.moved_count} records, "
            f"{len(report.failed_ids)} failed: {sorted(report.failed_ids)[:10]}"
        )
