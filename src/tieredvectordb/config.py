"""Configuration models for the engine, the graph index and the server."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "TVDB_"


class GraphIndexConfig(BaseModel):
    """Tuning knobs of the graph index. Recall and latency depend on these, none are contractual."""

    max_degree: int = Field(default=32, ge=2, description="R: bound on each node's neighbor list")
    search_list_size: int = Field(default=64, ge=1, description="L: candidate frontier size")
    alpha: float = Field(default=1.2, ge=1.0, description="Diversity factor used when pruning")
    max_visits: Optional[int] = Field(default=None, ge=1, description="Visited-set bound per search")
    stale_threshold: float = Field(default=0.2, gt=0.0, le=1.0,
                                   description="Tombstone fraction that marks the index degraded")
    cancel_check_interval: int = Field(default=1000, ge=1)
    seed: Optional[int] = None

    model_config = {"validate_assignment": True, "extra": "ignore"}

    def visit_budget(self, search_list_size: Optional[int] = None) -> int:
        if self.max_visits is not None:
            return self.max_visits
        return 10 * (search_list_size or self.search_list_size) + 100


class EngineSettings(BaseModel):
    """Runtime configuration of a TieredVectorDB instance."""

    dimension: int = Field(default=768, ge=1)
    metric: str = "cosine"
    index: GraphIndexConfig = Field(default_factory=GraphIndexConfig)
    hot_from_year: Optional[int] = None
    archive_dir: Optional[Path] = None
    archive_prefix: str = "embeddings_archive"
    max_scan_size: int = Field(default=100_000, ge=1)
    migration_batch_size: int = Field(default=1000, ge=1)
    embedding_url: Optional[str] = None
    embedding_model: str = "nomic-embed-text"
    embedding_timeout: float = Field(default=30.0, gt=0)

    model_config = {"validate_assignment": True, "extra": "ignore"}

    @field_validator("metric")
    @classmethod
    def _check_metric(cls, value: str) -> str:
        value = value.lower()
        if value not in ("cosine", "euclidean", "dot"):
            raise ValueError(f"unsupported metric {value!r}")
        return value

    @field_validator("archive_dir", mode="before")
    @classmethod
    def _expand_archive_dir(cls, value: Any) -> Optional[Path]:
        if value is None or value == "":
            return None
        return Path(value).expanduser()

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineSettings":
        """Defaults, then ``TVDB_*`` environment variables, then explicit overrides."""
        data: Dict[str, Any] = _load_env_overrides()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)

    def to_env(self) -> Dict[str, str]:
        """Inverse of ``from_env`` for the fields that are set."""
        env: Dict[str, str] = {}
        for suffix, name in _ENV_FIELDS.items():
            value = getattr(self, name)
            if value is not None:
                env[f"{ENV_PREFIX}{suffix}"] = str(value)
        for suffix, name in _ENV_INDEX_FIELDS.items():
            env[f"{ENV_PREFIX}{suffix}"] = str(getattr(self.index, name))
        return env


_ENV_FIELDS = {
    "DIMENSION": "dimension",
    "METRIC": "metric",
    "HOT_FROM_YEAR": "hot_from_year",
    "ARCHIVE_DIR": "archive_dir",
    "ARCHIVE_PREFIX": "archive_prefix",
    "MAX_SCAN_SIZE": "max_scan_size",
    "MIGRATION_BATCH_SIZE": "migration_batch_size",
    "EMBEDDING_URL": "embedding_url",
    "EMBEDDING_MODEL": "embedding_model",
    "EMBEDDING_TIMEOUT": "embedding_timeout",
}

_ENV_INDEX_FIELDS = {
    "MAX_DEGREE": "max_degree",
    "SEARCH_LIST_SIZE": "search_list_size",
    "ALPHA": "alpha",
}


def _load_env_overrides() -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for suffix, field in _ENV_FIELDS.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value is not None:
            data[field] = value
    index: Dict[str, Any] = {}
    for suffix, field in _ENV_INDEX_FIELDS.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value is not None:
            index[field] = value
    if index:
        data["index"] = index
    return data
