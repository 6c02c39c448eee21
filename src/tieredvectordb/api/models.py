"""
Pydantic models for TieredVectorDB REST API.

This module defines the request and response models used by the REST API.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class VectorCreateRequest(BaseModel):
    id: int = Field(..., ge=0, description="Record id (unique across all tiers)")
    values: List[float] = Field(..., description="Embedding as list of floats")
    timestamp: Optional[datetime] = Field(default=None, description="created_at; defaults to now")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata")


class VectorUpdateRequest(BaseModel):
    values: List[float] = Field(..., description="New embedding")
    timestamp: Optional[datetime] = Field(default=None, description="updated_at; defaults to now")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Replaces metadata if given")


class RecordResponse(BaseModel):
    id: int
    values: List[float]
    created_at: datetime
    updated_at: Optional[datetime] = None
    tier: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    query: List[float] = Field(..., description="Query embedding")
    k: int = Field(10, ge=1, le=1000, description="Number of results to return")
    metric: Optional[str] = Field(default=None, description="cosine, euclidean or dot; defaults to the engine metric")
    deadline_ms: Optional[float] = Field(default=None, gt=0, description="Return partial results after this long")
    search_list_size: Optional[int] = Field(default=None, ge=1, description="Graph search frontier size")


class TextSearchRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Text to embed and search for")
    k: int = Field(10, ge=1, le=1000)
    metric: Optional[str] = None
    deadline_ms: Optional[float] = Field(default=None, gt=0)


class SearchResultItem(BaseModel):
    id: int
    distance: float
    tier: str


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    total_results: int
    partial: bool = False
    degraded: bool = False
    plan: List[Dict[str, Any]] = Field(default_factory=list)
    execution_time_ms: Optional[float] = None


class ExplainRequest(BaseModel):
    k: int = Field(10, ge=1, le=1000)
    metric: Optional[str] = None


class MigrationResponse(BaseModel):
    tier_id: str
    moved_count: int
    failed_ids: List[int] = Field(default_factory=list)
    cancelled: bool = False
    direction: str = "archive"


class ReclassifyRequest(BaseModel):
    hot_from_year: Optional[int] = Field(default=None, description="First hot year; defaults to the configured boundary")


class ReclassifyResponse(BaseModel):
    hot_from_year: int
    moved_count: int
    archived: Dict[str, MigrationResponse] = Field(default_factory=dict)
    promoted: Dict[str, MigrationResponse] = Field(default_factory=dict)


class TierInfo(BaseModel):
    tier_id: str
    location: str
    hot_records: int
    archived_records: int
    record_count: int
    backend: Dict[str, str]
    queryable_directly: bool = True
    migrating: bool = False
    last_migrated_at: Optional[str] = None
    index_state: Optional[str] = None


class StatsResponse(BaseModel):
    record_count: int
    hot_records: int
    archived_records: int
    tier_counts: Dict[str, int]
    index_state: str
    dimension: int
    metric: str
    hot_from_year: int
    embedding: bool


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Current timestamp")
    index_state: str = Field(..., description="Worst index state across hot tiers")


class LogLevelRequest(BaseModel):
    level: LogLevel


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error message")
    error_type: Optional[str] = Field(default=None, description="Type of error")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error details")
