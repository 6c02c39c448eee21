"""
HTTP client for the TieredVectorDB REST API.

Errors reported by the server are raised as the matching engine exception
when the server names one, otherwise as ``requests.HTTPError``.
"""

from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence

import requests

from .. import exceptions

_ERRORS = {
    "NotFound": lambda detail: exceptions.NotFound(detail.get("record_id"), detail.get("kind", "record")),
    "AlreadyExists": lambda detail: exceptions.AlreadyExists(detail.get("record_id")),
    "EmbeddingUnavailable": lambda detail: exceptions.EmbeddingUnavailable(detail.get("error", "")),
    "UnknownMetric": lambda detail: exceptions.UnknownMetric(detail.get("error", "")),
}


class TieredVectorDBClient:
    """Simple client for TieredVectorDB REST API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        """Initialize the client with base URL."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        if response.status_code >= 400:
            detail = _detail(response)
            factory = _ERRORS.get(detail.get("error_type", ""))
            if factory is not None:
                raise factory(detail)
        response.raise_for_status()
        return response.json()

    def health_check(self) -> Dict[str, Any]:
        """Check API health status."""
        return self._request("GET", "/health")

    def insert(self, record_id: int, values: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": record_id, "values": list(values), "metadata": metadata or {}}
        if timestamp is not None:
            data["timestamp"] = timestamp.isoformat()
        return self._request("POST", "/vectors", json=data)

    def update(self, record_id: int, values: Sequence[float], timestamp: Optional[datetime] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"values": list(values)}
        if timestamp is not None:
            data["timestamp"] = timestamp.isoformat()
        if metadata is not None:
            data["metadata"] = metadata
        return self._request("PUT", f"/vectors/{record_id}", json=data)

    def get(self, record_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/vectors/{record_id}")

    def delete(self, record_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/vectors/{record_id}")

    def search(self, query: Sequence[float], k: int = 10, metric: Optional[str] = None,
               deadline_ms: Optional[float] = None) -> Dict[str, Any]:
        """Top-k search across all tiers."""
        data: Dict[str, Any] = {"query": list(query), "k": k}
        if metric is not None:
            data["metric"] = metric
        if deadline_ms is not None:
            data["deadline_ms"] = deadline_ms
        return self._request("POST", "/search", json=data)

    def search_text(self, text: str, k: int = 10, metric: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"text": text, "k": k}
        if metric is not None:
            data["metric"] = metric
        return self._request("POST", "/search/text", json=data)

    def explain_query(self, k: int = 10, metric: Optional[str] = None) -> Dict[str, Any]:
        """Get execution plan explanation for a query."""
        return self._request("POST", "/query/explain", json={"k": k, "metric": metric})

    def list_tiers(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/tiers")

    def migrate_tier(self, tier_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/tiers/{tier_id}/migrate")

    def reclassify(self, hot_from_year: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", "/tiers/reclassify", json={"hot_from_year": hot_from_year})

    def repair_index(self) -> Dict[str, Any]:
        return self._request("POST", "/index/repair")

    def stats(self) -> Dict[str, Any]:
        return self._request("GET", "/stats")

    def set_log_level(self, level: str) -> Dict[str, Any]:
        return self._request("POST", "/log/level", json={"level": level.upper()})


def _detail(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, dict) else {}
