import logging
from typing import Callable, Optional, Sequence

import numpy as np
import requests

from ..exceptions import DimensionMismatch, EmbeddingUnavailable
from ..interfaces.embedding import EmbeddingSource
from .vector import as_vector


class OllamaEmbeddingSource(EmbeddingSource):
    """Embeddings from an Ollama server (``POST /api/embeddings``)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._dimension = dimension
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/embeddings"

    def embed(self, text: str) -> np.ndarray:
        """
        Raises:
            EmbeddingUnavailable: server unreachable, HTTP error or malformed reply
            DimensionMismatch: the model returned a vector of the wrong length
        """
        payload = {"model": self.model, "prompt": text}
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except requests.RequestException as exc:
            self.logger.error(f"Embedding request to {self.endpoint} failed: {exc}")
            raise EmbeddingUnavailable(f"ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingUnavailable(f"ollama response was not valid JSON: {exc}") from exc

        embedding = result.get("embedding") if isinstance(result, dict) else None
        if not isinstance(embedding, (list, tuple)) or not embedding:
            raise EmbeddingUnavailable(f"ollama response missing embedding for model {self.model}")
        if len(embedding) != self._dimension:
            raise DimensionMismatch(self._dimension, len(embedding), what=f"embedding from {self.model}")
        return as_vector(embedding, self._dimension)


class CallableEmbeddingSource(EmbeddingSource):
    """Wraps any ``text -> sequence of floats`` function."""

    def __init__(self, fn: Callable[[str], Sequence[float]], dimension: int):
        self._fn = fn
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> np.ndarray:
        try:
            values = self._fn(text)
        except (RuntimeError, OSError, ValueError) as exc:
            raise EmbeddingUnavailable(str(exc)) from exc
        return as_vector(values, self._dimension)
