from typing import Protocol

import numpy as np
from typing_extensions import runtime_checkable


@runtime_checkable
class EmbeddingSource(Protocol):
    """Opaque producer of fixed-dimension embeddings."""

    @property
    def dimension(self) -> int: ...

    def embed(self, text: str) -> np.ndarray: ...
