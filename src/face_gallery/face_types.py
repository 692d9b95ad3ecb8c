from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np

UNKNOWN_IDENTITY = "unknown"

EmbeddingLike = Union[np.ndarray, Iterable[float]]


def as_embedding(values: EmbeddingLike) -> np.ndarray:
    """Return a read-only float32 vector; rejects empty or non 1-D input."""
    embedding = np.array(values, dtype=np.float32)
    if embedding.ndim != 1:
        raise ValueError(f"Embedding must be 1-D, got shape {embedding.shape}")
    if embedding.size == 0:
        raise ValueError("Embedding must not be empty")
    embedding.setflags(write=False)
    return embedding


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    if a.shape != b.shape:
        raise ValueError(f"Embedding shape mismatch: {a.shape} vs {b.shape}")
    diff = a.astype(np.float64) - b.astype(np.float64)
    return float(np.linalg.norm(diff))


@dataclass(frozen=True)
class FaceRegion:
    # (x1, y1, x2, y2) bounding box in image coordinates.
    bbox: Tuple[int, int, int, int]
    # Detector confidence; backends without a score report 1.0.
    score: float = 1.0
    # Optional 2D facial keypoints used by keypoint-based alignment.
    landmarks: Optional[List[Tuple[float, float]]] = None


@dataclass(frozen=True)
class MatchResult:
    # Winning identity name, or UNKNOWN_IDENTITY.
    identity: str
    # Number of reference embeddings closer than the threshold.
    hits: int
    # Mean of the retained distances; None when there are no hits.
    avg_distance: Optional[float]
    # Retained distances for the winning identity.
    distances: Tuple[float, ...] = ()

    @property
    def matched(self) -> bool:
        return self.hits > 0


@dataclass(frozen=True)
class Label:
    region: FaceRegion
    name: str
    match: MatchResult

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        return self.region.bbox
