from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .embedding_store import EmbeddingStore
from .face_types import (
    UNKNOWN_IDENTITY,
    EmbeddingLike,
    MatchResult,
    as_embedding,
    euclidean_distance,
)
from .recognizer_config import RecognizerConfig
from .reporting import LogFn, emit


def _distances_below(
    query: np.ndarray, references: Sequence[np.ndarray], threshold: float
) -> List[float]:
    distances = (euclidean_distance(query, ref) for ref in references)
    return [d for d in distances if d < threshold]


def match_embedding(
    query: EmbeddingLike,
    store: EmbeddingStore,
    threshold: float,
    verbose: bool = False,
    log_fn: Optional[LogFn] = None,
) -> MatchResult:
    """Pick the identity with the most references closer than ``threshold``.

    A tie on hit count goes to the strictly smaller mean distance; exact ties
    keep the identity seen first in store order. Without any hit the result is
    UNKNOWN_IDENTITY with zero hits.
    """
    if threshold <= 0:
        raise ValueError(f"threshold must be > 0, got {threshold}")
    query_vec = as_embedding(query)

    best = MatchResult(identity=UNKNOWN_IDENTITY, hits=0, avg_distance=None)
    for name, references in store.identities():
        distances = _distances_below(query_vec, references, threshold)
        if not distances:
            continue
        hits = len(distances)
        avg = sum(distances) / hits
        # best.avg_distance is set whenever best.hits > 0.
        if hits > best.hits or (
            hits == best.hits and avg < best.avg_distance  # type: ignore[operator]
        ):
            best = MatchResult(
                identity=name,
                hits=hits,
                avg_distance=avg,
                distances=tuple(distances),
            )
            emit(
                verbose,
                log_fn,
                "Distances against {name} [{values}]".format(
                    name=name, values=" ".join(f"{d:.4f}" for d in distances)
                ),
            )

    if best.matched:
        emit(
            verbose,
            log_fn,
            f"Best match is {best.identity}: {best.hits} hits "
            f"(avg={best.avg_distance:.4f})",
        )
    return best


class IdentityMatcher:
    def __init__(
        self,
        store: EmbeddingStore,
        config: Optional[RecognizerConfig] = None,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> None:
        self.store = store
        self.config = config or RecognizerConfig()
        self.verbose = verbose
        self.log_fn = log_fn

    def match(
        self, query: EmbeddingLike, threshold: Optional[float] = None
    ) -> MatchResult:
        if threshold is None:
            threshold = self.config.match_threshold
        return match_embedding(
            query,
            self.store,
            threshold,
            verbose=self.verbose,
            log_fn=self.log_fn,
        )
