from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .embedding_store import EmbeddingStore
from .face_embedder import FaceEmbedder
from .face_types import Label
from .identity_matcher import IdentityMatcher
from .image_io import write_image
from .recognizer_config import RecognizerConfig
from .reporting import LogFn, emit


class FaceRecognizer:
    def __init__(
        self,
        embedder: FaceEmbedder,
        store: EmbeddingStore,
        config: Optional[RecognizerConfig] = None,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> None:
        self.embedder = embedder
        self.config = config or RecognizerConfig()
        self.verbose = verbose
        self.log_fn = log_fn
        self.matcher = IdentityMatcher(
            store, config=self.config, verbose=verbose, log_fn=log_fn
        )

    @property
    def store(self) -> EmbeddingStore:
        return self.matcher.store

    def evaluate(
        self, image: np.ndarray, threshold: Optional[float] = None
    ) -> List[Label]:
        """Label every face found in ``image``; returns [] when none are found."""
        if threshold is None:
            threshold = self.config.match_threshold
        emit(
            self.verbose,
            self.log_fn,
            f"Evaluating faces using threshold {threshold}",
        )
        regions = self.embedder.detect(image)
        if not regions:
            emit(self.verbose, self.log_fn, "No face found")
            return []

        crops = [self.embedder.align(image, region) for region in regions]
        embeddings = self.embedder.embed(crops)
        if len(embeddings) != len(regions):
            raise RuntimeError(
                f"Embedder returned {len(embeddings)} embeddings for {len(regions)} faces"
            )

        labels: List[Label] = []
        for region, embedding in zip(regions, embeddings):
            result = self.matcher.match(embedding, threshold=threshold)
            labels.append(Label(region=region, name=result.identity, match=result))
        return labels


def _draw_box_with_label(
    frame: np.ndarray,
    bbox: Tuple[int, int, int, int],
    label: str,
    accepted: bool,
) -> None:
    x1, y1, x2, y2 = bbox
    color = (0, 200, 0) if accepted else (0, 140, 255)
    cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)
    cv2.putText(
        frame,
        label,
        (x1, max(20, y1 - 8)),
        cv2.FONT_HERSHEY_SIMPLEX,
        0.6,
        color,
        2,
        cv2.LINE_AA,
    )


def draw_labels(image: np.ndarray, labels: Sequence[Label]) -> np.ndarray:
    """Return a copy of ``image`` with one box and name per labeled face."""
    annotated = image.copy()
    for label in labels:
        _draw_box_with_label(
            annotated, label.bbox, label.name, accepted=label.match.matched
        )
    return annotated


def write_annotated(
    output_path: Path | str, image: np.ndarray, labels: Sequence[Label]
) -> None:
    write_image(output_path, draw_labels(image, labels))
