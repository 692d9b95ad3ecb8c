from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class RecognizerConfig:
    # Euclidean distance below which a reference embedding counts as a hit.
    # Smaller values make the judgement stricter.
    match_threshold: float = 0.6

    # Sample suffixes picked up when building from a dataset directory.
    image_extensions: Tuple[str, ...] = (".jpg", ".jpeg", ".png")

    # Default embeddings root, relative to the working directory.
    embeddings_path: str = "embeddings"
