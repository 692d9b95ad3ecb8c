from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np


def load_image(path: Path | str) -> np.ndarray:
    """Decode an image file into a BGR uint8 array."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {path}")
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        raise RuntimeError(f"Unable to decode image {path}")
    return image


def write_image(path: Path | str, image: np.ndarray) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), image):
        raise RuntimeError(f"Unable to write image {path}")
