from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from .embedding_store import EmbeddingStore
from .face_embedder import FaceEmbedder
from .image_io import load_image
from .recognizer_config import RecognizerConfig
from .reporting import LogFn, emit


@dataclass(frozen=True)
class SkippedSample:
    identity: str
    path: Path
    # One of: "unreadable", "no_face", "multiple_faces".
    reason: str
    # Regions the detector returned; 0 when the image could not be read.
    faces: int = 0


@dataclass
class BuildReport:
    # Embeddings written per identity (0 for identities with no usable sample).
    embeddings: Dict[str, int] = field(default_factory=dict)
    skipped: List[SkippedSample] = field(default_factory=list)
    # Identities that ended up without any embedding.
    empty: List[str] = field(default_factory=list)
    # Gallery holding what was written, ready for matching.
    store: EmbeddingStore = field(default_factory=EmbeddingStore)


def _check_roots(dataset_root: Path, embeddings_root: Path) -> None:
    # The embeddings root is wiped on build; it must not be or contain the dataset.
    dataset_resolved = dataset_root.resolve()
    embeddings_resolved = embeddings_root.resolve()
    if (
        embeddings_resolved == dataset_resolved
        or embeddings_resolved in dataset_resolved.parents
    ):
        raise ValueError(
            f"Embeddings path {embeddings_root} would overwrite dataset {dataset_root}"
        )


class DatasetBuilder:
    """Regenerates an embeddings root from a labeled sample directory.

    The dataset holds one subdirectory per identity with sample images. A
    sample contributes an embedding only when the detector finds exactly one
    face in it; anything else is skipped and reported, since a mislabeled
    multi-face sample is worse than a missing one.
    """

    def __init__(
        self,
        embedder: FaceEmbedder,
        config: Optional[RecognizerConfig] = None,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> None:
        self.embedder = embedder
        self.config = config or RecognizerConfig()
        self.verbose = verbose
        self.log_fn = log_fn

    def _emit(self, message: str) -> None:
        emit(self.verbose, self.log_fn, message)

    def _list_samples(self, identity_dir: Path) -> List[Path]:
        extensions = {ext.lower() for ext in self.config.image_extensions}
        return sorted(
            p
            for p in identity_dir.iterdir()
            if p.is_file() and p.suffix.lower() in extensions
        )

    def build(
        self,
        dataset_path: Path | str,
        embeddings_path: Path | str | None = None,
    ) -> BuildReport:
        dataset_root = Path(dataset_path)
        if not dataset_root.is_dir():
            raise FileNotFoundError(f"Dataset path {dataset_root} doesn't exist")
        embeddings_root = Path(embeddings_path or self.config.embeddings_path)
        _check_roots(dataset_root, embeddings_root)

        # Full regeneration: no vectors from a previous build survive.
        if embeddings_root.exists():
            shutil.rmtree(embeddings_root)
        embeddings_root.mkdir(parents=True)

        report = BuildReport()
        names = sorted(
            p.name
            for p in dataset_root.iterdir()
            if p.is_dir() and p.resolve() != embeddings_root.resolve()
        )
        for name in names:
            embeddings = self._generate_embeddings(name, dataset_root / name, report)
            EmbeddingStore.save(name, embeddings, embeddings_root)
            report.embeddings[name] = len(embeddings)
            if not embeddings:
                self._emit(f"No qualified sample for {name}, no embeddings written")
                report.empty.append(name)
                continue
            try:
                report.store.insert(name, embeddings)
            except ValueError as exc:
                raise RuntimeError(f"Inconsistent embeddings for {name}: {exc}") from exc
        return report

    def _generate_embeddings(
        self, name: str, identity_dir: Path, report: BuildReport
    ) -> List[np.ndarray]:
        crops: List[np.ndarray] = []
        for sample in self._list_samples(identity_dir):
            self._emit(f"Extracting face from sample {sample}")
            try:
                image = load_image(sample)
            except RuntimeError:
                self._emit(f"Sample {sample} unreadable, skipped")
                report.skipped.append(
                    SkippedSample(identity=name, path=sample, reason="unreadable")
                )
                continue

            regions = self.embedder.detect(image)
            if len(regions) != 1:
                reason = "no_face" if not regions else "multiple_faces"
                self._emit(
                    f"Sample not qualified ({len(regions)} faces), skipped: {sample}"
                )
                report.skipped.append(
                    SkippedSample(
                        identity=name, path=sample, reason=reason, faces=len(regions)
                    )
                )
                continue
            crops.append(self.embedder.align(image, regions[0]))

        if not crops:
            return []
        self._emit(f"Generating embeddings for {name} ...")
        embeddings = self.embedder.embed(crops)
        if len(embeddings) != len(crops):
            raise RuntimeError(
                f"Embedder returned {len(embeddings)} embeddings for {len(crops)} faces"
            )
        return list(embeddings)
