from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .face_types import EmbeddingLike, as_embedding
from .reporting import LogFn, emit


class CorruptEmbeddingError(ValueError):
    """A persisted embedding file could not be parsed as a 1-D vector."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Corrupt embedding {path}: {detail}")
        self.path = path


@dataclass
class LoadReport:
    # Identities added by this load, with their embedding counts.
    loaded: Dict[str, int] = field(default_factory=dict)
    # Identity directories that held no embedding files.
    empty: List[str] = field(default_factory=list)
    # Identities skipped because the store already had them.
    duplicates: List[str] = field(default_factory=list)


_INDEX_NAME = re.compile(r"[0-9]+")


def _index_key(path: Path) -> Tuple[int, int, str]:
    # Integer-named files first in numeric order, anything else after by name.
    if _INDEX_NAME.fullmatch(path.name):
        return (0, int(path.name), path.name)
    return (1, 0, path.name)


def _read_embedding(path: Path) -> np.ndarray:
    try:
        with path.open("rb") as handle:
            payload = np.load(handle, allow_pickle=False)
    except (OSError, ValueError, EOFError) as exc:
        raise CorruptEmbeddingError(path, str(exc)) from exc
    if not isinstance(payload, np.ndarray) or payload.dtype.kind not in "fiu":
        raise CorruptEmbeddingError(path, "payload is not a numeric array")
    try:
        return as_embedding(payload)
    except ValueError as exc:
        raise CorruptEmbeddingError(path, str(exc)) from exc


def _write_embedding(path: Path, embedding: np.ndarray) -> None:
    # Writing through a handle keeps numpy from appending ".npy" to the index name.
    with path.open("wb") as handle:
        np.save(handle, embedding, allow_pickle=False)


class EmbeddingStore:
    """In-memory gallery of reference embeddings keyed by identity name.

    The store only grows: identities are added by ``insert`` or by loading a
    persisted embeddings root, and a name that is already present is never
    replaced.
    """

    def __init__(self) -> None:
        self._identities: Dict[str, Tuple[np.ndarray, ...]] = {}
        # Vector length shared by every stored embedding, fixed by the first insert.
        self._dimension: Optional[int] = None

    @classmethod
    def load(
        cls,
        path: Path | str,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> "EmbeddingStore":
        store = cls()
        store.load_from(path, verbose=verbose, log_fn=log_fn)
        return store

    def load_from(
        self,
        path: Path | str,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> LoadReport:
        """Add every identity directory under ``path`` to this store.

        Raises FileNotFoundError if ``path`` is not a directory and
        CorruptEmbeddingError if any embedding file fails to parse or its length
        differs from the store's dimension. Empty and duplicate identities are
        skipped and listed in the returned report.
        """
        root = Path(path)
        if not root.is_dir():
            raise FileNotFoundError(f"Path to embeddings not found: {root}")

        report = LoadReport()
        dimension = self._dimension
        for identity_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            name = identity_dir.name
            emit(verbose, log_fn, f"Loading embeddings for {name}")
            files = sorted(
                (p for p in identity_dir.iterdir() if p.is_file()), key=_index_key
            )
            embeddings = []
            for file_path in files:
                embedding = _read_embedding(file_path)
                if dimension is None:
                    dimension = embedding.size
                elif embedding.size != dimension:
                    raise CorruptEmbeddingError(
                        file_path,
                        f"expected dimension {dimension}, got {embedding.size}",
                    )
                embeddings.append(embedding)
            if not embeddings:
                emit(verbose, log_fn, f"No embedding found for {name}")
                report.empty.append(name)
                continue
            if not self.insert(name, embeddings):
                emit(
                    verbose,
                    log_fn,
                    f"{name} already has its embeddings, skip duplicates",
                )
                report.duplicates.append(name)
                continue
            report.loaded[name] = len(embeddings)
            emit(verbose, log_fn, f"{len(embeddings)} embeddings loaded for {name}")
        return report

    @staticmethod
    def save(
        identity: str,
        embeddings: Sequence[EmbeddingLike],
        base_path: Path | str,
    ) -> List[Path]:
        """Write ``embeddings`` to ``base_path/identity/0, 1, ...``."""
        if not identity:
            raise ValueError("Identity name must not be empty")
        identity_dir = Path(base_path) / identity
        identity_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        for idx, values in enumerate(embeddings):
            out_path = identity_dir / str(idx)
            _write_embedding(out_path, as_embedding(values))
            written.append(out_path)
        return written

    def save_all(self, base_path: Path | str) -> None:
        for name, embeddings in self.identities():
            self.save(name, embeddings, base_path)

    def insert(self, name: str, embeddings: Sequence[EmbeddingLike]) -> bool:
        """Add a new identity; returns False if ``name`` already exists."""
        if not name:
            raise ValueError("Identity name must not be empty")
        if name in self._identities:
            return False
        vectors = tuple(as_embedding(e) for e in embeddings)
        dimension = self._dimension
        for vector in vectors:
            if dimension is None:
                dimension = vector.size
            elif vector.size != dimension:
                raise ValueError(
                    f"Embedding dimension mismatch for {name}: "
                    f"expected {dimension}, got {vector.size}"
                )
        self._identities[name] = vectors
        self._dimension = dimension
        return True

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def identities(self) -> Iterator[Tuple[str, Tuple[np.ndarray, ...]]]:
        return iter(list(self._identities.items()))

    def list_identities(self) -> List[str]:
        return list(self._identities.keys())

    def has_identity(self, name: str) -> bool:
        return name in self._identities

    def get_embeddings(self, name: str) -> Tuple[np.ndarray, ...]:
        return self._identities.get(name, ())

    def total_embeddings(self) -> int:
        return sum(len(embeddings) for embeddings in self._identities.values())

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, name: object) -> bool:
        return name in self._identities
