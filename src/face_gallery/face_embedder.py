from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from .face_types import FaceRegion, as_embedding
from .reporting import LogFn, emit

BACKENDS = ("dlib", "insightface")


class FaceEmbedder(Protocol):
    """Detection, alignment and embedding capability used by the core."""

    def detect(self, image: np.ndarray) -> List[FaceRegion]: ...

    def align(self, image: np.ndarray, region: FaceRegion) -> np.ndarray: ...

    def embed(self, crops: Sequence[np.ndarray]) -> List[np.ndarray]: ...


def _require_file(path: Optional[Path | str], what: str) -> Path:
    if path is None or not Path(path).is_file():
        raise FileNotFoundError(f"Missing weight file for {what}: {path}")
    return Path(path)


@dataclass
class DlibEmbedderConfig:
    shape_model: Optional[Path] = None
    face_model: Optional[Path] = None
    # Optional CNN detector weights; HOG is used when absent.
    mmod_model: Optional[Path] = None
    upsample: int = 0
    chip_size: int = 150
    chip_padding: float = 0.25
    num_jitters: int = 0


class DlibFaceEmbedder:
    """dlib pipeline: HOG or MMOD detection, 68-point alignment, ResNet descriptor.

    Images are BGR arrays as returned by OpenCV; they are converted to RGB
    before reaching dlib.
    """

    def __init__(
        self,
        config: Optional[DlibEmbedderConfig] = None,
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ) -> None:
        self.config = config or DlibEmbedderConfig()
        shape_path = _require_file(self.config.shape_model, "shape model")
        face_path = _require_file(self.config.face_model, "face recognition model")
        try:
            import dlib
        except ImportError as exc:
            raise ImportError(
                "dlib is required. Install with: pip install 'face-gallery[dlib]'"
            ) from exc

        self._dlib = dlib
        self._shape_predictor = dlib.shape_predictor(str(shape_path))
        self._face_model = dlib.face_recognition_model_v1(str(face_path))
        self.detector_name, self._detect_fn = self._build_detector(verbose, log_fn)

    def _build_detector(
        self, verbose: bool, log_fn: Optional[LogFn]
    ) -> Tuple[str, Callable[[np.ndarray], List[Tuple[object, float]]]]:
        dlib = self._dlib
        upsample = self.config.upsample
        mmod_path = self.config.mmod_model
        if mmod_path is not None and Path(mmod_path).is_file():
            cnn = dlib.cnn_face_detection_model_v1(str(mmod_path))

            def _detect_mmod(rgb: np.ndarray) -> List[Tuple[object, float]]:
                return [(d.rect, float(d.confidence)) for d in cnn(rgb, upsample)]

            return "mmod", _detect_mmod

        emit(verbose, log_fn, "MMOD model not found, fall back to HOG detector")
        hog = dlib.get_frontal_face_detector()

        def _detect_hog(rgb: np.ndarray) -> List[Tuple[object, float]]:
            rects, scores, _ = hog.run(rgb, upsample, 0.0)
            return [(rect, float(score)) for rect, score in zip(rects, scores)]

        return "hog", _detect_hog

    @staticmethod
    def _to_rgb(image: np.ndarray) -> np.ndarray:
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def detect(self, image: np.ndarray) -> List[FaceRegion]:
        rgb = self._to_rgb(image)
        return [
            FaceRegion(
                bbox=(rect.left(), rect.top(), rect.right(), rect.bottom()),
                score=score,
            )
            for rect, score in self._detect_fn(rgb)
        ]

    def align(self, image: np.ndarray, region: FaceRegion) -> np.ndarray:
        rgb = self._to_rgb(image)
        rect = self._dlib.rectangle(*[int(v) for v in region.bbox])
        shape = self._shape_predictor(rgb, rect)
        return self._dlib.get_face_chip(
            rgb, shape, size=self.config.chip_size, padding=self.config.chip_padding
        )

    def embed(self, crops: Sequence[np.ndarray]) -> List[np.ndarray]:
        if not crops:
            return []
        descriptors = self._face_model.compute_face_descriptor(
            list(crops), self.config.num_jitters
        )
        return [as_embedding(np.asarray(d)) for d in descriptors]


@dataclass
class InsightFaceEmbedderConfig:
    model_name: str = "buffalo_l"
    providers: Sequence[str] = ("CPUExecutionProvider",)
    det_size: Tuple[int, int] = (640, 640)
    # Faces smaller than this (shorter bbox side, pixels) are dropped; 0 keeps all.
    min_face_size: int = 0
    crop_size: int = 112
    # L2-normalize ArcFace outputs so Euclidean thresholds stay in [0, 2].
    normalize: bool = True


class InsightFaceEmbedder:
    """InsightFace pipeline: SCRFD detection, keypoint alignment, ArcFace embedding."""

    def __init__(self, config: Optional[InsightFaceEmbedderConfig] = None) -> None:
        self.config = config or InsightFaceEmbedderConfig()
        try:
            from insightface.app import FaceAnalysis
            from insightface.utils import face_align
        except ImportError as exc:
            raise ImportError(
                "insightface is required. "
                "Install with: pip install 'face-gallery[insightface]'"
            ) from exc

        self._face_align = face_align
        self._app = FaceAnalysis(
            name=self.config.model_name,
            providers=list(self.config.providers),
            allowed_modules=["detection", "recognition"],
        )
        # ctx_id=-1 uses CPU; det_size controls the detector input size.
        self._app.prepare(ctx_id=-1, det_size=self.config.det_size)
        self._recognizer = self._app.models["recognition"]

    def detect(self, image: np.ndarray) -> List[FaceRegion]:
        bboxes, kpss = self._app.det_model.detect(image, max_num=0, metric="default")
        regions: List[FaceRegion] = []
        for idx in range(bboxes.shape[0]):
            x1, y1, x2, y2, score = bboxes[idx].tolist()
            if min(x2 - x1, y2 - y1) < self.config.min_face_size:
                continue
            kps = None
            if kpss is not None:
                kps = [(float(x), float(y)) for x, y in kpss[idx].tolist()]
            regions.append(
                FaceRegion(
                    bbox=(int(x1), int(y1), int(x2), int(y2)),
                    score=float(score),
                    landmarks=kps,
                )
            )
        return regions

    def align(self, image: np.ndarray, region: FaceRegion) -> np.ndarray:
        if region.landmarks is None:
            raise RuntimeError(
                "No keypoints on region. InsightFace alignment needs detector keypoints."
            )
        landmarks = np.asarray(region.landmarks, dtype=np.float32)
        return self._face_align.norm_crop(
            image, landmark=landmarks, image_size=self.config.crop_size
        )

    def embed(self, crops: Sequence[np.ndarray]) -> List[np.ndarray]:
        if not crops:
            return []
        features = np.asarray(self._recognizer.get_feat(list(crops)), dtype=np.float32)
        if self.config.normalize:
            norms = np.linalg.norm(features, axis=1, keepdims=True)
            features = features / np.maximum(norms, 1e-12)
        return [as_embedding(row) for row in features]


def create_embedder(
    backend: str = "dlib",
    shape_model: Optional[Path] = None,
    face_model: Optional[Path] = None,
    mmod_model: Optional[Path] = None,
    verbose: bool = False,
    log_fn: Optional[LogFn] = None,
) -> FaceEmbedder:
    """Pick the detection/embedding backend once, at start-up."""
    name = backend.lower()
    if name == "dlib":
        config = DlibEmbedderConfig(
            shape_model=shape_model, face_model=face_model, mmod_model=mmod_model
        )
        return DlibFaceEmbedder(config=config, verbose=verbose, log_fn=log_fn)
    if name == "insightface":
        return InsightFaceEmbedder()
    raise ValueError(f"Unknown backend '{backend}'. Use one of: {', '.join(BACKENDS)}.")
