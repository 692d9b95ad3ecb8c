import sys
import types

import numpy as np
import pytest

from face_gallery.face_embedder import (
    DlibEmbedderConfig,
    DlibFaceEmbedder,
    create_embedder,
)
from face_gallery.face_types import FaceRegion


class _FakeRectangle:
    def __init__(self, left, top, right, bottom):
        self._box = (left, top, right, bottom)

    def left(self):
        return self._box[0]

    def top(self):
        return self._box[1]

    def right(self):
        return self._box[2]

    def bottom(self):
        return self._box[3]


class _FakeHog:
    def __init__(self, calls):
        self._calls = calls

    def run(self, rgb, upsample, adjust_threshold):
        self._calls.append(("hog", rgb.copy(), upsample))
        return [_FakeRectangle(5, 6, 25, 30)], [1.25], [0]


class _FakeCnn:
    def __init__(self, calls):
        self._calls = calls

    def __call__(self, rgb, upsample):
        self._calls.append(("mmod", rgb.copy(), upsample))
        return [
            types.SimpleNamespace(rect=_FakeRectangle(1, 2, 11, 12), confidence=0.75),
            types.SimpleNamespace(rect=_FakeRectangle(40, 2, 50, 12), confidence=0.5),
        ]


class _FakeShapePredictor:
    def __init__(self, calls):
        self._calls = calls

    def __call__(self, rgb, rect):
        self._calls.append(("shape", rect))
        return ("shape", rect)


class _FakeFaceModel:
    def __init__(self, calls):
        self._calls = calls

    def compute_face_descriptor(self, chips, num_jitters):
        self._calls.append(("descriptor", len(chips), num_jitters))
        return [[float(idx)] * 128 for idx in range(len(chips))]


def _fake_dlib(calls):
    fake = types.ModuleType("dlib")
    fake.rectangle = _FakeRectangle
    fake.shape_predictor = lambda path: _FakeShapePredictor(calls)
    fake.face_recognition_model_v1 = lambda path: _FakeFaceModel(calls)
    fake.cnn_face_detection_model_v1 = lambda path: _FakeCnn(calls)
    fake.get_frontal_face_detector = lambda: _FakeHog(calls)

    def get_face_chip(rgb, shape, size, padding):
        calls.append(("chip", rgb.copy(), size, padding))
        return np.zeros((size, size, 3), dtype=np.uint8)

    fake.get_face_chip = get_face_chip
    return fake


def _model_files(tmp_path, mmod=False):
    paths = {}
    for key, name in (("shape_model", "shape.dat"), ("face_model", "face.dat")):
        paths[key] = tmp_path / name
        paths[key].write_bytes(b"")
    if mmod:
        paths["mmod_model"] = tmp_path / "mmod.dat"
        paths["mmod_model"].write_bytes(b"")
    return DlibEmbedderConfig(**paths)


def _blue_image():
    image = np.zeros((40, 60, 3), dtype=np.uint8)
    image[:, :, 0] = 255
    return image


@pytest.fixture()
def dlib_calls(monkeypatch):
    calls = []
    monkeypatch.setitem(sys.modules, "dlib", _fake_dlib(calls))
    return calls


def test_dlib_embedder_requires_shape_model(tmp_path):
    face_model = tmp_path / "face.dat"
    face_model.write_bytes(b"")
    config = DlibEmbedderConfig(shape_model=tmp_path / "missing.dat", face_model=face_model)

    with pytest.raises(FileNotFoundError, match="shape model"):
        DlibFaceEmbedder(config)


def test_dlib_embedder_requires_face_model(tmp_path):
    shape_model = tmp_path / "shape.dat"
    shape_model.write_bytes(b"")
    config = DlibEmbedderConfig(shape_model=shape_model, face_model=None)

    with pytest.raises(FileNotFoundError, match="face recognition model"):
        DlibFaceEmbedder(config)


def test_create_embedder_rejects_unknown_backend():
    with pytest.raises(ValueError, match="Unknown backend"):
        create_embedder("opencv")


def test_mmod_detector_used_when_weights_exist(tmp_path, dlib_calls):
    messages = []
    embedder = DlibFaceEmbedder(
        _model_files(tmp_path, mmod=True), verbose=True, log_fn=messages.append
    )

    regions = embedder.detect(_blue_image())

    assert embedder.detector_name == "mmod"
    assert "MMOD model not found, fall back to HOG detector" not in messages
    assert [r.bbox for r in regions] == [(1, 2, 11, 12), (40, 2, 50, 12)]
    assert [r.score for r in regions] == [0.75, 0.5]
    assert dlib_calls[0][0] == "mmod"


def test_hog_detector_used_without_mmod_weights(tmp_path, dlib_calls):
    messages = []
    config = _model_files(tmp_path)
    config.mmod_model = tmp_path / "missing_mmod.dat"

    embedder = DlibFaceEmbedder(config, verbose=True, log_fn=messages.append)
    regions = embedder.detect(_blue_image())

    assert embedder.detector_name == "hog"
    assert "MMOD model not found, fall back to HOG detector" in messages
    assert regions == [FaceRegion(bbox=(5, 6, 25, 30), score=1.25)]
    assert isinstance(regions[0].score, float)


def test_detect_hands_rgb_to_dlib(tmp_path, dlib_calls):
    embedder = DlibFaceEmbedder(_model_files(tmp_path))

    embedder.detect(_blue_image())

    name, rgb, upsample = dlib_calls[0]
    assert name == "hog"
    assert upsample == 0
    assert rgb.shape == (40, 60, 3)
    assert rgb[0, 0].tolist() == [0, 0, 255]


def test_align_builds_rectangle_and_face_chip(tmp_path, dlib_calls):
    embedder = DlibFaceEmbedder(_model_files(tmp_path))

    chip = embedder.align(_blue_image(), FaceRegion(bbox=(5, 6, 25, 30)))

    assert chip.shape == (150, 150, 3)
    (_, rect), (_, rgb, size, padding) = dlib_calls
    assert isinstance(rect, _FakeRectangle)
    assert (rect.left(), rect.top(), rect.right(), rect.bottom()) == (5, 6, 25, 30)
    assert rgb[0, 0].tolist() == [0, 0, 255]
    assert (size, padding) == (150, 0.25)


def test_embed_returns_read_only_float32_vectors(tmp_path, dlib_calls):
    embedder = DlibFaceEmbedder(_model_files(tmp_path))
    chips = [np.zeros((150, 150, 3), dtype=np.uint8) for _ in range(2)]

    embeddings = embedder.embed(chips)

    assert dlib_calls == [("descriptor", 2, 0)]
    assert len(embeddings) == 2
    for idx, embedding in enumerate(embeddings):
        assert embedding.shape == (128,)
        assert embedding.dtype == np.float32
        assert not embedding.flags.writeable
        assert float(embedding[0]) == float(idx)


def test_embed_without_crops_skips_the_model(tmp_path, dlib_calls):
    embedder = DlibFaceEmbedder(_model_files(tmp_path))

    assert embedder.embed([]) == []
    assert dlib_calls == []


def test_create_embedder_builds_dlib_backend(tmp_path, dlib_calls):
    config = _model_files(tmp_path)

    embedder = create_embedder(
        "dlib", shape_model=config.shape_model, face_model=config.face_model
    )

    assert isinstance(embedder, DlibFaceEmbedder)
    assert embedder.detector_name == "hog"


def test_missing_dlib_points_at_the_extra(tmp_path, monkeypatch):
    monkeypatch.setitem(sys.modules, "dlib", None)

    with pytest.raises(ImportError, match=r"face-gallery\[dlib\]"):
        DlibFaceEmbedder(_model_files(tmp_path))
