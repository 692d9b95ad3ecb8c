from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from .cli_helpers import (
    EXIT_USAGE,
    build_log_writer,
    fail,
    format_label,
    report_build,
    require_model_paths,
)
from .dataset_builder import DatasetBuilder
from .embedding_store import CorruptEmbeddingError, EmbeddingStore
from .face_embedder import BACKENDS, FaceEmbedder, create_embedder
from .face_recognizer import FaceRecognizer, write_annotated
from .image_io import load_image
from .recognizer_config import RecognizerConfig
from .reporting import LogFn

app = typer.Typer(
    add_completion=False, help="Recognize faces against a gallery of known identities."
)

_BACKEND_HELP = f"Detection/embedding backend ({'|'.join(BACKENDS)})."


def _load_embedder(
    backend: str,
    predictor: Optional[Path],
    face_model: Optional[Path],
    mmod_model: Optional[Path],
    verbose: bool,
    log_fn: Optional[LogFn],
) -> FaceEmbedder:
    try:
        return create_embedder(
            backend,
            shape_model=predictor,
            face_model=face_model,
            mmod_model=mmod_model,
            verbose=verbose,
            log_fn=log_fn,
        )
    except (FileNotFoundError, ImportError, RuntimeError, ValueError) as exc:
        raise fail(f"Failed to load weight files: {exc}") from exc


def _run_build(
    embedder: FaceEmbedder,
    config: RecognizerConfig,
    dataset_path: Path,
    embeddings_path: Path,
    verbose: bool,
    log_fn: Optional[LogFn],
) -> None:
    builder = DatasetBuilder(embedder, config=config, verbose=verbose, log_fn=log_fn)
    try:
        report = builder.build(dataset_path, embeddings_path)
    except ValueError as exc:
        raise fail(str(exc), EXIT_USAGE) from exc
    except (FileNotFoundError, RuntimeError) as exc:
        raise fail(str(exc)) from exc
    report_build(report)
    typer.secho(f"Embeddings written to {embeddings_path}", fg=typer.colors.GREEN)


@app.command()
def identify(
    input_path: Optional[Path] = typer.Option(
        None, "--input", "-i", help="Input image file."
    ),
    embeddings_path: Path = typer.Option(
        Path(RecognizerConfig.embeddings_path),
        "--embeddings",
        "-e",
        help="Embeddings root to load (and write when regenerating).",
    ),
    dataset_path: Optional[Path] = typer.Option(
        None, "--dataset", "-d", help="Designate path to pre-defined dataset."
    ),
    regenerate: bool = typer.Option(
        False,
        "--regenerate",
        "-r",
        help="Regenerate embeddings from pre-defined dataset.",
    ),
    predictor: Optional[Path] = typer.Option(
        None,
        "--predictor",
        "-p",
        help="Designate path to pre-trained shape predictor model file.",
    ),
    face_model: Optional[Path] = typer.Option(
        None,
        "--face-model",
        "-f",
        help="Designate path to pre-trained face model file.",
    ),
    mmod_model: Optional[Path] = typer.Option(
        None,
        "--mmod-model",
        "-m",
        help="Optional MMOD face detector weights (HOG detector is used otherwise).",
    ),
    backend: str = typer.Option("dlib", "--backend", help=_BACKEND_HELP),
    threshold: float = typer.Option(
        RecognizerConfig.match_threshold,
        "--threshold",
        "-t",
        help="Threshold for recognition (0.0 ~ 1.0), smaller value forces a stricter judgement.",
    ),
    annotate_output: Optional[Path] = typer.Option(
        None,
        "--annotate-output",
        help="Write a copy of the input with boxes and identity names.",
    ),
    verbose: bool = typer.Option(
        True, "--verbose/--quiet", help="Write processing details to logs/<input>.log."
    ),
    tee_logs: bool = typer.Option(
        False,
        "--tee-logs/--no-tee-logs",
        help="Also mirror verbose logs to stdout.",
    ),
) -> None:
    """Label every face in an input image, optionally rebuilding embeddings first."""
    if regenerate and dataset_path is None:
        raise fail("No dataset path designated to regenerate embeddings", EXIT_USAGE)
    require_model_paths(backend, predictor, face_model)
    if threshold <= 0:
        raise fail(f"Threshold must be > 0, got {threshold}", EXIT_USAGE)

    source = str(input_path or dataset_path or "face_gallery")
    log_fn, log_handle = build_log_writer(source, verbose, tee_logs)
    config = RecognizerConfig(match_threshold=threshold)
    try:
        embedder = _load_embedder(
            backend, predictor, face_model, mmod_model, verbose, log_fn
        )
        if regenerate:
            _run_build(
                embedder, config, dataset_path, embeddings_path, verbose, log_fn
            )
        if input_path is None:
            return

        try:
            image = load_image(input_path)
        except (FileNotFoundError, RuntimeError) as exc:
            raise fail(str(exc)) from exc
        try:
            store = EmbeddingStore.load(embeddings_path, verbose=verbose, log_fn=log_fn)
        except (FileNotFoundError, CorruptEmbeddingError) as exc:
            raise fail(f"Failed to load embeddings: {exc}") from exc

        recognizer = FaceRecognizer(
            embedder, store, config=config, verbose=verbose, log_fn=log_fn
        )
        try:
            labels = recognizer.evaluate(image)
        except (ValueError, RuntimeError) as exc:
            raise fail(f"Failed to evaluate {input_path}: {exc}") from exc
        if not labels:
            typer.secho(f"No face found in {input_path}", fg=typer.colors.YELLOW)
            return
        for idx, label in enumerate(labels):
            color = typer.colors.GREEN if label.match.matched else typer.colors.CYAN
            typer.secho(format_label(idx, label), fg=color)
        if annotate_output is not None:
            try:
                write_annotated(annotate_output, image, labels)
            except RuntimeError as exc:
                raise fail(str(exc)) from exc
            typer.secho(
                f"Annotated image written to {annotate_output}", fg=typer.colors.GREEN
            )
    finally:
        if log_handle is not None:
            log_handle.close()


@app.command()
def build(
    dataset_path: Path = typer.Argument(..., help="Dataset root, one folder per identity."),
    embeddings_path: Path = typer.Option(
        Path(RecognizerConfig.embeddings_path),
        "--embeddings",
        "-e",
        help="Embeddings root; replaced entirely.",
    ),
    predictor: Optional[Path] = typer.Option(None, "--predictor", "-p"),
    face_model: Optional[Path] = typer.Option(None, "--face-model", "-f"),
    mmod_model: Optional[Path] = typer.Option(None, "--mmod-model", "-m"),
    backend: str = typer.Option("dlib", "--backend", help=_BACKEND_HELP),
    verbose: bool = typer.Option(True, "--verbose/--quiet"),
    tee_logs: bool = typer.Option(False, "--tee-logs/--no-tee-logs"),
) -> None:
    """Regenerate the embeddings root from a labeled dataset."""
    require_model_paths(backend, predictor, face_model)
    log_fn, log_handle = build_log_writer(str(dataset_path), verbose, tee_logs)
    try:
        embedder = _load_embedder(
            backend, predictor, face_model, mmod_model, verbose, log_fn
        )
        _run_build(
            embedder,
            RecognizerConfig(),
            dataset_path,
            embeddings_path,
            verbose,
            log_fn,
        )
    finally:
        if log_handle is not None:
            log_handle.close()


@app.command()
def list_identities(
    embeddings_path: Path = typer.Option(
        Path(RecognizerConfig.embeddings_path), "--embeddings", "-e"
    ),
) -> None:
    """Print every stored identity with its number of reference embeddings."""
    try:
        store = EmbeddingStore.load(embeddings_path)
    except (FileNotFoundError, CorruptEmbeddingError) as exc:
        raise fail(f"Failed to load embeddings: {exc}") from exc
    for name, embeddings in store.identities():
        typer.echo(f"{name} {len(embeddings)}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
