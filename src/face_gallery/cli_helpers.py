from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, TextIO

import typer

from .dataset_builder import BuildReport
from .face_types import Label

# Exit codes: bad or missing arguments, then runtime failures.
EXIT_USAGE = 1
EXIT_FAILURE = 2


def default_log_path(source: str) -> Path:
    src = Path(source)
    stem = src.stem if src.suffix else src.name
    return Path("logs") / f"{stem}.log"


def build_log_writer(
    source: str,
    verbose: bool,
    tee_logs: bool,
) -> tuple[Optional[Callable[[str], None]], Optional[TextIO]]:
    if not verbose:
        return None, None
    log_path = default_log_path(source)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_handle = log_path.open("w", encoding="utf-8")
    typer.secho(f"Verbose logs written to {log_path}", fg=typer.colors.BLUE)

    def _file_only(message: str) -> None:
        log_handle.write(f"{message}\n")

    def _tee(message: str) -> None:
        log_handle.write(f"{message}\n")
        print(message)

    return (_tee if tee_logs else _file_only), log_handle


def fail(message: str, code: int = EXIT_FAILURE) -> typer.Exit:
    typer.secho(message, fg=typer.colors.RED, err=True)
    return typer.Exit(code=code)


def require_model_paths(
    backend: str, predictor: Optional[Path], face_model: Optional[Path]
) -> None:
    """dlib needs both the shape predictor and the face model on the command line."""
    if backend.lower() != "dlib":
        return
    if predictor is None:
        raise fail("No pre-trained shape predictor model designated", EXIT_USAGE)
    if face_model is None:
        raise fail("No pre-trained face model designated", EXIT_USAGE)


def format_label(index: int, label: Label) -> str:
    fields = [
        f"face={index}",
        "bbox=({},{},{},{})".format(*label.bbox),
        f"name={label.name}",
        f"hits={label.match.hits}",
    ]
    if label.match.avg_distance is not None:
        fields.append(f"avg={label.match.avg_distance:.4f}")
    return " ".join(fields)


def report_build(report: BuildReport) -> None:
    for name, count in report.embeddings.items():
        color = typer.colors.GREEN if count else typer.colors.YELLOW
        typer.secho(f"identity={name} embeddings={count}", fg=color)
    for sample in report.skipped:
        typer.secho(
            f"skipped identity={sample.identity} sample={sample.path.name} "
            f"reason={sample.reason} faces={sample.faces}",
            fg=typer.colors.YELLOW,
        )
