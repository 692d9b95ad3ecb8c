from __future__ import annotations

from typing import Callable, Optional

LogFn = Callable[[str], None]


def emit(verbose: bool, log_fn: Optional[LogFn], message: str) -> None:
    if not verbose:
        return
    if log_fn is not None:
        log_fn(message)
        return
    print(message)
