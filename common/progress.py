from __future__ import annotations

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[Any], None]]


def emit_progress(callback: ProgressCallback, payload: Any) -> None:
    """Deliver a progress update; a failing sink never aborts the caller."""
    if callback is None:
        return
    try:
        callback(payload)
    except Exception:
        logger.warning("Progress callback failed; ignoring", exc_info=True)


def prefixed(callback: ProgressCallback, prefix: str) -> ProgressCallback:
    """Wrap a string progress sink so every message carries ``prefix``."""
    if callback is None:
        return None
    return lambda message: emit_progress(callback, f"{prefix}{message}")
