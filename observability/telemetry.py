# telemetry.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from observability.langfuse_client import get_langfuse

logger = logging.getLogger(__name__)
Json = Dict[str, Any]


def mark_error(exc: Exception, *, kind: str = "UnhandledError", span=None, extra: Optional[Json] = None) -> None:
    """
    Minimal error marking; no payload dumping. Add explicit `extra` if needed.
    """
    meta = {"status": "error", "error.kind": kind, "error.type": type(exc).__name__}
    if extra:
        meta["error.extra"] = extra

    if span is not None:
        try:
            span.update(metadata=meta, status_message=str(exc), level="ERROR")
            return
        except Exception:
            pass

    try:
        get_langfuse().update_current_span(
            metadata=meta,
            status_message=str(exc),
            level="ERROR",
        )
    except Exception:
        # Never let observability crash business logic
        logger.debug("mark_error: no active span for %s", kind)
