# obs.py (Langfuse v3-compatible)
from __future__ import annotations

import logging
import time
from contextlib import ExitStack, contextmanager
from typing import Any, Optional

from observability.langfuse_client import get_langfuse
from observability.telemetry import mark_error

logger = logging.getLogger(__name__)


def _safe_span_update(span, **kwargs: Any) -> None:
    if span is None:
        return
    try:
        span.update(**kwargs)
    except Exception:
        pass


def _enter_span(stack: ExitStack, name: str):
    try:
        return stack.enter_context(get_langfuse().start_as_current_span(name=name))
    except Exception:
        # Never let observability crash business logic
        logger.debug("span %s not started", name, exc_info=True)
        return None


@contextmanager
def span_attrs(name: str, **attrs: Any):
    """
    Lightweight observation with fixed metadata.
    Yields the span (or None when tracing is unavailable); records status and duration.
    """
    t0 = time.perf_counter()
    with ExitStack() as stack:
        s = _enter_span(stack, name)
        if attrs:
            _safe_span_update(s, metadata=dict(attrs))
        try:
            yield s
            dur_ms = int((time.perf_counter() - t0) * 1000)
            _safe_span_update(s, metadata={"status": "ok", "duration.ms": dur_ms})
        except Exception as e:
            dur_ms = int((time.perf_counter() - t0) * 1000)
            _safe_span_update(
                s,
                metadata={
                    "status": "error",
                    "error.kind": type(e).__name__,
                    "duration.ms": dur_ms,
                },
                status_message=str(e),
                level="ERROR",
            )
            raise


@contextmanager
def span_step(name: str, *, kind: str, **attrs: Any):
    with span_attrs(name, **attrs) as s:
        try:
            yield s
        except Exception as e:
            # single place to mark + rethrow
            mark_error(e, kind=kind, span=s)
            raise


def span_meta(span: Optional[Any], **metadata: Any) -> None:
    """Attach metadata to a span yielded by span_attrs (no-op without tracing)."""
    _safe_span_update(span, metadata=metadata)
