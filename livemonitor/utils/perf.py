from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any

from loguru import logger

from livemonitor.core.settings import settings
from livemonitor.utils.request_context import pass_id_var, request_id_var


def _enabled() -> bool:
    return bool(getattr(settings, "PERF_LOG_ENABLED", True)) and bool(getattr(settings, "PERF_LOG_INNER_ENABLED", True))


def _slow_ms() -> int:
    try:
        return int(getattr(settings, "PERF_LOG_SLOW_MS", 2000) or 2000)
    except Exception:
        return 2000


def _always_inner() -> bool:
    return bool(getattr(settings, "PERF_LOG_INNER_ALWAYS", False))


@contextmanager
def perf_span(op: str, **tags: Any):
    """Measure a code block; logs ms.

    - Always logs if PERF_LOG_INNER_ALWAYS=true
    - Otherwise logs only when >= PERF_LOG_SLOW_MS
    """

    if not _enabled():
        yield
        return

    t0 = time.perf_counter()
    ok = True
    try:
        yield
    except Exception:
        ok = False
        raise
    finally:
        dt_ms = (time.perf_counter() - t0) * 1000.0
        rid = request_id_var.get() or "-"
        pid = pass_id_var.get()
        slow_ms = _slow_ms()
        should = _always_inner() or (dt_ms >= float(slow_ms))
        if should:
            level = "WARNING" if dt_ms >= float(slow_ms) else "DEBUG"
            status = "ok" if ok else "err"
            # Keep tag payload compact.
            extra = {k: v for k, v in tags.items() if v is not None}
            logger.log(
                level,
                "PERF {op} {status}: {ms:.1f}ms rid={rid} pass={pid} tags={tags}",
                op=op,
                status=status,
                ms=dt_ms,
                rid=rid,
                pid=pid if pid is not None else "-",
                tags=extra,
            )
