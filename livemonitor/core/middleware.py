from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from livemonitor.core.settings import settings
from livemonitor.utils.request_context import request_id_var


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = req_id
        token = request_id_var.set(req_id)
        try:
            resp = await call_next(request)
            resp.headers["x-request-id"] = req_id
            return resp
        finally:
            try:
                request_id_var.reset(token)
            except ValueError:
                # Token from another context (streaming responses); the var dies with the task.
                pass


class PerformanceLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if not getattr(settings, "PERF_LOG_ENABLED", True):
            return await call_next(request)

        t0 = time.perf_counter()
        status_code: int | None = None
        try:
            resp = await call_next(request)
            status_code = int(getattr(resp, "status_code", 0) or 0)
            return resp
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            rid = getattr(request.state, "request_id", None) or request.headers.get("x-request-id") or "-"
            method = str(request.method or "?").upper()
            path = str(request.url.path or "?")

            # A manual refresh fans out to every probe target; only flag it when it is really slow.
            slow_ms = int(getattr(settings, "PERF_LOG_SLOW_MS", 2000) or 2000)
            lvl = "WARNING" if dt_ms >= float(slow_ms) else "INFO"
            sc = status_code if status_code is not None else "?"
            logger.log(lvl, "HTTP {method} {path} -> {status} ({ms:.1f}ms) rid={rid}", method=method, path=path, status=sc, ms=dt_ms, rid=rid)
