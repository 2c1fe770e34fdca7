from __future__ import annotations

from contextvars import ContextVar

# Best-effort correlation for logs.
# HTTP middleware sets request_id; the refresh orchestrator sets pass_id for the
# duration of a pass (asyncio tasks copy the current context on creation).
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
pass_id_var: ContextVar[int | None] = ContextVar("pass_id", default=None)
