from __future__ import annotations

import sys
from loguru import logger

from livemonitor.core.settings import settings
from livemonitor.utils.request_context import pass_id_var, request_id_var

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "pass={extra[pass_id]} req={extra[request_id]} | {name}:{line} - <level>{message}</level>"
)


def _attach_context(record) -> None:
    record["extra"].setdefault("pass_id", pass_id_var.get() or "-")
    record["extra"].setdefault("request_id", request_id_var.get() or "-")


def configure_logging(level: str | None = None, *, enqueue: bool | None = None) -> None:
    """Route loguru to stderr, tagging each record with the current pass and request id.

    `enqueue` defaults to LOG_ENQUEUE. One-shot CLIs pass False so nothing is
    left in the queue when the process exits.
    """

    if enqueue is None:
        enqueue = bool(getattr(settings, "LOG_ENQUEUE", True))
    logger.remove()
    logger.configure(patcher=_attach_context)
    logger.add(
        sys.stderr,
        level=str(level or settings.LOG_LEVEL).upper(),
        format=_FORMAT,
        backtrace=False,
        diagnose=False,
        enqueue=enqueue,
        serialize=bool(getattr(settings, "LOG_JSON", False)),
    )
