from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from livemonitor.routes.normalize import normalize


class CodeScanError(RuntimeError):
    pass


class _FileRoutesIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file: str
    owner: str = ""
    routes: list[str] = []


@dataclass(frozen=True)
class FileRoutes:
    file: str
    owner: str
    routes: tuple[str, ...]


@dataclass(frozen=True)
class CodePresenceIndex:
    """Read-only snapshot of what the external scanner found in source."""

    routes: frozenset[str] = frozenset()
    kv_prefixes: frozenset[str] = frozenset()
    # Detected routes as scanned (not normalized), in scan order.
    raw_routes: tuple[str, ...] = ()
    per_file_routes: tuple[FileRoutes, ...] = ()
    debug_raw_matches: tuple[str, ...] = ()
    loaded: bool = False
    dropped_entries: int = 0

    @classmethod
    def empty(cls) -> CodePresenceIndex:
        return cls()

    def has_route(self, route: str) -> bool:
        return normalize(route) in self.routes

    def has_kv_prefix(self, prefix: str) -> bool:
        return prefix in self.kv_prefixes

    def to_dict(self) -> dict[str, Any]:
        return {
            "loaded": self.loaded,
            "routes": sorted(self.routes),
            "kv_prefixes": sorted(self.kv_prefixes),
            "per_file_routes": [{"file": f.file, "owner": f.owner, "routes": list(f.routes)} for f in self.per_file_routes],
            "debug_raw_matches": list(self.debug_raw_matches),
            "dropped_entries": self.dropped_entries,
        }


def _strings(value: Any) -> tuple[list[str], int]:
    if not isinstance(value, list):
        return [], (0 if value is None else 1)
    out: list[str] = []
    dropped = 0
    for v in value:
        if isinstance(v, str) and v.strip():
            out.append(v.strip())
        else:
            dropped += 1
    return out, dropped


def _kv_prefix(raw: str) -> str:
    # Scanners report both `course` and `course:`.
    return raw.rstrip(":").strip()


def parse_code_scan(data: Any) -> CodePresenceIndex:
    """Validate a scanner payload into a CodePresenceIndex.

    Fails closed: unparseable entries count as absent, and a payload that is not
    an object yields an empty, not-loaded index.
    """

    if not isinstance(data, dict):
        logger.warning("code scan payload is {t}, treating as empty", t=type(data).__name__)
        return CodePresenceIndex.empty()

    routes, d1 = _strings(data.get("detectedRoutes"))
    prefixes, d2 = _strings(data.get("detectedKvPrefixes"))
    raw_matches, d3 = _strings(data.get("debugRawMatches"))
    dropped = d1 + d2 + d3

    per_file: list[FileRoutes] = []
    raw_files = data.get("perFileRoutes")
    if isinstance(raw_files, list):
        for entry in raw_files:
            try:
                f = _FileRoutesIn.model_validate(entry)
            except ValidationError:
                dropped += 1
                continue
            per_file.append(FileRoutes(file=f.file, owner=f.owner, routes=tuple(r for r in f.routes if r.strip())))
    elif raw_files is not None:
        dropped += 1

    kv = frozenset(p for p in (_kv_prefix(x) for x in prefixes) if p)
    if dropped:
        logger.warning("code scan: dropped {n} malformed entries", n=dropped)

    return CodePresenceIndex(
        routes=frozenset(normalize(r) for r in routes),
        kv_prefixes=kv,
        raw_routes=tuple(routes),
        per_file_routes=tuple(per_file),
        debug_raw_matches=tuple(raw_matches),
        loaded=True,
        dropped_entries=dropped,
    )


def load_code_scan(path: str | Path) -> CodePresenceIndex:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise CodeScanError(f"cannot read code scan {p}: {e}") from e
    except ValueError as e:
        raise CodeScanError(f"code scan {p} is not valid JSON: {e}") from e
    return parse_code_scan(data)
