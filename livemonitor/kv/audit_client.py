from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from livemonitor.utils.perf import perf_span


class KvAuditError(RuntimeError):
    pass


# ── Wire shapes (lenient; unknown fields ignored) ──


class _Loose(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AuditSummary(_Loose):
    total: int = 0
    primaries: int = 0
    indices: int = 0
    unknown: int = 0
    score: int = 0


class AuditAlert(_Loose):
    severity: str = "info"
    category: str = ""
    title: str = ""
    detail: str = ""


class _PatternCount(_Loose):
    pattern: str
    count: int = 0


class PatternDetail(_Loose):
    pattern: str
    count: int = 0
    isIndex: bool = False


class DevProgress(_Loose):
    """Per-owner KV breakdown as the audit reports it."""

    dev: str = ""
    totalKeys: int = 0
    primaries: int = 0
    indices: int = 0
    sampleKeys: list[str] = Field(default_factory=list)
    expectedPatterns: int = 0
    populatedPatterns: int = 0
    patternsDetail: list[PatternDetail] = Field(default_factory=list)

    @property
    def populated_pct(self) -> int:
        if self.expectedPatterns <= 0:
            return 0
        return (200 * self.populatedPatterns + self.expectedPatterns) // (2 * self.expectedPatterns)


class UnknownKey(_Loose):
    # A key matching no known pattern, with the audit's closest guess.
    key: str
    suggestion: str = ""


class _KeyPatterns(_Loose):
    recognized: list[_PatternCount] = Field(default_factory=list)
    unknown: list[UnknownKey] = Field(default_factory=list)


class DataShapeIssue(_Loose):
    key: str
    entity: str = ""
    missing: list[str] = Field(default_factory=list)
    extra: list[str] = Field(default_factory=list)


class EntitySample(_Loose):
    key: str
    valuePreview: str = ""


class EntityDetail(_Loose):
    pattern: str
    count: int = 0
    isIndex: bool = False
    dev: str = ""
    entity: str = ""
    description: str = ""
    samples: list[EntitySample] = Field(default_factory=list)


class IndexCheck(_Loose):
    indexKey: str
    referencedPrimary: str = ""
    exists: bool = False


class _AuditIn(_Loose):
    success: bool = True
    tableExists: bool = True
    summary: AuditSummary = Field(default_factory=AuditSummary)
    alerts: list[AuditAlert] = Field(default_factory=list)
    devProgress: list[DevProgress] = Field(default_factory=list)
    keyPatterns: _KeyPatterns = Field(default_factory=_KeyPatterns)
    dataShapeIssues: list[DataShapeIssue] = Field(default_factory=list)
    indexIntegrity: list[IndexCheck] = Field(default_factory=list)
    entityDetails: list[EntityDetail] = Field(default_factory=list)
    error: str | None = None


class _HealthIn(_Loose):
    status: str = ""
    prefix: str | None = None
    kvTable: str | None = None
    tableExists: bool | None = None


class _KvItemIn(_Loose):
    key: str
    value: Any = None


class _BrowseIn(_Loose):
    success: bool = True
    count: int = 0
    prefix: str = ""
    items: list[_KvItemIn] = Field(default_factory=list)
    error: str | None = None


# ── Snapshots handed to the engine ──


@dataclass(frozen=True)
class KvAuditSnapshot:
    """One audit fetch. `available=False` means counts are unknown, not zero."""

    available: bool
    counts: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    summary: AuditSummary | None = None
    alerts: tuple[AuditAlert, ...] = ()
    index_integrity: tuple[IndexCheck, ...] = ()
    unknown_keys: tuple[UnknownKey, ...] = ()
    data_shape_issues: tuple[DataShapeIssue, ...] = ()
    entity_details: tuple[EntityDetail, ...] = ()
    dev_progress: tuple[DevProgress, ...] = ()
    table_exists: bool | None = None
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> KvAuditSnapshot:
        return cls(available=False, error=str(error))

    @classmethod
    def from_counts(cls, counts: Mapping[str, int], **kw: Any) -> KvAuditSnapshot:
        return cls(available=True, counts=MappingProxyType({str(k): int(v) for k, v in counts.items()}), **kw)

    def count_for(self, pattern: str) -> int:
        if not self.available:
            return 0
        return int(self.counts.get(pattern, 0))

    def progress_for(self, dev: str) -> DevProgress | None:
        for d in self.dev_progress:
            if d.dev == dev:
                return d
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "error": self.error,
            "table_exists": self.table_exists,
            "summary": self.summary.model_dump() if self.summary else None,
            "counts": dict(sorted(self.counts.items())),
            "alerts": [a.model_dump() for a in self.alerts],
            "broken_indices": [c.indexKey for c in self.index_integrity if not c.exists],
            "unknown_keys": [u.model_dump() for u in self.unknown_keys],
            "data_shape_issues": [i.model_dump() for i in self.data_shape_issues],
            "entity_details": [e.model_dump() for e in self.entity_details],
            "dev_progress": [{**d.model_dump(), "populatedPct": d.populated_pct} for d in self.dev_progress],
        }


@dataclass(frozen=True)
class HealthStatus:
    ok: bool
    status: str | None = None
    prefix: str | None = None
    kv_table: str | None = None
    table_exists: bool | None = None
    latency_ms: int = 0
    error: str | None = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "prefix": self.prefix,
            "kv_table": self.kv_table,
            "table_exists": self.table_exists,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True)
class KvBrowseResult:
    ok: bool
    prefix: str
    items: tuple[dict[str, Any], ...] = ()
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "prefix": self.prefix, "count": self.count, "items": list(self.items), "error": self.error}


def parse_audit(data: Any) -> KvAuditSnapshot:
    """Turn an /audit payload into a snapshot. Anything unusable -> unavailable."""

    if not isinstance(data, dict):
        return KvAuditSnapshot.unavailable(f"audit payload is {type(data).__name__}, expected object")
    try:
        doc = _AuditIn.model_validate(data)
    except ValidationError as e:
        return KvAuditSnapshot.unavailable(f"audit payload invalid: {e.error_count()} error(s)")
    if not doc.success:
        return KvAuditSnapshot.unavailable(doc.error or "audit reported success=false")

    counts: dict[str, int] = {}
    for d in doc.devProgress:
        for pd in d.patternsDetail:
            counts[pd.pattern] = int(pd.count)
    # keyPatterns.recognized is authoritative when both are present.
    for pc in doc.keyPatterns.recognized:
        counts[pc.pattern] = int(pc.count)

    return KvAuditSnapshot.from_counts(
        counts,
        summary=doc.summary,
        alerts=tuple(doc.alerts),
        index_integrity=tuple(doc.indexIntegrity),
        unknown_keys=tuple(doc.keyPatterns.unknown),
        data_shape_issues=tuple(doc.dataShapeIssues),
        entity_details=tuple(doc.entityDetails),
        dev_progress=tuple(doc.devProgress),
        table_exists=doc.tableExists,
    )


class KvAuditClient:
    """Client for the diagnostic server: /health, /audit, /kv/browse.

    Failures are returned in-band (unavailable snapshot, ok=False) and never raised.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 15.0,
        health_timeout_s: float = 8.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout_s = float(timeout_s)
        self.health_timeout_s = float(health_timeout_s)
        self._headers = dict(headers or {})
        self._client = client

    async def _get_json(self, path: str, *, timeout_s: float, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        kwargs: dict[str, Any] = {"headers": self._headers, "timeout": httpx.Timeout(timeout_s)}
        if params:
            kwargs["params"] = params
        try:
            if self._client is not None:
                r = await self._client.get(url, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    r = await client.get(url, **kwargs)
        except httpx.TimeoutException as e:
            raise KvAuditError(f"timeout ({timeout_s:g}s) calling {path}") from e
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            raise KvAuditError(f"cannot reach {url}: {e}") from e

        if r.status_code >= 400:
            raise KvAuditError(f"HTTP {r.status_code} from {path}: {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise KvAuditError(f"non-JSON body from {path}") from e

    async def fetch_snapshot(self) -> KvAuditSnapshot:
        try:
            with perf_span("kv.audit", base=self.base_url):
                data = await self._get_json("/audit", timeout_s=self.timeout_s)
        except KvAuditError as e:
            logger.warning("kv audit unavailable: {err}", err=str(e))
            return KvAuditSnapshot.unavailable(str(e))
        snap = parse_audit(data)
        if not snap.available:
            logger.warning("kv audit unusable: {err}", err=snap.error)
        return snap

    async def health(self) -> HealthStatus:
        t0 = time.perf_counter()
        try:
            with perf_span("kv.health", base=self.base_url):
                data = await self._get_json("/health", timeout_s=self.health_timeout_s)
        except KvAuditError as e:
            timed_out = isinstance(e.__cause__, httpx.TimeoutException)
            return HealthStatus(ok=False, latency_ms=int((time.perf_counter() - t0) * 1000.0), error=str(e), timed_out=timed_out)

        latency_ms = int((time.perf_counter() - t0) * 1000.0)
        try:
            doc = _HealthIn.model_validate(data if isinstance(data, dict) else {})
        except ValidationError:
            return HealthStatus(ok=False, latency_ms=latency_ms, error="health payload invalid")
        return HealthStatus(
            ok=doc.status == "ok",
            status=doc.status or None,
            prefix=doc.prefix,
            kv_table=doc.kvTable,
            table_exists=doc.tableExists,
            latency_ms=latency_ms,
            error=None if doc.status == "ok" else f"status={doc.status!r}",
        )

    async def browse(self, prefix: str = "") -> KvBrowseResult:
        params = {"prefix": prefix} if prefix else None
        try:
            data = await self._get_json("/kv/browse", timeout_s=self.timeout_s, params=params)
        except KvAuditError as e:
            return KvBrowseResult(ok=False, prefix=prefix, error=str(e))
        try:
            doc = _BrowseIn.model_validate(data if isinstance(data, dict) else {})
        except ValidationError:
            return KvBrowseResult(ok=False, prefix=prefix, error="browse payload invalid")
        if not doc.success:
            return KvBrowseResult(ok=False, prefix=prefix, error=doc.error or "browse reported success=false")
        return KvBrowseResult(ok=True, prefix=prefix, items=tuple({"key": i.key, "value": i.value} for i in doc.items))
