from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import httpx
from loguru import logger

from livemonitor.kv.audit_client import AuditSummary, HealthStatus, KvAuditClient
from livemonitor.probe.prober import ProbeResult, Prober, is_alive
from livemonitor.registry.models import ProbeTarget, RouteGroup


@dataclass(frozen=True)
class DiscoveryCandidate:
    endpoint_id: str
    label: str
    description: str = ""


def parse_candidates(raw: str) -> list[DiscoveryCandidate]:
    """Parse `id=label,id2=label2` (label optional)."""
    out: list[DiscoveryCandidate] = []
    seen: set[str] = set()
    for part in str(raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        ident, _, label = part.partition("=")
        ident = ident.strip()
        if not ident or ident in seen:
            continue
        seen.add(ident)
        out.append(DiscoveryCandidate(endpoint_id=ident, label=label.strip() or ident))
    return out


@dataclass(frozen=True)
class DiscoveryTimeouts:
    health_s: float = 8.0
    audit_s: float = 10.0
    route_s: float = 5.0


@dataclass(frozen=True)
class CandidateResult:
    candidate: DiscoveryCandidate
    health_state: str  # ok | error | timeout
    health: HealthStatus
    audit_state: str  # ok | error | skipped
    audit_summary: AuditSummary | None = None
    kv_table: str | None = None
    route_sample: ProbeResult | None = None

    @property
    def responding(self) -> bool:
        return self.health_state == "ok"

    @property
    def has_data(self) -> bool:
        return self.audit_summary is not None and self.audit_summary.total > 0

    @property
    def has_routes(self) -> bool:
        return self.route_sample is not None and is_alive(self.route_sample.state)

    def to_dict(self) -> dict[str, Any]:
        sample = None
        if self.route_sample is not None:
            sample = {
                "path": self.route_sample.target.path,
                "status": self.route_sample.http_status,
                "state": self.route_sample.state.value,
            }
        return {
            "endpoint_id": self.candidate.endpoint_id,
            "label": self.candidate.label,
            "health_state": self.health_state,
            "health": self.health.to_dict(),
            "audit_state": self.audit_state,
            "audit_summary": self.audit_summary.model_dump() if self.audit_summary else None,
            "kv_table": self.kv_table,
            "route_sample": sample,
        }


@dataclass(frozen=True)
class Diagnosis:
    kind: str  # no_server_responds | no_kv_data | data_found | data_mismatch | routes_elsewhere
    level: str  # info | warning | error
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "level": self.level, "message": self.message}


@dataclass(frozen=True)
class DiscoveryReport:
    """One discovery cycle.

    `primary_id` is the deployment the KV audit reads (data axis);
    `route_target_id` is the one the route prober hits (route axis). They are
    checked independently: data can sit on one deployment while the wave routes
    are served by another.
    """

    primary_id: str
    results: tuple[CandidateResult, ...]
    route_target_id: str = ""

    @property
    def route_target(self) -> str:
        return self.route_target_id or self.primary_id

    @property
    def responding(self) -> tuple[str, ...]:
        return tuple(r.candidate.endpoint_id for r in self.results if r.responding)

    @property
    def with_data(self) -> tuple[str, ...]:
        return tuple(r.candidate.endpoint_id for r in self.results if r.has_data)

    @property
    def with_routes(self) -> tuple[str, ...]:
        return tuple(r.candidate.endpoint_id for r in self.results if r.has_routes)

    @property
    def recommended_id(self) -> str | None:
        """The primary when it holds data, else the first candidate that does."""
        data = self.with_data
        if self.primary_id in data:
            return self.primary_id
        return data[0] if data else None

    @property
    def mismatch(self) -> bool:
        data = self.with_data
        return bool(data) and self.primary_id not in data

    @property
    def routes_mismatch(self) -> bool:
        routes = self.with_routes
        return bool(routes) and self.route_target not in routes

    def recommendation(self) -> str | None:
        if not self.mismatch:
            return None
        return (
            f"monitor is pointed at {self.primary_id!r} but live data is on {self.recommended_id!r}; "
            f"switch the primary endpoint"
        )

    def _label(self, endpoint_id: str) -> str:
        for r in self.results:
            if r.candidate.endpoint_id == endpoint_id:
                return r.candidate.label
        return endpoint_id

    def _sample_path(self) -> str:
        for r in self.results:
            if r.route_sample is not None:
                return r.route_sample.target.path
        return "sample route"

    def diagnoses(self) -> list[Diagnosis]:
        if not self.results:
            return []
        out: list[Diagnosis] = []
        responding = self.responding
        data = self.with_data
        routes = self.with_routes

        if not responding:
            out.append(Diagnosis("no_server_responds", "error", "no server responds; check that the edge functions are deployed"))
        elif not data:
            if routes:
                hint = "wave routes exist, run signup/seed to create data"
            else:
                hint = f"wave routes ({self._sample_path()}) are missing too, only the diagnostic routes are deployed"
            out.append(
                Diagnosis("no_kv_data", "warning", f"{len(responding)} server(s) respond but none has KV data; {hint}")
            )
        else:
            totals = {
                r.candidate.endpoint_id: r.audit_summary.total
                for r in self.results
                if r.has_data and r.audit_summary is not None
            }
            found = ", ".join(f"{self._label(e)} ({totals.get(e, 0)} keys)" for e in data)
            out.append(Diagnosis("data_found", "info", f"servers with data: {found}"))
            if self.mismatch:
                out.append(Diagnosis("data_mismatch", "warning", self.recommendation() or ""))

        if self.routes_mismatch:
            where = ", ".join(self._label(e) for e in routes)
            out.append(
                Diagnosis(
                    "routes_elsewhere",
                    "warning",
                    f"wave routes live on {where} but not on the route target {self.route_target!r}; "
                    f"route checks against it will report not_found",
                )
            )
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_id": self.primary_id,
            "route_target_id": self.route_target,
            "responding": list(self.responding),
            "with_data": list(self.with_data),
            "with_routes": list(self.with_routes),
            "recommended_id": self.recommended_id,
            "mismatch": self.mismatch,
            "routes_mismatch": self.routes_mismatch,
            "recommendation": self.recommendation(),
            "diagnoses": [d.to_dict() for d in self.diagnoses()],
            "results": [r.to_dict() for r in self.results],
        }


class DiscoveryService:
    """Probes every candidate deployment concurrently: health, then audit + one route."""

    def __init__(
        self,
        server_url: Callable[[str], str],
        candidates: Iterable[DiscoveryCandidate],
        *,
        timeouts: DiscoveryTimeouts | None = None,
        headers: dict[str, str] | None = None,
        sample_path: str = "/auth/me",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._server_url = server_url
        self.candidates = tuple(candidates)
        self.timeouts = timeouts or DiscoveryTimeouts()
        self._headers = dict(headers or {})
        self.sample_path = sample_path
        self._client = client

    def _sample_group(self) -> RouteGroup:
        return RouteGroup(
            group_id="discovery-sample",
            owner="",
            wave_id=0,
            probe=ProbeTarget(path=self.sample_path, method="GET"),
            routes=(f"GET {self.sample_path}",),
        )

    async def _probe_candidate(self, cand: DiscoveryCandidate, client: httpx.AsyncClient) -> CandidateResult:
        base = self._server_url(cand.endpoint_id)
        kv = KvAuditClient(
            base,
            timeout_s=self.timeouts.audit_s,
            health_timeout_s=self.timeouts.health_s,
            headers=self._headers,
            client=client,
        )
        health = await kv.health()
        if not health.ok:
            state = "timeout" if health.timed_out else "error"
            return CandidateResult(candidate=cand, health_state=state, health=health, audit_state="skipped")

        prober = Prober(base, timeout_s=self.timeouts.route_s, headers=self._headers, client=client)
        snap, sample = await asyncio.gather(kv.fetch_snapshot(), prober.probe(self._sample_group()))

        if snap.available:
            kv_table = (health.kv_table or "unknown") if snap.table_exists else "(table missing)"
            return CandidateResult(
                candidate=cand,
                health_state="ok",
                health=health,
                audit_state="ok",
                audit_summary=snap.summary,
                kv_table=kv_table,
                route_sample=sample,
            )
        return CandidateResult(candidate=cand, health_state="ok", health=health, audit_state="error", route_sample=sample)

    async def discover(self, primary_id: str, route_target_id: str = "") -> DiscoveryReport:
        """`primary_id` is the server the KV audit reads, `route_target_id` the one wave routes are checked on."""

        async def _run(client: httpx.AsyncClient) -> list[CandidateResult]:
            return list(await asyncio.gather(*(self._probe_candidate(c, client) for c in self.candidates)))

        if self._client is not None:
            results = await _run(self._client)
        else:
            async with httpx.AsyncClient() as client:
                results = await _run(client)

        report = DiscoveryReport(
            primary_id=str(primary_id),
            results=tuple(results),
            route_target_id=str(route_target_id or ""),
        )
        for d in report.diagnoses():
            if d.level == "info":
                logger.info("discovery: {msg}", msg=d.message)
            else:
                logger.warning("discovery [{kind}]: {msg}", kind=d.kind, msg=d.message)
        return report
