from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from livemonitor.codescan.index import CodePresenceIndex, CodeScanError, load_code_scan
from livemonitor.core.settings import Settings, settings
from livemonitor.discovery.service import DiscoveryReport, DiscoveryService, DiscoveryTimeouts, parse_candidates
from livemonitor.kv.audit_client import HealthStatus, KvAuditClient, KvAuditSnapshot
from livemonitor.probe.prober import ProbeResult, Prober, pending_result
from livemonitor.reconcile.engine import ReconciliationReport, reconcile
from livemonitor.registry.loader import ContractRegistry, load_registry
from livemonitor.utils.perf import perf_span
from livemonitor.utils.request_context import pass_id_var


@dataclass(frozen=True)
class MonitorSnapshot:
    """Everything one refresh pass observed. Replaced wholesale by the next pass."""

    pass_id: int
    started_ts: int
    finished_ts: int
    health: HealthStatus
    probes: tuple[ProbeResult, ...]
    kv_audit: KvAuditSnapshot
    code_index: CodePresenceIndex
    discovery: DiscoveryReport | None
    report: ReconciliationReport

    @property
    def server_unreachable(self) -> bool:
        return not self.health.ok and not any(p.alive for p in self.probes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "started_ts": self.started_ts,
            "finished_ts": self.finished_ts,
            "server_unreachable": self.server_unreachable,
            "health": self.health.to_dict(),
            "probes": [p.to_dict() for p in self.probes],
            "kv_audit": self.kv_audit.to_dict(),
            "discovery": self.discovery.to_dict() if self.discovery else None,
            "report": self.report.to_dict(),
        }


class RefreshOrchestrator:
    """Owns the refresh lifecycle around the pure reconciliation engine.

    - one pass = health + audit + route probes (+ discovery) concurrently, then reconcile
    - a pass that finishes after a newer one started is discarded, never merged
    - initial load retries exactly once after a delay when the server looks cold
    """

    def __init__(
        self,
        registry: ContractRegistry,
        *,
        prober: Prober,
        kv_client: KvAuditClient,
        discovery: DiscoveryService | None = None,
        code_index: CodePresenceIndex | None = None,
        live_tracking: bool = True,
        primary_id: str = "",
        route_target_id: str = "",
        code_scan_error: str | None = None,
        cold_start_delay_s: float = 4.0,
        poll_seconds: int = 0,
    ) -> None:
        self.registry = registry
        self.prober = prober
        self.kv_client = kv_client
        self.discovery = discovery
        self.live_tracking = bool(live_tracking)
        self.primary_id = str(primary_id)
        self.route_target_id = str(route_target_id)
        self.cold_start_delay_s = float(cold_start_delay_s)
        self.poll_seconds = int(poll_seconds)

        self._code_index = code_index or CodePresenceIndex.empty()
        self._pass_counter = 0
        self._snapshot: MonitorSnapshot | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_error: str | None = None
        self._discarded = 0
        self.code_scan_error = code_scan_error

    @property
    def snapshot(self) -> MonitorSnapshot | None:
        return self._snapshot

    @property
    def code_index(self) -> CodePresenceIndex:
        return self._code_index

    def set_code_index(self, index: CodePresenceIndex) -> None:
        # Takes effect on the next pass; a running pass keeps the snapshot it started with.
        self._code_index = index
        self.code_scan_error = None

    def status(self) -> dict[str, Any]:
        snap = self._snapshot
        return {
            "running": bool(self._running and self._task and not self._task.done()),
            "poll_seconds": self.poll_seconds,
            "live_tracking": self.live_tracking,
            "passes_started": self._pass_counter,
            "passes_discarded": self._discarded,
            "last_pass_id": snap.pass_id if snap else None,
            "last_pass_ts": snap.finished_ts if snap else None,
            "last_error": self._last_error,
            "code_scan_loaded": self._code_index.loaded,
            "code_scan_error": self.code_scan_error,
        }

    async def _probe_routes(self) -> list[ProbeResult]:
        if not self.live_tracking:
            return [pending_result(g) for g in self.registry.groups]
        return await self.prober.probe_all(self.registry.groups)

    async def _discover(self) -> DiscoveryReport | None:
        if self.discovery is None:
            return None
        return await self.discovery.discover(self.primary_id, self.route_target_id)

    async def refresh(self) -> MonitorSnapshot | None:
        """Run one full pass. Returns None when a newer pass superseded this one."""

        self._pass_counter += 1
        pass_id = self._pass_counter
        token = pass_id_var.set(pass_id)
        try:
            started = int(time.time())
            code_index = self._code_index
            with perf_span("monitor.pass", pass_id=pass_id):
                health, kv_audit, probes, discovery = await asyncio.gather(
                    self.kv_client.health(),
                    self.kv_client.fetch_snapshot(),
                    self._probe_routes(),
                    self._discover(),
                )
                report = reconcile(self.registry, probes, code_index, kv_audit, live_tracking=self.live_tracking)

            if pass_id != self._pass_counter:
                self._discarded += 1
                logger.info("discarding stale pass {pid} (latest={latest})", pid=pass_id, latest=self._pass_counter)
                return None

            snap = MonitorSnapshot(
                pass_id=pass_id,
                started_ts=started,
                finished_ts=int(time.time()),
                health=health,
                probes=tuple(probes),
                kv_audit=kv_audit,
                code_index=code_index,
                discovery=discovery,
                report=report,
            )
            self._snapshot = snap
            self._last_error = None
            logger.info(
                "pass {pid} done: health={h} groups_alive={ga}/{gt} code={c}% live={l}%",
                pid=pass_id,
                h="ok" if health.ok else "down",
                ga=report.groups_alive,
                gt=report.groups_total,
                c=report.totals.code_pct,
                l=report.totals.live_pct,
            )
            return snap
        finally:
            pass_id_var.reset(token)

    async def initial_load(self) -> MonitorSnapshot | None:
        snap = await self.refresh()
        if snap is not None and snap.server_unreachable:
            logger.warning(
                "server unreachable on first pass; retrying once in {d}s (cold start)",
                d=self.cold_start_delay_s,
            )
            await asyncio.sleep(self.cold_start_delay_s)
            if self._pass_counter != snap.pass_id:
                # A manual refresh ran during the delay.
                logger.info("cold start retry skipped: pass {pid} ran meanwhile", pid=self._pass_counter)
                return self._snapshot
            return await self.refresh()
        return snap

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._running = True
        self._last_error = None
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run_loop(self) -> None:
        try:
            await self.initial_load()
        except asyncio.CancelledError:
            return
        except Exception as e:
            self._last_error = str(e)
            logger.exception("monitor initial load error: {}", e)

        if self.poll_seconds <= 0:
            return
        poll = max(5, self.poll_seconds)
        while self._running:
            try:
                await asyncio.sleep(poll)
                await self.refresh()
            except asyncio.CancelledError:
                return
            except Exception as e:
                self._last_error = str(e)
                logger.exception("monitor refresh loop error: {}", e)


def build_orchestrator(cfg: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> RefreshOrchestrator:
    """Wire an orchestrator from settings. Raises RegistryLoadError on a bad contract.

    Discovery checks data against DIAG_PREFIX (the server the KV audit reads) and
    wave routes against LIVE_PREFIX (the server the route prober hits). An
    unreadable code scan is logged and left unloaded.
    """

    cfg = cfg or settings
    registry = load_registry(cfg.CONTRACT_PATH or None)
    headers = cfg.probe_headers()

    prober = Prober(
        cfg.server_base_url(cfg.LIVE_PREFIX),
        timeout_s=cfg.ROUTE_PROBE_TIMEOUT_SECONDS,
        headers=headers,
        client=client,
    )
    kv_client = KvAuditClient(
        cfg.server_base_url(cfg.DIAG_PREFIX),
        timeout_s=cfg.AUDIT_TIMEOUT_SECONDS,
        health_timeout_s=cfg.HEALTH_TIMEOUT_SECONDS,
        headers=headers,
        client=client,
    )
    discovery = None
    if cfg.DISCOVERY_ENABLED:
        discovery = DiscoveryService(
            cfg.server_base_url,
            parse_candidates(cfg.DISCOVERY_CANDIDATES),
            timeouts=DiscoveryTimeouts(
                health_s=cfg.HEALTH_TIMEOUT_SECONDS,
                audit_s=cfg.DISCOVERY_AUDIT_TIMEOUT_SECONDS,
                route_s=cfg.DISCOVERY_ROUTE_TIMEOUT_SECONDS,
            ),
            headers=headers,
            sample_path=cfg.DISCOVERY_SAMPLE_PATH,
            client=client,
        )

    code_index = CodePresenceIndex.empty()
    code_scan_error = None
    if cfg.CODE_SCAN_PATH:
        try:
            code_index = load_code_scan(cfg.CODE_SCAN_PATH)
        except CodeScanError as e:
            # The code axis stays "not loaded"; live probing still runs.
            code_scan_error = str(e)
            logger.warning("code scan not loaded from {path}: {err}", path=cfg.CODE_SCAN_PATH, err=code_scan_error)

    return RefreshOrchestrator(
        registry,
        prober=prober,
        kv_client=kv_client,
        discovery=discovery,
        code_index=code_index,
        live_tracking=cfg.LIVE_TRACKING_ENABLED,
        primary_id=cfg.DIAG_PREFIX,
        route_target_id=cfg.LIVE_PREFIX,
        code_scan_error=code_scan_error,
        cold_start_delay_s=cfg.COLD_START_RETRY_DELAY_SECONDS,
        poll_seconds=cfg.REFRESH_POLL_SECONDS,
    )
