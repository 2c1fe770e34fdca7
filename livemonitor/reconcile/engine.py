"""Reconciliation of contract, live probes and code scan into rollout status.

`reconcile` is a pure function: it performs no I/O, reads no settings and keeps
no state, so two calls with the same inputs produce identical reports.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from livemonitor.codescan.index import CodePresenceIndex
from livemonitor.kv.audit_client import KvAuditSnapshot
from livemonitor.probe.prober import ProbeResult, RouteState, is_alive
from livemonitor.registry.loader import ContractRegistry
from livemonitor.registry.models import ItemKind, Wave, WaveItem
from livemonitor.routes.normalize import MatchResult, match_detected, normalize


class ItemPresence(str, Enum):
    """Dual-state indicator: not in code / in code only / live."""

    UNKNOWN = "unknown"
    CODE_ONLY = "code_only"
    LIVE = "live"


class KvLiveness(str, Enum):
    POPULATED = "populated"
    EMPTY = "empty"
    # Audit call failed: the count could not be determined.
    UNKNOWN = "unknown"


class AutoStatus(str, Enum):
    FULLY_LIVE = "fully_live"
    PARTIALLY_LIVE = "partially_live"
    COMPLETE_IN_CODE = "complete_in_code"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"


class AlertKind(str, Enum):
    READY_TO_DEPLOY = "ready_to_deploy"
    PARTIAL_DEPLOYMENT = "partial_deployment"
    FULLY_VERIFIED = "fully_verified"
    CODE_COMPLETE = "code_complete"
    CODE_IN_PROGRESS = "code_in_progress"
    AUDIT_UNAVAILABLE = "audit_unavailable"


def pct(part: int, total: int) -> int:
    """Integer percent, half rounded up; 0 for an empty total."""
    if total <= 0:
        return 0
    return (200 * int(part) + int(total)) // (2 * int(total))


def auto_status(code_pct: int, live_pct: int, *, live_tracking: bool) -> tuple[AutoStatus, str]:
    # Live beats code: "in code" is necessary but not sufficient for "shipped".
    if live_tracking:
        if live_pct == 100:
            return AutoStatus.FULLY_LIVE, "LIVE 100%"
        if live_pct > 0:
            return AutoStatus.PARTIALLY_LIVE, f"LIVE {live_pct}%"
    if code_pct == 100:
        return AutoStatus.COMPLETE_IN_CODE, "COMPLETE"
    if code_pct > 0:
        return AutoStatus.IN_PROGRESS, f"{code_pct}%"
    return AutoStatus.PENDING, "PENDING"


@dataclass(frozen=True)
class ReconciledItemStatus:
    item: WaveItem
    in_code: bool
    is_live: bool
    presence: ItemPresence
    probe_state: RouteState | None = None
    kv_count: int | None = None
    kv_liveness: KvLiveness | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": self.item.kind.value,
            "key": self.item.key,
            "owner": self.item.owner,
            "label": self.item.label,
            "in_code": self.in_code,
            "is_live": self.is_live,
            "presence": self.presence.value,
        }
        if self.item.kind is ItemKind.ROUTE:
            out["group"] = self.item.group_id
            out["probe_state"] = self.probe_state.value if self.probe_state else None
        else:
            out["kv_count"] = self.kv_count
            out["kv_status"] = self.kv_liveness.value if self.kv_liveness else None
        return out


@dataclass(frozen=True)
class GapAlert:
    kind: AlertKind
    severity: str
    title: str
    items: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "severity": self.severity, "title": self.title, "items": list(self.items)}


@dataclass(frozen=True)
class ProgressStats:
    total: int
    in_code: int
    live: int
    code_pct: int
    live_pct: int
    auto_status: AutoStatus
    status_label: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "in_code": self.in_code,
            "live": self.live,
            "code_pct": self.code_pct,
            "live_pct": self.live_pct,
            "auto_status": self.auto_status.value,
            "status_label": self.status_label,
        }


@dataclass(frozen=True)
class WaveStatus:
    wave_id: int
    name: str
    description: str
    stats: ProgressStats
    alerts: tuple[GapAlert, ...]
    items: tuple[ReconciledItemStatus, ...]

    @property
    def code_pct(self) -> int:
        return self.stats.code_pct

    @property
    def live_pct(self) -> int:
        return self.stats.live_pct

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.wave_id,
            "name": self.name,
            "description": self.description,
            "codePct": self.stats.code_pct,
            "livePct": self.stats.live_pct,
            "autoStatus": self.stats.auto_status.value,
            "statusLabel": self.stats.status_label,
            "stats": self.stats.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "items": [i.to_dict() for i in self.items],
        }


@dataclass(frozen=True)
class OwnerRollup:
    owner: str
    label: str
    stats: ProgressStats
    # Per-wave slice of the owner's items: (wave_id, stats).
    waves: tuple[tuple[int, ProgressStats], ...]
    items: tuple[ReconciledItemStatus, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "label": self.label,
            "stats": self.stats.to_dict(),
            "waves": [{"id": wid, **s.to_dict()} for wid, s in self.waves],
            "items": [i.to_dict() for i in self.items],
        }


@dataclass(frozen=True)
class DeployGap:
    """A scanned file whose route groups are not (all) reachable on the live server."""

    file: str
    owner: str
    dead_groups: tuple[str, ...]
    live_groups: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "owner": self.owner, "dead_groups": list(self.dead_groups), "live_groups": list(self.live_groups)}


@dataclass(frozen=True)
class ReconciliationReport:
    live_tracking: bool
    code_scan_loaded: bool
    kv_audit_available: bool
    totals: ProgressStats
    waves: tuple[WaveStatus, ...]
    owners: tuple[OwnerRollup, ...]
    waves_in_code: int
    waves_live: int
    groups_alive: int
    groups_total: int
    endpoints_alive: int
    endpoints_total: int
    route_match: MatchResult
    group_code_matches: tuple[tuple[str, int, int], ...]
    unmatched_by_owner: tuple[tuple[str, tuple[str, ...]], ...]
    deploy_checklist: tuple[DeployGap, ...]

    def wave(self, wave_id: int) -> WaveStatus | None:
        for w in self.waves:
            if w.wave_id == int(wave_id):
                return w
        return None

    def owner(self, owner: str) -> OwnerRollup | None:
        for o in self.owners:
            if o.owner == owner:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "live_tracking": self.live_tracking,
            "code_scan_loaded": self.code_scan_loaded,
            "kv_audit_available": self.kv_audit_available,
            "totals": self.totals.to_dict(),
            "waves_in_code": self.waves_in_code,
            "waves_live": self.waves_live,
            "waves_total": len(self.waves),
            "routes": {
                "groups_alive": self.groups_alive,
                "groups_total": self.groups_total,
                "endpoints_alive": self.endpoints_alive,
                "endpoints_total": self.endpoints_total,
            },
            "code_readiness": {
                "matched": len(self.route_match.matched),
                "total": len(self.route_match.matched) + len(self.route_match.unmatched_contract),
                "match_pct": self.route_match.match_pct,
                "groups": [{"group": g, "matched": m, "total": t} for g, m, t in self.group_code_matches],
                "unmatched_by_owner": {o: list(rs) for o, rs in self.unmatched_by_owner},
                "undocumented": list(self.route_match.unmatched_detected),
            },
            "deploy_checklist": [d.to_dict() for d in self.deploy_checklist],
            "waves": [w.to_dict() for w in self.waves],
            "owners": [o.to_dict() for o in self.owners],
        }


def _stats(statuses: Iterable[ReconciledItemStatus], *, live_tracking: bool) -> ProgressStats:
    statuses = list(statuses)
    n = len(statuses)
    k = sum(1 for s in statuses if s.in_code)
    m = sum(1 for s in statuses if s.is_live)
    code_pct = pct(k, n)
    live_pct = pct(m, n)
    status, label = auto_status(code_pct, live_pct, live_tracking=live_tracking)
    return ProgressStats(total=n, in_code=k, live=m, code_pct=code_pct, live_pct=live_pct, auto_status=status, status_label=label)


def _gap_alerts(stats: ProgressStats, statuses: tuple[ReconciledItemStatus, ...], *, live_tracking: bool) -> tuple[GapAlert, ...]:
    alerts: list[GapAlert] = []
    code_pct, live_pct = stats.code_pct, stats.live_pct

    if live_tracking:
        pending_deploy = tuple(s.item.key for s in statuses if s.in_code and not s.is_live)
        if code_pct > 0 and live_pct == 0:
            alerts.append(
                GapAlert(
                    kind=AlertKind.READY_TO_DEPLOY,
                    severity="warning",
                    title=f"{len(pending_deploy)} item(s) in code but not live",
                    items=pending_deploy,
                )
            )
        elif 0 < live_pct < 100:
            alerts.append(
                GapAlert(
                    kind=AlertKind.PARTIAL_DEPLOYMENT,
                    severity="warning",
                    title=f"partial deployment: {stats.live}/{stats.total} live",
                    items=pending_deploy,
                )
            )
        elif live_pct == 100:
            alerts.append(GapAlert(kind=AlertKind.FULLY_VERIFIED, severity="info", title="all items verified live"))

        unknown_kv = tuple(s.item.key for s in statuses if s.kv_liveness is KvLiveness.UNKNOWN)
        if unknown_kv:
            alerts.append(
                GapAlert(
                    kind=AlertKind.AUDIT_UNAVAILABLE,
                    severity="warning",
                    title=f"KV audit unavailable: {len(unknown_kv)} pattern count(s) unknown",
                    items=unknown_kv,
                )
            )
    else:
        if code_pct == 100:
            alerts.append(GapAlert(kind=AlertKind.CODE_COMPLETE, severity="info", title="all items present in code"))
        elif code_pct > 0:
            missing = tuple(s.item.key for s in statuses if not s.in_code)
            alerts.append(
                GapAlert(
                    kind=AlertKind.CODE_IN_PROGRESS,
                    severity="info",
                    title=f"{len(missing)} item(s) not yet in code",
                    items=missing,
                )
            )

    return tuple(alerts)


def _item_status(
    item: WaveItem,
    *,
    matched: frozenset[str],
    code_index: CodePresenceIndex,
    probe_states: Mapping[str, RouteState],
    kv_audit: KvAuditSnapshot,
) -> ReconciledItemStatus:
    if item.kind is ItemKind.ROUTE:
        in_code = code_index.loaded and normalize(item.key) in matched
        state = probe_states.get(item.group_id or "", RouteState.PENDING)
        live = is_alive(state)
        presence = ItemPresence.LIVE if live else (ItemPresence.CODE_ONLY if in_code else ItemPresence.UNKNOWN)
        return ReconciledItemStatus(item=item, in_code=in_code, is_live=live, presence=presence, probe_state=state)

    in_code = code_index.loaded and item.key in code_index.kv_prefixes
    count = kv_audit.count_for(item.key)
    live = count > 0
    if live:
        liveness = KvLiveness.POPULATED
    elif not kv_audit.available:
        liveness = KvLiveness.UNKNOWN
    else:
        liveness = KvLiveness.EMPTY
    presence = ItemPresence.LIVE if live else (ItemPresence.CODE_ONLY if in_code else ItemPresence.UNKNOWN)
    return ReconciledItemStatus(
        item=item,
        in_code=in_code,
        is_live=live,
        presence=presence,
        kv_count=count if kv_audit.available else None,
        kv_liveness=liveness,
    )


def _wave_status(wave: Wave, statuses: tuple[ReconciledItemStatus, ...], *, live_tracking: bool) -> WaveStatus:
    stats = _stats(statuses, live_tracking=live_tracking)
    return WaveStatus(
        wave_id=wave.wave_id,
        name=wave.name,
        description=wave.description,
        stats=stats,
        alerts=_gap_alerts(stats, statuses, live_tracking=live_tracking),
        items=statuses,
    )


def reconcile(
    registry: ContractRegistry,
    probes: Iterable[ProbeResult],
    code_index: CodePresenceIndex,
    kv_audit: KvAuditSnapshot,
    *,
    live_tracking: bool = True,
) -> ReconciliationReport:
    probe_states: dict[str, RouteState] = {p.group_id: p.state for p in probes}

    detected = code_index.raw_routes if code_index.loaded else ()
    match = match_detected(registry.contract_routes(), detected)

    # Per-item results are computed once and shared by waves and owners.
    by_item: dict[tuple[str, str], ReconciledItemStatus] = {}
    wave_of: dict[tuple[str, str], int] = {}
    waves: list[WaveStatus] = []
    for w in registry.waves:
        statuses: list[ReconciledItemStatus] = []
        for item in w.items:
            st = _item_status(item, matched=match.matched_normalized, code_index=code_index, probe_states=probe_states, kv_audit=kv_audit)
            by_item[(item.kind.value, item.key)] = st
            wave_of[(item.kind.value, item.key)] = w.wave_id
            statuses.append(st)
        waves.append(_wave_status(w, tuple(statuses), live_tracking=live_tracking))

    owners: list[OwnerRollup] = []
    for owner in registry.owners():
        keys = [(i.kind.value, i.key) for i in registry.items_for_owner(owner)]
        items = tuple(by_item[k] for k in keys)
        per_wave: list[tuple[int, ProgressStats]] = []
        for w in registry.waves:
            subset = [by_item[k] for k in keys if wave_of[k] == w.wave_id]
            if subset:
                per_wave.append((w.wave_id, _stats(subset, live_tracking=live_tracking)))
        team = registry.team(owner)
        owners.append(
            OwnerRollup(
                owner=owner,
                label=team.label if team else owner,
                stats=_stats(items, live_tracking=live_tracking),
                waves=tuple(per_wave),
                items=items,
            )
        )

    all_items = [s for w in waves for s in w.items]
    totals = _stats(all_items, live_tracking=live_tracking)

    groups_alive = 0
    endpoints_alive = 0
    group_code_matches: list[tuple[str, int, int]] = []
    for g in registry.groups:
        if is_alive(probe_states.get(g.group_id, RouteState.PENDING)):
            groups_alive += 1
            endpoints_alive += len(g.routes)
        matched_n = sum(1 for r in g.routes if normalize(r) in match.matched_normalized)
        group_code_matches.append((g.group_id, matched_n, len(g.routes)))

    unmatched: dict[str, list[str]] = {}
    for r in match.unmatched_contract:
        g = registry.group_for_route(r)
        unmatched.setdefault(g.owner if g else "", []).append(r)

    checklist: list[DeployGap] = []
    if live_tracking and code_index.loaded:
        for f in code_index.per_file_routes:
            file_groups: list[str] = []
            for r in f.routes:
                g = registry.group_for_route(r)
                if g is not None and g.group_id not in file_groups:
                    file_groups.append(g.group_id)
            live_groups = tuple(gid for gid in file_groups if is_alive(probe_states.get(gid, RouteState.PENDING)))
            dead_groups = tuple(gid for gid in file_groups if gid not in live_groups)
            if dead_groups:
                checklist.append(DeployGap(file=f.file, owner=f.owner, dead_groups=dead_groups, live_groups=live_groups))

    return ReconciliationReport(
        live_tracking=live_tracking,
        code_scan_loaded=code_index.loaded,
        kv_audit_available=kv_audit.available,
        totals=totals,
        waves=tuple(waves),
        owners=tuple(owners),
        waves_in_code=sum(1 for w in waves if w.stats.total > 0 and w.stats.in_code == w.stats.total),
        waves_live=sum(1 for w in waves if w.stats.total > 0 and w.stats.live == w.stats.total),
        groups_alive=groups_alive,
        groups_total=len(registry.groups),
        endpoints_alive=endpoints_alive,
        endpoints_total=sum(len(g.routes) for g in registry.groups),
        route_match=match,
        group_code_matches=tuple(group_code_matches),
        unmatched_by_owner=tuple((o, tuple(rs)) for o, rs in unmatched.items()),
        deploy_checklist=tuple(checklist),
    )
