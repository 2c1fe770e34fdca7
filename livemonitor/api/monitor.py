from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from livemonitor.codescan.index import parse_code_scan
from livemonitor.reconcile.loop import MonitorSnapshot, RefreshOrchestrator

router = APIRouter(prefix="/monitor", tags=["monitor"])


def _monitor(request: Request) -> RefreshOrchestrator:
    err = getattr(request.app.state, "registry_error", None)
    if err:
        raise HTTPException(status_code=500, detail={"error": "registry_load_failed", "message": err})
    mon = getattr(request.app.state, "monitor", None)
    if mon is None:
        raise HTTPException(status_code=503, detail="monitor not started")
    return mon


def _snapshot(mon: RefreshOrchestrator) -> MonitorSnapshot:
    snap = mon.snapshot
    if snap is None:
        raise HTTPException(status_code=503, detail="no completed refresh pass yet")
    return snap


@router.get("/status")
def status(request: Request) -> dict:
    mon = _monitor(request)
    out: dict[str, Any] = {"ok": True, **mon.status()}
    snap = mon.snapshot
    if snap is not None:
        out["server_unreachable"] = snap.server_unreachable
        out["health"] = snap.health.to_dict()
        out["totals"] = snap.report.totals.to_dict()
    return out


@router.get("/report")
def report(request: Request, full: bool = False) -> dict:
    snap = _snapshot(_monitor(request))
    if full:
        return {"ok": True, **snap.to_dict()}
    return {"ok": True, "pass_id": snap.pass_id, "finished_ts": snap.finished_ts, "report": snap.report.to_dict()}


@router.get("/waves/{wave_id}")
def wave_detail(request: Request, wave_id: int) -> dict:
    mon = _monitor(request)
    if mon.registry.wave(wave_id) is None:
        raise HTTPException(status_code=404, detail="wave not found")
    snap = _snapshot(mon)
    w = snap.report.wave(wave_id)
    return {"ok": True, "pass_id": snap.pass_id, "wave": w.to_dict() if w else None}


@router.get("/owners/{owner}")
def owner_detail(request: Request, owner: str) -> dict:
    mon = _monitor(request)
    if mon.registry.team(owner) is None:
        raise HTTPException(status_code=404, detail="owner not found")
    snap = _snapshot(mon)
    o = snap.report.owner(owner)
    progress = snap.kv_audit.progress_for(owner)
    return {
        "ok": True,
        "pass_id": snap.pass_id,
        "owner": o.to_dict() if o else None,
        "kv_progress": progress.model_dump() if progress else None,
        "groups": [g.group_id for g in mon.registry.groups_for_owner(owner)],
    }


@router.post("/refresh")
async def refresh(request: Request) -> dict:
    mon = _monitor(request)
    snap = await mon.refresh()
    if snap is None:
        # A newer pass started while this one ran; its result wins.
        return {"ok": True, "discarded": True, "latest_pass_id": mon.status()["passes_started"]}
    return {"ok": True, "discarded": False, "pass_id": snap.pass_id, "report": snap.report.to_dict()}


@router.get("/discovery")
def discovery(request: Request) -> dict:
    mon = _monitor(request)
    if mon.discovery is None:
        raise HTTPException(status_code=404, detail="discovery disabled")
    snap = _snapshot(mon)
    return {"ok": True, "pass_id": snap.pass_id, "discovery": snap.discovery.to_dict() if snap.discovery else None}


@router.get("/kv/audit")
def kv_audit(request: Request) -> dict:
    snap = _snapshot(_monitor(request))
    return {"ok": True, "pass_id": snap.pass_id, "kv_audit": snap.kv_audit.to_dict()}


@router.get("/kv/browse")
async def kv_browse(request: Request, prefix: str = "") -> dict:
    mon = _monitor(request)
    res = await mon.kv_client.browse(prefix=str(prefix or ""))
    return res.to_dict()


@router.get("/contract")
def contract(request: Request) -> dict:
    mon = _monitor(request)
    return {"ok": True, "contract": mon.registry.to_dict()}


@router.get("/code-scan")
def code_scan(request: Request) -> dict:
    mon = _monitor(request)
    return {"ok": True, "code_index": mon.code_index.to_dict()}


@router.post("/code-scan")
async def replace_code_scan(request: Request, payload: Any = Body(...), refresh: bool = False) -> dict:
    mon = _monitor(request)
    index = parse_code_scan(payload)
    if not index.loaded:
        raise HTTPException(status_code=400, detail="code scan payload must be a JSON object")
    mon.set_code_index(index)
    out: dict[str, Any] = {
        "ok": True,
        "routes": len(index.routes),
        "kv_prefixes": len(index.kv_prefixes),
        "dropped_entries": index.dropped_entries,
    }
    if refresh:
        snap = await mon.refresh()
        out["pass_id"] = snap.pass_id if snap else None
    return out
