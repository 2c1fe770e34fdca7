from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

import httpx
from loguru import logger

from livemonitor.registry.models import ProbeTarget, RouteGroup
from livemonitor.utils.perf import perf_span


class RouteState(str, Enum):
    LIVE = "live"
    AUTH_REQUIRED = "auth_required"
    NOT_FOUND = "not_found"
    ERROR = "error"
    TIMEOUT = "timeout"
    PENDING = "pending"


_ALIVE_STATES = frozenset({RouteState.LIVE, RouteState.AUTH_REQUIRED})


def is_alive(state: RouteState | str) -> bool:
    """True when the route is reachable. The only liveness predicate; use it everywhere."""
    try:
        return RouteState(state) in _ALIVE_STATES
    except ValueError:
        return False


def classify_status(http_status: int) -> RouteState:
    code = int(http_status)
    if code in (200, 201):
        return RouteState.LIVE
    if code in (401, 403):
        # Route exists, auth enforced.
        return RouteState.AUTH_REQUIRED
    if code == 404:
        return RouteState.NOT_FOUND
    if code in (400, 405, 422):
        # Payload or method rejected, but the route resolves.
        return RouteState.LIVE
    return RouteState.ERROR


@dataclass(frozen=True)
class ProbeResult:
    target: ProbeTarget
    group_id: str
    owner: str
    http_status: int
    latency_ms: int
    state: RouteState

    @property
    def alive(self) -> bool:
        return is_alive(self.state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group_id,
            "owner": self.owner,
            "path": self.target.path,
            "method": self.target.method,
            "http_status": self.http_status,
            "latency_ms": self.latency_ms,
            "state": self.state.value,
            "alive": self.alive,
        }


def pending_result(group: RouteGroup) -> ProbeResult:
    return ProbeResult(target=group.probe, group_id=group.group_id, owner=group.owner, http_status=0, latency_ms=0, state=RouteState.PENDING)


_BODY_METHODS = {"POST", "PUT", "PATCH"}


class Prober:
    """Issues one bounded HTTP call per route group and classifies the status code.

    Read-only. No retries: a cold start retry is the orchestrator's business and
    covers the whole batch.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 6.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout_s = float(timeout_s)
        self._headers = dict(headers or {})
        self._client = client

    async def _send(self, client: httpx.AsyncClient, target: ProbeTarget) -> httpx.Response:
        method = target.method.upper()
        url = f"{self.base_url}{target.path}"
        kwargs: dict[str, Any] = {"headers": self._headers, "timeout": httpx.Timeout(self.timeout_s)}
        if method in _BODY_METHODS:
            kwargs["json"] = {}
        # Bounds the whole exchange, not just each socket phase.
        return await asyncio.wait_for(client.request(method, url, **kwargs), timeout=self.timeout_s)

    async def probe(self, group: RouteGroup, client: httpx.AsyncClient | None = None) -> ProbeResult:
        target = group.probe
        t0 = time.perf_counter()
        http_status = 0
        try:
            with perf_span("probe.route", group=group.group_id, path=target.path):
                if client is not None:
                    resp = await self._send(client, target)
                elif self._client is not None:
                    resp = await self._send(self._client, target)
                else:
                    async with httpx.AsyncClient() as own:
                        resp = await self._send(own, target)
            http_status = int(resp.status_code)
            state = classify_status(http_status)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            state = RouteState.TIMEOUT
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            # Unreachable endpoint reads as "route absent", never as "exists".
            logger.debug("probe transport failure {group} {path}: {err}", group=group.group_id, path=target.path, err=str(e))
            state = RouteState.NOT_FOUND

        latency_ms = int((time.perf_counter() - t0) * 1000.0)
        return ProbeResult(
            target=target,
            group_id=group.group_id,
            owner=group.owner,
            http_status=http_status,
            latency_ms=latency_ms,
            state=state,
        )

    async def probe_all(self, groups: Iterable[RouteGroup]) -> list[ProbeResult]:
        groups = list(groups)
        if not groups:
            return []

        async def _run(client: httpx.AsyncClient) -> list[ProbeResult]:
            return list(await asyncio.gather(*(self.probe(g, client) for g in groups)))

        if self._client is not None:
            results = await _run(self._client)
        else:
            async with httpx.AsyncClient() as client:
                results = await _run(client)

        alive = sum(1 for r in results if r.alive)
        logger.info("route probes done: {alive}/{total} alive", alive=alive, total=len(results))
        return results
