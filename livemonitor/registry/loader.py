from __future__ import annotations

import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from livemonitor.registry.models import (
    ItemKind,
    KvKind,
    KvPatternSpec,
    ProbeTarget,
    RouteGroup,
    Team,
    Wave,
    WaveItem,
)
from livemonitor.routes.normalize import normalize


DEFAULT_CONTRACT_PATH = Path(__file__).with_name("contract.yaml")

PROBE_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH"}

_ROUTE_RE = re.compile(r"^(GET|POST|PUT|DELETE|PATCH) /\S*$")


class RegistryLoadError(ValueError):
    """The static contract is malformed; no reconciliation may run on it."""


# ── On-disk schema ──


class _TeamIn(BaseModel):
    id: str
    label: str = ""


class _WaveIn(BaseModel):
    id: int
    name: str
    description: str = ""


class _ProbeIn(BaseModel):
    path: str
    method: str = "GET"


class _GroupIn(BaseModel):
    id: str
    owner: str
    wave: int
    probe: _ProbeIn
    routes: list[str] = Field(default_factory=list)
    description: str = ""


class _PatternIn(BaseModel):
    pattern: str
    kind: Literal["primary", "index"]
    owner: str
    wave: int
    label: str = ""


class _ContractIn(BaseModel):
    version: int = 1
    teams: list[_TeamIn] = Field(default_factory=list)
    waves: list[_WaveIn] = Field(default_factory=list)
    route_groups: list[_GroupIn] = Field(default_factory=list)
    kv_patterns: list[_PatternIn] = Field(default_factory=list)


# ── Runtime registry ──


class ContractRegistry:
    """Immutable, indexed view of the rollout contract.

    Built once by `build_registry` / `load_registry`; all lookups are dict hits.
    """

    def __init__(
        self,
        *,
        version: int,
        teams: tuple[Team, ...],
        groups: tuple[RouteGroup, ...],
        patterns: tuple[KvPatternSpec, ...],
        waves: tuple[Wave, ...],
    ) -> None:
        self.version = version
        self.teams = teams
        self.groups = groups
        self.patterns = patterns
        self.waves = waves

        self._teams_by_id: Mapping[str, Team] = MappingProxyType({t.team_id: t for t in teams})
        self._groups_by_id: Mapping[str, RouteGroup] = MappingProxyType({g.group_id: g for g in groups})
        self._patterns_by_key: Mapping[str, KvPatternSpec] = MappingProxyType({p.pattern: p for p in patterns})
        self._waves_by_id: Mapping[int, Wave] = MappingProxyType({w.wave_id: w for w in waves})

        group_for_route: dict[str, RouteGroup] = {}
        for g in groups:
            for r in g.routes:
                group_for_route[normalize(r)] = g
        self._group_for_route: Mapping[str, RouteGroup] = MappingProxyType(group_for_route)

        by_owner_groups: dict[str, list[RouteGroup]] = {}
        for g in groups:
            by_owner_groups.setdefault(g.owner, []).append(g)
        self._groups_by_owner: Mapping[str, tuple[RouteGroup, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in by_owner_groups.items()}
        )

        by_owner_items: dict[str, list[WaveItem]] = {}
        for w in waves:
            for item in w.items:
                by_owner_items.setdefault(item.owner, []).append(item)
        self._items_by_owner: Mapping[str, tuple[WaveItem, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in by_owner_items.items()}
        )

    def __repr__(self) -> str:
        return (
            f"ContractRegistry(version={self.version}, groups={len(self.groups)}, "
            f"patterns={len(self.patterns)}, waves={len(self.waves)})"
        )

    def group(self, group_id: str) -> RouteGroup | None:
        return self._groups_by_id.get(group_id)

    def wave(self, wave_id: int) -> Wave | None:
        return self._waves_by_id.get(int(wave_id))

    def team(self, team_id: str) -> Team | None:
        return self._teams_by_id.get(team_id)

    def pattern(self, pattern: str) -> KvPatternSpec | None:
        return self._patterns_by_key.get(pattern)

    def group_for_route(self, route: str) -> RouteGroup | None:
        return self._group_for_route.get(normalize(route))

    def groups_for_owner(self, owner: str) -> tuple[RouteGroup, ...]:
        return self._groups_by_owner.get(owner, ())

    def items_for_owner(self, owner: str) -> tuple[WaveItem, ...]:
        return self._items_by_owner.get(owner, ())

    def owners(self) -> tuple[str, ...]:
        """Owners in team declaration order, restricted to those owning wave items."""
        return tuple(t.team_id for t in self.teams if t.team_id in self._items_by_owner)

    def contract_routes(self) -> list[str]:
        return [r for g in self.groups for r in g.routes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "teams": [{"id": t.team_id, "label": t.label} for t in self.teams],
            "waves": [
                {
                    "id": w.wave_id,
                    "name": w.name,
                    "description": w.description,
                    "items": [
                        {"kind": i.kind.value, "key": i.key, "owner": i.owner, "label": i.label, "group": i.group_id}
                        for i in w.items
                    ],
                }
                for w in self.waves
            ],
            "route_groups": [
                {
                    "id": g.group_id,
                    "owner": g.owner,
                    "wave": g.wave_id,
                    "probe": {"path": g.probe.path, "method": g.probe.method},
                    "routes": list(g.routes),
                    "description": g.description,
                }
                for g in self.groups
            ],
            "kv_patterns": [
                {"pattern": p.pattern, "kind": p.kind.value, "owner": p.owner, "wave": p.wave_id, "label": p.label}
                for p in self.patterns
            ],
        }


def _fail(msg: str) -> None:
    raise RegistryLoadError(msg)


def build_registry(raw: Any) -> ContractRegistry:
    """Validate a decoded contract document and build the indexed registry."""

    if not isinstance(raw, dict):
        raise RegistryLoadError(f"contract must be a mapping, got {type(raw).__name__}")
    try:
        doc = _ContractIn.model_validate(raw)
    except ValidationError as e:
        raise RegistryLoadError(f"contract schema error: {e}") from e

    teams: list[Team] = []
    seen_teams: set[str] = set()
    for t in doc.teams:
        if t.id in seen_teams:
            _fail(f"duplicate team id: {t.id}")
        seen_teams.add(t.id)
        teams.append(Team(team_id=t.id, label=t.label or t.id))

    wave_ids: set[int] = set()
    for w in doc.waves:
        if w.id in wave_ids:
            _fail(f"duplicate wave id: {w.id}")
        wave_ids.add(w.id)

    groups: list[RouteGroup] = []
    seen_groups: set[str] = set()
    route_owner: dict[str, str] = {}
    for g in doc.route_groups:
        if g.id in seen_groups:
            _fail(f"duplicate route group id: {g.id}")
        seen_groups.add(g.id)
        if g.wave not in wave_ids:
            _fail(f"route group {g.id!r} references unknown wave {g.wave}")
        if g.owner not in seen_teams:
            _fail(f"route group {g.id!r} owned by undeclared team {g.owner!r}")
        if not g.routes:
            _fail(f"route group {g.id!r} has no routes")
        method = g.probe.method.upper()
        if method not in PROBE_METHODS:
            _fail(f"route group {g.id!r} has unsupported probe method {g.probe.method!r}")
        if not g.probe.path.startswith("/"):
            _fail(f"route group {g.id!r} probe path must start with '/': {g.probe.path!r}")
        for r in g.routes:
            if not _ROUTE_RE.match(r):
                _fail(f"route group {g.id!r} has malformed route {r!r} (expected 'METHOD /path')")
            key = normalize(r)
            if key in route_owner:
                _fail(f"route {r!r} declared in both {route_owner[key]!r} and {g.id!r}")
            route_owner[key] = g.id
        groups.append(
            RouteGroup(
                group_id=g.id,
                owner=g.owner,
                wave_id=g.wave,
                probe=ProbeTarget(path=g.probe.path, method=method),
                routes=tuple(g.routes),
                description=g.description,
            )
        )

    patterns: list[KvPatternSpec] = []
    seen_patterns: set[str] = set()
    for p in doc.kv_patterns:
        if p.pattern in seen_patterns:
            _fail(f"duplicate KV pattern: {p.pattern}")
        seen_patterns.add(p.pattern)
        if p.wave not in wave_ids:
            _fail(f"KV pattern {p.pattern!r} references unknown wave {p.wave}")
        if p.owner not in seen_teams:
            _fail(f"KV pattern {p.pattern!r} owned by undeclared team {p.owner!r}")
        patterns.append(
            KvPatternSpec(pattern=p.pattern, kind=KvKind(p.kind), owner=p.owner, wave_id=p.wave, label=p.label or p.pattern)
        )

    waves: list[Wave] = []
    for w in doc.waves:
        items: list[WaveItem] = []
        for g in groups:
            if g.wave_id != w.id:
                continue
            for r in g.routes:
                items.append(WaveItem(kind=ItemKind.ROUTE, key=r, owner=g.owner, label=f"{g.group_id}: {r}", group_id=g.group_id))
        for p in patterns:
            if p.wave_id != w.id:
                continue
            kind = ItemKind.KV_PRIMARY if p.kind is KvKind.PRIMARY else ItemKind.KV_INDEX
            items.append(WaveItem(kind=kind, key=p.pattern, owner=p.owner, label=p.label))
        waves.append(Wave(wave_id=w.id, name=w.name, description=w.description, items=tuple(items)))

    return ContractRegistry(
        version=doc.version,
        teams=tuple(teams),
        groups=tuple(groups),
        patterns=tuple(patterns),
        waves=tuple(waves),
    )


def load_registry(path: str | Path | None = None) -> ContractRegistry:
    p = Path(path) if path else DEFAULT_CONTRACT_PATH
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryLoadError(f"cannot read contract {p}: {e}") from e
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RegistryLoadError(f"contract {p} is not valid YAML: {e}") from e

    reg = build_registry(raw)
    logger.info(
        "contract loaded: {path} v{version} groups={groups} patterns={patterns} waves={waves}",
        path=str(p),
        version=reg.version,
        groups=len(reg.groups),
        patterns=len(reg.patterns),
        waves=len(reg.waves),
    )
    return reg
