from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class KvKind(str, Enum):
    PRIMARY = "primary"
    INDEX = "index"


class ItemKind(str, Enum):
    ROUTE = "route"
    KV_PRIMARY = "kv-primary"
    KV_INDEX = "kv-index"


@dataclass(frozen=True)
class ProbeTarget:
    path: str
    method: str = "GET"


@dataclass(frozen=True)
class Team:
    team_id: str
    label: str


@dataclass(frozen=True)
class RouteGroup:
    """A set of related endpoints sharing one cheap representative probe."""

    group_id: str
    owner: str
    wave_id: int
    probe: ProbeTarget
    routes: tuple[str, ...]
    description: str = ""


@dataclass(frozen=True)
class KvPatternSpec:
    pattern: str
    kind: KvKind
    owner: str
    wave_id: int
    label: str = ""


@dataclass(frozen=True)
class WaveItem:
    kind: ItemKind
    key: str
    owner: str
    label: str
    # Containing route group (route items only).
    group_id: str | None = None


@dataclass(frozen=True)
class Wave:
    wave_id: int
    name: str
    description: str
    items: tuple[WaveItem, ...]
