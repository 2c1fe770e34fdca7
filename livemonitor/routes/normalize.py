"""Route canonicalization and contract-vs-code matching.

Routes show up in three spellings: the contract (`GET /courses/:id`), the
scraped source (`GET ${PREFIX}/courses/:courseId/`) and framework style
(`GET /courses/{course_id}`). `normalize` maps all of them onto one canonical
form so set membership is a valid "is this route in code" test.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable


PARAM_TOKEN = "{id}"

HTTP_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD", "ALL"}

_METHOD_RE = re.compile(r"^([A-Za-z]+)\s+(.*)$")
# `:id`, `:userId` at the start of a segment.
_COLON_PARAM_RE = re.compile(r"(?<=/):[A-Za-z_][A-Za-z0-9_]*")
# `{courseId}` as a whole segment (but not `${...}`).
_BRACE_PARAM_RE = re.compile(r"(?<=/)\{[A-Za-z_][A-Za-z0-9_]*\}(?=/|$)")
_TEMPLATE_RE = re.compile(r"\$\{[^}]*\}")
_MULTI_SLASH_RE = re.compile(r"/{2,}")

# Stand-in for an interpolation while segments are inspected.
_SENTINEL = "\x00"


def _strip_templates(path: str) -> str:
    marked = _TEMPLATE_RE.sub(_SENTINEL, path)
    if _SENTINEL not in marked:
        return path

    out: list[str] = []
    seen_literal = False
    for seg in marked.split("/"):
        if not seg:
            out.append(seg)
            continue
        if _SENTINEL in seg:
            if not seen_literal:
                # Runtime prefix (`${PREFIX}/...`, `make-server-${id}/...`): drop it.
                continue
            if seg == _SENTINEL:
                out.append(PARAM_TOKEN)
            else:
                out.append(seg.replace(_SENTINEL, ""))
            continue
        seen_literal = True
        out.append(seg)
    return "/".join(out)


def normalize(route: str) -> str:
    """Canonical form of a route string; idempotent.

    Order: leading slash added, named params -> `{id}`, template
    interpolations stripped, repeated slashes collapsed, trailing slash removed.
    Stripping an interpolation can expose a new param (`/x/${y}:id`), so the
    middle steps repeat until the path stops changing. A leading HTTP method is
    kept, uppercased.
    """

    s = str(route or "").strip()
    method = ""
    m = _METHOD_RE.match(s)
    if m and m.group(1).upper() in HTTP_METHODS:
        method = m.group(1).upper()
        s = m.group(2).strip()

    prev = None
    while s != prev:
        if not s.startswith("/"):
            s = "/" + s
        prev = s
        s = _COLON_PARAM_RE.sub(PARAM_TOKEN, s)
        s = _BRACE_PARAM_RE.sub(PARAM_TOKEN, s)
        s = _strip_templates(s)
        s = _MULTI_SLASH_RE.sub("/", s)
    if len(s) > 1:
        s = s.rstrip("/") or "/"

    return f"{method} {s}" if method else s


@dataclass(frozen=True)
class MatchResult:
    matched: tuple[str, ...]
    unmatched_contract: tuple[str, ...]
    # In code but not in the contract: informational, never an error.
    unmatched_detected: tuple[str, ...]
    matched_normalized: frozenset[str]

    @property
    def match_pct(self) -> int:
        total = len(self.matched) + len(self.unmatched_contract)
        if total == 0:
            return 0
        return int(100 * len(self.matched) / total + 0.5)


def match_detected(contract_routes: Iterable[str], detected_routes: Iterable[str]) -> MatchResult:
    contract = list(contract_routes)
    detected = list(detected_routes)

    detected_norm = {normalize(r) for r in detected}
    contract_norm = {normalize(r) for r in contract}

    matched: list[str] = []
    unmatched: list[str] = []
    for r in contract:
        (matched if normalize(r) in detected_norm else unmatched).append(r)

    extras: list[str] = []
    seen: set[str] = set()
    for r in detected:
        n = normalize(r)
        if n in contract_norm or n in seen:
            continue
        seen.add(n)
        extras.append(r)

    return MatchResult(
        matched=tuple(matched),
        unmatched_contract=tuple(unmatched),
        unmatched_detected=tuple(extras),
        matched_normalized=frozenset(normalize(r) for r in matched),
    )
