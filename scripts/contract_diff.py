from __future__ import annotations

import argparse
import os
import sys

_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from livemonitor.codescan.index import load_code_scan
from livemonitor.registry.loader import load_registry
from livemonitor.routes.normalize import match_detected


def main() -> None:
    p = argparse.ArgumentParser(description="Diff contract routes against routes detected by the code scanner")
    p.add_argument("scan", help="code scanner JSON output")
    p.add_argument("--contract", default=None, help="contract YAML (default: packaged contract)")
    p.add_argument("--limit", type=int, default=200)
    args = p.parse_args()

    registry = load_registry(args.contract)
    index = load_code_scan(args.scan)
    res = match_detected(registry.contract_routes(), index.raw_routes)

    print(f"Matched: {len(res.matched)}/{len(res.matched) + len(res.unmatched_contract)} ({res.match_pct}%)")

    print("\n---\n")
    print(f"Missing in code: {len(res.unmatched_contract)}")
    for r in res.unmatched_contract:
        g = registry.group_for_route(r)
        owner = g.owner if g else "?"
        print(f"{r}  [{owner}]")

    print("\n---\n")
    print(f"Undocumented in contract: {len(res.unmatched_detected)}")
    for r in res.unmatched_detected[: int(args.limit)]:
        print(r)


if __name__ == "__main__":
    main()
