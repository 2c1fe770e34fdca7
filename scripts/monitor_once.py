from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from livemonitor.core.settings import settings
from livemonitor.reconcile.loop import build_orchestrator
from livemonitor.registry.loader import RegistryLoadError
from livemonitor.utils.logger import configure_logging


def main() -> int:
    p = argparse.ArgumentParser(description="Run one monitor pass (probes + audit + reconcile) and print the report as JSON")
    p.add_argument("--contract", default=None, help="contract YAML (default: packaged contract)")
    p.add_argument("--code-scan", default=None, help="code scanner JSON output")
    p.add_argument("--live-prefix", default=None, help="server prefix to probe routes on")
    p.add_argument("--diag-prefix", default=None, help="server prefix serving /health and /audit")
    p.add_argument("--no-live", action="store_true", help="code axis only; skip route probes")
    p.add_argument("--no-discovery", action="store_true")
    p.add_argument("--no-retry", action="store_true", help="skip the cold start retry")
    p.add_argument("--full", action="store_true", help="include probes, audit and discovery in the output")
    p.add_argument("--out", default=None, help="write JSON here instead of stdout")
    args = p.parse_args()

    configure_logging(settings.LOG_LEVEL, enqueue=False)

    if args.contract:
        settings.CONTRACT_PATH = str(args.contract)
    if args.code_scan:
        settings.CODE_SCAN_PATH = str(args.code_scan)
    if args.live_prefix:
        settings.LIVE_PREFIX = str(args.live_prefix)
    if args.diag_prefix:
        settings.DIAG_PREFIX = str(args.diag_prefix)
    if args.no_live:
        settings.LIVE_TRACKING_ENABLED = False
    if args.no_discovery:
        settings.DISCOVERY_ENABLED = False

    try:
        mon = build_orchestrator(settings)
    except RegistryLoadError as e:
        print(f"contract error: {e}", file=sys.stderr)
        return 2

    snap = asyncio.run(mon.refresh() if args.no_retry else mon.initial_load())
    if snap is None:
        print("pass was superseded; no result", file=sys.stderr)
        return 1

    body = snap.to_dict() if args.full else {"pass_id": snap.pass_id, "report": snap.report.to_dict()}
    text = json.dumps(body, indent=2, sort_keys=False)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)
    return 0 if not snap.server_unreachable else 1


if __name__ == "__main__":
    raise SystemExit(main())
