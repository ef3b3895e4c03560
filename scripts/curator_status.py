#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

CURATOR_HOME = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(CURATOR_HOME))

from curator._util import utc_iso, utc_now  # noqa: E402
from curator.config import load_config  # noqa: E402
from curator.doc_store import StoreError  # noqa: E402
from curator.failure_tracker import FailureTracker  # noqa: E402
from curator.narrative_store import NarrativeStore  # noqa: E402
from curator.rate_limiter import RateLimiter  # noqa: E402

logger = logging.getLogger(__name__)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Show failure records, rate-limit backoff and narrative counts.")
    parser.add_argument("--config", default=None, help="Path to curator.yaml.")
    parser.add_argument("--data-dir", default=None, help="Data directory (overrides config and CURATOR_DATA_DIR).")
    parser.add_argument("--account", action="append", default=[], help="Limit failure listing to this account (repeatable).")
    parser.add_argument("--poison-only", action="store_true", help="Only list poison-pill failures.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    now = utc_now()
    try:
        cfg = load_config(
            Path(args.config).expanduser() if args.config else None,
            data_dir=Path(args.data_dir).expanduser() if args.data_dir else None,
        )
        tracker = FailureTracker(cfg)
        limiter = RateLimiter(cfg)

        failures: dict[str, list[dict[str, Any]]] = {}
        for account in args.account or tracker.list_accounts():
            rows = [r.to_dict() for r in tracker.list_failures(account) if r.poison_pill or not args.poison_only]
            if rows:
                failures[account] = rows

        rate_limits: dict[str, Any] = {}
        for account, state in limiter.all_states().items():
            status = limiter.is_rate_limited(account, now=now)
            rate_limits[account] = {
                **state.to_dict(),
                "isLimited": status.is_limited,
                "remainingMs": status.remaining_ms,
            }

        narratives = NarrativeStore(cfg).summary_counts()
    except (StoreError, ValueError) as e:
        logger.error("status failed: %s", e)
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False))
        return 1

    out = {
        "ok": True,
        "generated_at": utc_iso(now),
        "data_dir": str(cfg.data_dir),
        "failures": failures,
        "poison_pills": sum(1 for rows in failures.values() for r in rows if r["poisonPill"]),
        "rate_limits": rate_limits,
        "narratives": narratives,
    }
    print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
