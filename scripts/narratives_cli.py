#!/usr/bin/env python3
"""Inspect and maintain the narrative index.

Every command prints one JSON object on stdout (``{"ok": true, ...}``); logs
go to stderr.  Exit codes: 0 ok, 1 error, 75 lock timeout (retry later).
"""
from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

CURATOR_HOME = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(CURATOR_HOME))

from curator.backfill import run_backfill  # noqa: E402
from curator.config import load_config  # noqa: E402
from curator.doc_store import LockTimeoutError, StoreError  # noqa: E402
from curator.models import NarrativeRecord  # noqa: E402
from curator.narrative_store import NarrativeStore  # noqa: E402

logger = logging.getLogger(__name__)

EXIT_LOCK_TIMEOUT = 75


def _brief(n: NarrativeRecord) -> dict[str, Any]:
    return {
        "id": n.id,
        "label": n.label,
        "status": n.status,
        "bookmarkCount": n.bookmark_count,
        "lastUpdatedAt": n.last_updated_at,
    }


def _load_classifier(import_path: str) -> Callable[..., dict[str, Any]]:
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"--classifier must look like 'package.module:function', got {import_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"cannot import classifier module {module_name!r}: {e}") from e
    fn = getattr(module, attr, None)
    if not callable(fn):
        raise ValueError(f"classifier {import_path!r} is not callable")
    return fn


def cmd_summary(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    counts = store.summary_counts()
    top = store.list_narratives(sort="count", limit=args.top)
    recent = store.list_narratives(sort="updated", limit=args.top)
    return {
        "counts": counts,
        "top_by_count": [_brief(n) for n in top],
        "recently_updated": [_brief(n) for n in recent],
        "review_queue": len(store.load_review_queue()),
    }


def cmd_list(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    items = store.list_narratives(sort=args.sort, limit=args.limit, include_merged=args.all)
    return {"narratives": [_brief(n) for n in items]}


def cmd_show(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    n = store.get_narrative(args.id)
    if n is None:
        raise ValueError(f"Narrative not found: {args.id}")
    return {"narrative": n.to_dict()}


def cmd_merge(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    target = store.merge_narratives(args.from_id, args.to_id)
    return {"merged": args.from_id, "into": target.to_dict()}


def cmd_rename(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    n = store.rename_narrative(args.id, args.label)
    return {"narrative": n.to_dict()}


def cmd_rebuild(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    index = store.rebuild_index()
    active = len(index.active())
    return {"narratives": len(index.narratives), "active": active, "merged": len(index.narratives) - active}


def cmd_review(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    entries = store.load_review_queue()
    if args.limit is not None:
        entries = entries[-args.limit:] if args.limit > 0 else []
    return {"entries": [e.to_dict() for e in entries]}


def cmd_audit(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    entries = store.read_audit(limit=args.limit)
    return {"entries": [e.to_dict() for e in entries]}


def cmd_backfill(store: NarrativeStore, args: argparse.Namespace) -> dict[str, Any]:
    classify = _load_classifier(args.classifier)
    stats = run_backfill(
        store,
        classify,
        limit=args.limit,
        since=args.since,
        resume=args.resume,
        dry_run=args.dry_run,
        delay_seconds=args.delay,
    )
    return {"stats": stats}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Narrative index maintenance.")
    parser.add_argument("--config", default=None, help="Path to curator.yaml (default: $CURATOR_CONFIG or $CURATOR_HOME/curator.yaml).")
    parser.add_argument("--data-dir", default=None, help="Data directory (overrides config and CURATOR_DATA_DIR).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("summary", help="Counts plus top and recently updated narratives.")
    p.add_argument("--top", type=int, default=10)
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("list", help="List narratives.")
    p.add_argument("--sort", choices=["updated", "count", "created"], default="updated")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--all", action="store_true", help="Include merged narratives.")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="Show one narrative record.")
    p.add_argument("id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("merge", help="Merge one narrative into another.")
    p.add_argument("from_id")
    p.add_argument("to_id")
    p.set_defaults(func=cmd_merge)

    p = sub.add_parser("rename", help="Rename a narrative (old label becomes an alias).")
    p.add_argument("id")
    p.add_argument("label")
    p.set_defaults(func=cmd_rename)

    p = sub.add_parser("rebuild-index", help="Rebuild the index from processed bookmarks.")
    p.set_defaults(func=cmd_rebuild)

    p = sub.add_parser("review", help="Show the low-confidence review queue.")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_review)

    p = sub.add_parser("audit", help="Show recent assignment decisions.")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("backfill", help="Assign narratives to processed bookmarks that have none.")
    p.add_argument("--classifier", required=True, help="Import path 'package.module:function' of the classifier.")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--since", default=None, help="Only bookmarks processed at or after this ISO timestamp.")
    p.add_argument("--no-resume", dest="resume", action="store_false", help="Ignore the saved checkpoint.")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--delay", type=float, default=0.5, help="Delay between classifier calls in seconds (default: 0.5).")
    p.set_defaults(func=cmd_backfill)
    return parser


def main(argv: list[str]) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(
            Path(args.config).expanduser() if args.config else None,
            data_dir=Path(args.data_dir).expanduser() if args.data_dir else None,
        )
        store = NarrativeStore(cfg)
        out: dict[str, Any] = {"ok": True, "command": args.command}
        out.update(args.func(store, args))
    except LockTimeoutError as e:
        logger.error("Lock timeout: %s", e)
        print(json.dumps({"ok": False, "error": str(e), "retriable": True}, ensure_ascii=False))
        return EXIT_LOCK_TIMEOUT
    except (StoreError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False))
        return 1

    print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
