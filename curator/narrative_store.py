"""Narrative (topic) index shared by the poller, backfills and the CLIs.

The whole index is a single JSON document.  Every mutation is a
load -> mutate -> save transaction under the index lock, which is what keeps
concurrent upserts from different processes from losing each other's updates.
Reads go through `load_index()` without the lock: atomic writes guarantee a
reader only ever sees a complete document.

The audit log and the review queue have their own lock files, so appending a
decision never waits on (or nests inside) an index transaction.
"""

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Literal, TypeVar

from curator._util import is_non_empty_str, iso_sort_key, utc_iso
from curator.cache import SnapshotCache
from curator.config import CuratorConfig
from curator.doc_store import (
    CorruptDocumentError,
    FileLock,
    StoreError,
    append_jsonl,
    atomic_write_json,
    default_owner,
    load_json_document,
    lock_path_for,
    read_json,
    read_jsonl,
    with_lock,
)
from curator.models import (
    INDEX_VERSION,
    AuditEntry,
    BackfillState,
    CreateNew,
    NarrativeAssignment,
    NarrativeIndex,
    NarrativeRecord,
    RecentIds,
    ReviewQueueEntry,
    Unassigned,
    UpsertResult,
    UseExisting,
    assignment_from_categorization,
    normalize_label,
    slugify,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NarrativeNotFoundError(StoreError):
    pass


class DuplicateLabelError(StoreError):
    pass


class MergeChainError(CorruptDocumentError):
    """`mergedInto` links form a cycle."""


INDEX_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["version", "narratives"],
    "properties": {
        "version": {"type": "integer"},
        "narratives": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["label"],
                "properties": {
                    "id": {"type": "string"},
                    "label": {"type": "string"},
                    "status": {"enum": ["active", "merged"]},
                    "mergedInto": {"type": ["string", "null"]},
                    "aliases": {"type": "array", "items": {"type": "string"}},
                    "bookmarkCount": {"type": "integer", "minimum": 0},
                    "recentBookmarkIds": {"type": "array", "items": {"type": "string"}},
                    "currentSummary": {"type": "string"},
                },
            },
        },
    },
}

REVIEW_QUEUE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["entries"],
    "properties": {
        "entries": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["bookmarkId"],
                "properties": {"bookmarkId": {"type": "string"}},
            },
        },
    },
}

BACKFILL_STATE_SCHEMA: dict[str, Any] = {
    "type": ["object", "null"],
    "properties": {
        "lastProcessedId": {"type": ["string", "null"]},
        "processedCount": {"type": "integer", "minimum": 0},
        "startedAt": {"type": "string"},
    },
}


# ---------------------------------------------------------------------------
# Processed bookmark scan (input to rebuild/backfill)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessedBookmarkFile:
    path: Path
    rel_path: str
    bookmark_id: str
    sort_ts: float
    data: dict[str, Any]


def scan_processed_bookmarks(processed_dir: Path) -> list[ProcessedBookmarkFile]:
    """Return processed bookmark files in deterministic processing order.

    Layout: ``processed/<account>/<category>/<id>.json``.  Ordered by
    ``processedAt`` (falling back to ``createdAt``), then relative path.
    Unreadable files are logged and skipped.
    """
    out: list[ProcessedBookmarkFile] = []
    if not processed_dir.is_dir():
        return out
    for path in processed_dir.glob("*/*/*.json"):
        if not path.is_file() or path.name.startswith("."):
            continue
        res = read_json(path)
        if res.status != "ok" or not isinstance(res.data, dict):
            logger.warning("Skipping unreadable processed bookmark %s (%s)", path, res.error or res.status)
            continue
        data = res.data
        bid = data.get("id") if is_non_empty_str(data.get("id")) else path.stem
        ts_raw = data.get("processedAt") or data.get("createdAt")
        out.append(
            ProcessedBookmarkFile(
                path=path,
                rel_path=path.relative_to(processed_dir).as_posix(),
                bookmark_id=str(bid),
                sort_ts=iso_sort_key(ts_raw),
                data=data,
            )
        )
    out.sort(key=lambda b: (b.sort_ts, b.rel_path))
    return out


# ---------------------------------------------------------------------------
# Merge chain resolution
# ---------------------------------------------------------------------------

def resolve_active(index: NarrativeIndex, narrative_id: str, *, index_path: Path) -> NarrativeRecord | None:
    """Follow ``mergedInto`` links from *narrative_id* to an active record.

    Returns None for unknown ids and dangling chains; raises MergeChainError on
    a cycle.  Each id is visited at most once, so this terminates.
    """
    seen: list[str] = []
    cur = index.narratives.get(narrative_id)
    while cur is not None:
        if cur.is_active:
            return cur
        if cur.id in seen:
            raise MergeChainError(index_path, f"merge cycle: {' -> '.join(seen + [cur.id])}")
        seen.append(cur.id)
        if cur.merged_into is None:
            logger.warning("Narrative %s is merged but has no mergedInto", cur.id)
            return None
        nxt = index.narratives.get(cur.merged_into)
        if nxt is None:
            logger.warning("Narrative %s merged into unknown %s", cur.id, cur.merged_into)
        cur = nxt
    return None


def _new_record(label: str, now_iso: str) -> NarrativeRecord:
    return NarrativeRecord(
        id=str(uuid.uuid4()),
        slug=slugify(label) or "narrative",
        label=label,
        normalized_label=normalize_label(label),
        created_at=now_iso,
        last_updated_at=now_iso,
    )


def _relevance_score(record: NarrativeRecord, tags: list[str]) -> int:
    score = 0
    words = record.normalized_label.split(" ")
    summary = normalize_label(record.current_summary)
    for tag in tags:
        if tag in record.normalized_label:
            score += 2
        score += sum(1 for w in words if w == tag)
        if tag in summary:
            score += 1
    return score


class NarrativeStore:
    def __init__(
        self,
        config: CuratorConfig,
        *,
        cache: SnapshotCache[NarrativeIndex] | None = None,
        owner: str | None = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self.owner = owner or default_owner()

    # --- paths / locks ------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.config.index_path

    def _locked(self, document_path: Path, fn: Callable[[], T]) -> T:
        return with_lock(lock_path_for(document_path), fn, owner=self.owner, **self.config.lock_kwargs())

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    # --- index primitives (unlocked) -----------------------------------------

    def _read_index(self) -> NarrativeIndex:
        obj = load_json_document(self.index_path, None, schema=INDEX_SCHEMA)
        if obj is None:
            return NarrativeIndex()
        if obj.get("version") != INDEX_VERSION:
            raise CorruptDocumentError(self.index_path, f"unsupported version {obj.get('version')!r}")
        return NarrativeIndex.from_dict(obj)

    def load_index(self) -> NarrativeIndex:
        """Current index (empty on first run).  Raises CorruptDocumentError.

        With a cache attached, callers get a private copy of the cached snapshot.
        """
        if self.cache is None:
            return self._read_index()
        return copy.deepcopy(self.cache.get(self._read_index))

    def save_index(self, index: NarrativeIndex) -> None:
        """Unlocked write; multi-step callers must hold the index lock."""
        atomic_write_json(self.index_path, index.to_dict())
        self._invalidate()

    @contextmanager
    def transaction(self) -> Iterator[NarrativeIndex]:
        """Hold the index lock around a fresh (uncached) index; save on clean exit.

        An exception inside the block leaves the stored index untouched.
        """
        with FileLock(lock_path_for(self.index_path), owner=self.owner, **self.config.lock_kwargs()):
            index = self._read_index()
            yield index
            self.save_index(index)

    def _mutate(self, fn: Callable[[NarrativeIndex], tuple[T, bool]]) -> T:
        """Run *fn* on a fresh index under the index lock; save when it reports a change."""

        def run() -> T:
            index = self._read_index()
            result, changed = fn(index)
            if changed:
                self.save_index(index)
            return result

        return self._locked(self.index_path, run)

    # --- upsert ---------------------------------------------------------------

    def upsert_from_assignment(
        self,
        bookmark_id: str,
        assignment: NarrativeAssignment | dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> UpsertResult | None:
        """Attach *bookmark_id* to the narrative the classifier picked.

        Returns None when nothing was recorded: low confidence (route the
        candidate to the review queue instead), no opinion, or an unknown id
        at non-high confidence.
        """
        if isinstance(assignment, dict):
            assignment = assignment_from_categorization(assignment)
        if assignment.confidence == "low":
            return None
        target = assignment.target
        if isinstance(target, Unassigned):
            return None
        label = (assignment.label or "").strip()
        normalized = normalize_label(label)
        if isinstance(target, CreateNew) and not normalized:
            return None
        now_iso = utc_iso(now)

        def apply(index: NarrativeIndex) -> tuple[UpsertResult | None, bool]:
            record: NarrativeRecord | None = None
            created = False
            if isinstance(target, UseExisting):
                record = resolve_active(index, target.narrative_id, index_path=self.index_path)
            if record is None and normalized:
                record = index.find_active_by_normalized(normalized)
            if record is None:
                may_create = bool(normalized) and (
                    isinstance(target, CreateNew) or assignment.confidence == "high"
                )
                if not may_create:
                    logger.info(
                        "Skipping narrative assignment for %s: unknown id %s at %s confidence",
                        bookmark_id,
                        assignment.decision_id(),
                        assignment.confidence,
                    )
                    return None, False
                record = _new_record(label, now_iso)
                index.narratives[record.id] = record
                created = True
                logger.info("Created narrative %s (%s)", record.id, record.label)

            record.record_bookmark(bookmark_id, now_iso)
            return UpsertResult(narrative_id=record.id, narrative_label=record.label, created=created), True

        return self._mutate(apply)

    # --- candidate ranking ------------------------------------------------------

    def get_narratives_for_prompt(
        self,
        *,
        top_recent: int | None = None,
        top_k: int | None = None,
        tags: Iterable[str] = (),
    ) -> list[NarrativeRecord]:
        """Recent narratives followed by tag-relevant ones, deterministic order."""
        top_recent = self.config.prompt_top_recent if top_recent is None else max(0, int(top_recent))
        top_k = self.config.prompt_top_k if top_k is None else max(0, int(top_k))

        active = self.load_index().active()
        if not active:
            return []

        # Stable sorts: label first, then the primary key.
        by_recent = sorted(active, key=lambda n: n.label)
        by_recent.sort(key=lambda n: iso_sort_key(n.last_updated_at), reverse=True)
        recent = by_recent[:top_recent]
        recent_ids = {n.id for n in recent}

        norm_tags = [t for t in (normalize_label(str(x)) for x in tags) if t]
        relevant: list[NarrativeRecord] = []
        if norm_tags and top_k > 0:
            scored = [(n, _relevance_score(n, norm_tags)) for n in active]
            scored.sort(key=lambda s: s[0].label)
            scored.sort(key=lambda s: s[1], reverse=True)
            relevant = [n for n, score in scored if score > 0 and n.id not in recent_ids][:top_k]

        out: list[NarrativeRecord] = []
        seen: set[str] = set()
        for n in recent + relevant:
            if n.id not in seen:
                seen.add(n.id)
                out.append(n)
        return out

    # --- maintenance operations ------------------------------------------------

    def merge_narratives(self, from_id: str, to_id: str, *, now: datetime | None = None) -> NarrativeRecord:
        """Fold *from_id* into *to_id* (or the active narrative *to_id* redirects to)."""
        if from_id == to_id:
            raise ValueError("Cannot merge a narrative into itself")
        now_iso = utc_iso(now)

        def apply(index: NarrativeIndex) -> tuple[NarrativeRecord, bool]:
            src = index.narratives.get(from_id)
            if src is None:
                raise NarrativeNotFoundError(f"Source narrative not found: {from_id}")
            if to_id not in index.narratives:
                raise NarrativeNotFoundError(f"Target narrative not found: {to_id}")
            if not src.is_active:
                raise ValueError(f"Narrative {from_id} is already merged into {src.merged_into}")
            dst = resolve_active(index, to_id, index_path=self.index_path)
            if dst is None:
                raise NarrativeNotFoundError(f"No active narrative behind {to_id}")
            if dst.id == src.id:
                raise ValueError(f"Merging {from_id} into {to_id} would create a merge cycle")

            src.status = "merged"
            src.merged_into = dst.id
            src.last_updated_at = now_iso

            dst.add_alias(src.label)
            for alias in src.aliases:
                dst.add_alias(alias)
            dst.bookmark_count += src.bookmark_count
            # Oldest first so src's newest ids end up nearest the front.
            for bid in reversed(src.recent_bookmark_ids.to_list()):
                dst.recent_bookmark_ids.push(bid)
            dst.last_updated_at = now_iso

            # Keep redirects single-hop.
            for rec in index.narratives.values():
                if rec.merged_into == src.id:
                    rec.merged_into = dst.id

            logger.info("Merged narrative %s (%s) into %s (%s)", src.id, src.label, dst.id, dst.label)
            return copy.deepcopy(dst), True

        return self._mutate(apply)

    def rename_narrative(self, narrative_id: str, new_label: str, *, now: datetime | None = None) -> NarrativeRecord:
        label = (new_label or "").strip()
        normalized = normalize_label(label)
        if not normalized:
            raise ValueError("New label must contain at least one word character")
        now_iso = utc_iso(now)

        with self.transaction() as index:
            rec = index.narratives.get(narrative_id)
            if rec is None:
                raise NarrativeNotFoundError(f"Narrative not found: {narrative_id}")
            if rec.is_active:
                other = index.find_active_by_normalized(normalized)
                if other is not None and other.id != rec.id:
                    raise DuplicateLabelError(f"Label {label!r} already used by narrative {other.id}")
            if rec.label != label:
                rec.add_alias(rec.label)
            rec.label = label
            rec.normalized_label = normalized
            rec.slug = slugify(label) or "narrative"
            rec.last_updated_at = now_iso
        return copy.deepcopy(rec)

    def update_summary(self, narrative_id: str, summary: str, *, now: datetime | None = None) -> NarrativeRecord:
        now_iso = utc_iso(now)

        with self.transaction() as index:
            if narrative_id not in index.narratives:
                raise NarrativeNotFoundError(f"Narrative not found: {narrative_id}")
            rec = resolve_active(index, narrative_id, index_path=self.index_path)
            if rec is None:
                raise NarrativeNotFoundError(f"No active narrative behind {narrative_id}")
            rec.current_summary = summary
            rec.last_summary_updated_at = now_iso
        return copy.deepcopy(rec)

    def rebuild_index(self, *, now: datetime | None = None) -> NarrativeIndex:
        """Reconstruct the index from processed bookmarks carrying a narrativeId.

        Known labels, summaries, aliases and merge status are preserved for ids
        that still have bookmarks; bookmarks pointing at a merged narrative are
        credited to its active target.
        """
        now_iso = utc_iso(now)
        bookmarks = [
            b for b in scan_processed_bookmarks(self.config.processed_dir) if is_non_empty_str(b.data.get("narrativeId"))
        ]

        def run() -> NarrativeIndex:
            try:
                previous = self._read_index()
            except CorruptDocumentError as e:
                logger.warning("Existing narrative index unusable, rebuilding from scratch: %s", e)
                previous = NarrativeIndex()
            rebuilt = self._fold_bookmarks(previous, bookmarks, now_iso)
            self.save_index(rebuilt)
            return rebuilt

        rebuilt = self._locked(self.index_path, run)
        logger.info("Rebuilt narrative index: %d narratives from %d bookmarks", len(rebuilt.narratives), len(bookmarks))
        return rebuilt

    def _fold_bookmarks(
        self,
        previous: NarrativeIndex,
        bookmarks: list[ProcessedBookmarkFile],
        now_iso: str,
    ) -> NarrativeIndex:
        rebuilt = NarrativeIndex()

        def redirect(nid: str) -> str:
            prev = previous.narratives.get(nid)
            if prev is None or prev.is_active:
                return nid
            try:
                target = resolve_active(previous, nid, index_path=self.index_path)
            except MergeChainError as e:
                logger.warning("Ignoring merge chain during rebuild: %s", e)
                return nid
            return target.id if target is not None else nid

        for bm in bookmarks:
            nid = redirect(str(bm.data["narrativeId"]))
            ts = bm.data.get("processedAt") or bm.data.get("createdAt")
            ts = ts if is_non_empty_str(ts) else None
            rec = rebuilt.narratives.get(nid)
            if rec is None:
                prev = previous.narratives.get(nid)
                raw_label = bm.data.get("narrativeLabel")
                label = prev.label if prev else (raw_label.strip() if is_non_empty_str(raw_label) else "Unknown")
                rec = NarrativeRecord(
                    id=nid,
                    slug=prev.slug if prev else (slugify(label) or "narrative"),
                    label=label,
                    normalized_label=normalize_label(label),
                    created_at=(prev.created_at if prev and prev.created_at else ts or now_iso),
                    last_updated_at=ts or (prev.last_updated_at if prev else now_iso),
                    aliases=list(prev.aliases) if prev else [],
                    status=prev.status if prev else "active",
                    merged_into=prev.merged_into if prev else None,
                    current_summary=prev.current_summary if prev else "",
                    last_summary_updated_at=prev.last_summary_updated_at if prev else None,
                )
                rebuilt.narratives[nid] = rec
            rec.bookmark_count += 1
            if ts and iso_sort_key(ts) > iso_sort_key(rec.last_updated_at):
                rec.last_updated_at = ts
            rec.recent_bookmark_ids.push(bm.bookmark_id)

        # Keep merged records whose redirect still lands on a rebuilt narrative.
        for nid, prev in previous.narratives.items():
            if nid in rebuilt.narratives or prev.is_active:
                continue
            target = redirect(nid)
            if target != nid and target in rebuilt.narratives:
                carried = copy.deepcopy(prev)
                carried.merged_into = target
                carried.bookmark_count = 0
                carried.recent_bookmark_ids = RecentIds()
                rebuilt.narratives[nid] = carried
        return rebuilt

    # --- read helpers for CLIs ---------------------------------------------------

    def get_narrative(self, narrative_id: str) -> NarrativeRecord | None:
        return self.load_index().narratives.get(narrative_id)

    def list_narratives(
        self,
        *,
        sort: Literal["updated", "count", "created"] = "updated",
        limit: int | None = 50,
        include_merged: bool = False,
    ) -> list[NarrativeRecord]:
        index = self.load_index()
        items = list(index.narratives.values()) if include_merged else index.active()
        items.sort(key=lambda n: n.label)
        if sort == "count":
            items.sort(key=lambda n: n.bookmark_count, reverse=True)
        elif sort == "created":
            items.sort(key=lambda n: iso_sort_key(n.created_at), reverse=True)
        elif sort == "updated":
            items.sort(key=lambda n: iso_sort_key(n.last_updated_at), reverse=True)
        else:
            raise ValueError(f"unknown sort: {sort!r}")
        return items if limit is None else items[: max(0, int(limit))]

    def summary_counts(self) -> dict[str, int]:
        narratives = self.load_index().narratives.values()
        active = sum(1 for n in narratives if n.is_active)
        total = len(narratives)
        return {"active": active, "merged": total - active, "total": total}

    # --- audit log -------------------------------------------------------------

    def append_audit(self, entry: AuditEntry | dict[str, Any]) -> None:
        row = entry.to_dict() if isinstance(entry, AuditEntry) else dict(entry)
        audit_path = self.config.audit_path
        self._locked(audit_path, lambda: append_jsonl(audit_path, row))

    def read_audit(self, *, limit: int | None = None) -> list[AuditEntry]:
        """Audit entries oldest-first; with *limit*, only the newest ones."""
        rows = read_jsonl(self.config.audit_path)
        if limit is not None:
            rows = rows[-max(0, int(limit)):] if limit > 0 else []
        return [AuditEntry.from_dict(r) for r in rows]

    # --- review queue ------------------------------------------------------------

    def add_to_review_queue(
        self,
        bookmark_id: str,
        *,
        candidate_id: str | None = None,
        candidate_label: str | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueEntry:
        entry = ReviewQueueEntry(
            bookmark_id=bookmark_id,
            added_at=utc_iso(now),
            candidate_id=candidate_id or None,
            candidate_label=candidate_label or None,
        )
        path = self.config.review_queue_path

        def run() -> None:
            queue = load_json_document(path, {"entries": []}, schema=REVIEW_QUEUE_SCHEMA)
            queue["entries"].append(entry.to_dict())
            atomic_write_json(path, queue)

        self._locked(path, run)
        return entry

    def load_review_queue(self) -> list[ReviewQueueEntry]:
        queue = load_json_document(self.config.review_queue_path, {"entries": []}, schema=REVIEW_QUEUE_SCHEMA)
        return [ReviewQueueEntry.from_dict(e) for e in queue["entries"]]

    # --- backfill checkpoint ---------------------------------------------------------

    def load_backfill_state(self) -> BackfillState | None:
        obj = load_json_document(self.config.backfill_state_path, None, schema=BACKFILL_STATE_SCHEMA)
        return BackfillState.from_dict(obj) if obj else None

    def save_backfill_state(self, state: BackfillState) -> None:
        path = self.config.backfill_state_path
        self._locked(path, lambda: atomic_write_json(path, state.to_dict()))
