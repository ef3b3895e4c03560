"""Assign narratives to already-processed bookmarks.

The classifier is injected: ``classify(bookmark, candidates)`` gets the
processed bookmark dict and the prompt candidates and returns the raw
categorization dict (``narrativeId``, ``narrativeLabel``,
``narrativeConfidence`` and, for low confidence, ``narrativeCandidateId`` /
``narrativeCandidateLabel``).

Progress is checkpointed to ``narratives/backfill-state.json`` so an
interrupted run resumes after the last bookmark it finished.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable

from curator._util import is_non_empty_str, parse_iso, utc_iso, utc_now
from curator.doc_store import atomic_write_json
from curator.models import AuditEntry, BackfillState, NarrativeRecord, assignment_from_categorization, normalize_label
from curator.narrative_store import NarrativeStore, scan_processed_bookmarks

logger = logging.getLogger(__name__)

Classifier = Callable[[dict[str, Any], list[NarrativeRecord]], dict[str, Any]]

_URL_RE = re.compile(r"https?://\S+")
_NON_WORD_RE = re.compile(r"[^\w\s-]")
_KEYWORD_RE = re.compile(r"^[a-z][a-z0-9-]*$")

_FLAG_KEYWORDS = (
    ("hasVideo", ("video",)),
    ("hasPodcast", ("podcast",)),
    ("hasGithub", ("github", "code", "repository")),
    ("hasArticle", ("article",)),
    ("hasImages", ("image",)),
)


def extract_keywords(bookmark: dict[str, Any], *, max_text_words: int = 10) -> list[str]:
    """Relevance tags for candidate ranking: content flags, author, long text words."""
    keywords: list[str] = []
    for flag, words in _FLAG_KEYWORDS:
        if bookmark.get(flag):
            keywords.extend(words)

    author = bookmark.get("author")
    if isinstance(author, dict) and is_non_empty_str(author.get("username")):
        keywords.append(normalize_label(author["username"]))

    text = bookmark.get("text") or bookmark.get("originalText") or ""
    if isinstance(text, str):
        cleaned = _NON_WORD_RE.sub(" ", _URL_RE.sub("", text.lower()))
        words = [w for w in cleaned.split() if len(w) > 4 and _KEYWORD_RE.match(w)]
        keywords.extend(words[:max_text_words])

    out: list[str] = []
    for k in keywords:
        if k and k not in out:
            out.append(k)
    return out


def _updated_bookmark(bookmark: dict[str, Any], categorization: dict[str, Any]) -> dict[str, Any]:
    updated = dict(bookmark)
    for key in ("narrativeId", "narrativeLabel", "narrativeConfidence", "narrativeCandidateId", "narrativeCandidateLabel"):
        updated.pop(key, None)
    # A null narrativeId is dropped so the file is not skipped forever as "assigned".
    for key in ("narrativeId", "narrativeLabel", "narrativeConfidence"):
        if categorization.get(key) is not None:
            updated[key] = categorization[key]
    for key in ("narrativeCandidateId", "narrativeCandidateLabel"):
        if is_non_empty_str(categorization.get(key)):
            updated[key] = categorization[key]
    return updated


def run_backfill(
    store: NarrativeStore,
    classify: Classifier,
    *,
    limit: int | None = None,
    since: str | None = None,
    resume: bool = True,
    dry_run: bool = False,
    checkpoint_every: int = 10,
    delay_seconds: float = 0.0,
    now: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    """Classify every processed bookmark that has no narrative yet.

    Returns ``{"processed", "skipped", "errors", "total_processed", "scanned"}``.
    Per-bookmark failures are logged and counted; lock timeouts and other
    store errors for one bookmark do not abort the run.
    """
    clock = now or utc_now

    state: BackfillState | None = store.load_backfill_state() if resume else None
    if state is not None:
        logger.info("Resuming backfill (%d bookmarks processed so far)", state.processed_count)
    else:
        state = BackfillState(started_at=utc_iso(clock()))

    files = scan_processed_bookmarks(store.config.processed_dir)
    scanned = len(files)
    if state.last_processed_id:
        ids = [f.bookmark_id for f in files]
        if state.last_processed_id in ids:
            files = files[ids.index(state.last_processed_id) + 1 :]
            logger.info("Resuming after bookmark %s", state.last_processed_id)

    if since:
        since_dt = parse_iso(since)
        if since_dt is None:
            raise ValueError(f"invalid --since timestamp: {since!r}")
        cutoff = since_dt.timestamp()
        files = [f for f in files if f.sort_ts >= cutoff]

    if limit is not None and limit > 0:
        files = files[:limit]

    logger.info("Backfill: %d of %d processed bookmarks queued (dry_run=%s)", len(files), scanned, dry_run)

    processed = skipped = errors = 0
    for i, bf in enumerate(files):
        bookmark = bf.data
        if "narrativeId" in bookmark:
            skipped += 1
            continue
        try:
            if not dry_run:
                tags = extract_keywords(bookmark)
                candidates = store.get_narratives_for_prompt(tags=tags)
                categorization = dict(classify(bookmark, candidates))

                assignment = assignment_from_categorization(categorization)
                result = store.upsert_from_assignment(bf.bookmark_id, assignment, now=clock())
                if result is not None:
                    categorization["narrativeId"] = result.narrative_id
                    categorization["narrativeLabel"] = result.narrative_label
                    logger.info(
                        "Bookmark %s -> narrative %s%s",
                        bf.bookmark_id,
                        result.narrative_label,
                        " (new)" if result.created else "",
                    )

                cand_id = categorization.get("narrativeCandidateId")
                cand_label = categorization.get("narrativeCandidateLabel")
                has_candidate = is_non_empty_str(cand_id) or is_non_empty_str(cand_label)
                if has_candidate:
                    store.add_to_review_queue(
                        bf.bookmark_id,
                        candidate_id=cand_id if is_non_empty_str(cand_id) else None,
                        candidate_label=cand_label if is_non_empty_str(cand_label) else None,
                        now=clock(),
                    )

                store.append_audit(
                    AuditEntry(
                        timestamp=utc_iso(clock()),
                        bookmark_id=bf.bookmark_id,
                        candidates_presented=[(n.id, n.label) for n in candidates],
                        narrative_id=categorization.get("narrativeId"),
                        narrative_label=categorization.get("narrativeLabel"),
                        narrative_confidence=assignment.confidence,
                        low_confidence_candidate_id=cand_id if is_non_empty_str(cand_id) else None,
                        low_confidence_candidate_label=cand_label if is_non_empty_str(cand_label) else None,
                    )
                )

                atomic_write_json(bf.path, _updated_bookmark(bookmark, categorization), sort_keys=False)
            else:
                logger.info("[dry run] would classify %s", bf.bookmark_id)
        except Exception:
            logger.exception("Backfill failed for bookmark %s", bf.bookmark_id)
            errors += 1
            continue

        processed += 1
        state.last_processed_id = bf.bookmark_id
        state.processed_count += 1

        if not dry_run and checkpoint_every > 0 and processed % checkpoint_every == 0:
            store.save_backfill_state(state)
            logger.info("Backfill checkpoint: %d processed", state.processed_count)

        if not dry_run and delay_seconds > 0 and i < len(files) - 1:
            time.sleep(delay_seconds)

    if not dry_run and processed > 0:
        store.save_backfill_state(state)

    stats = {
        "processed": processed,
        "skipped": skipped,
        "errors": errors,
        "total_processed": state.processed_count,
        "scanned": scanned,
    }
    logger.info("Backfill complete: %s", stats)
    return stats


