"""Records persisted by the narrative store.

Python attributes are snake_case; the JSON documents keep the camelCase keys
the rest of the pipeline (exporter, CLIs, older data) already reads.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Literal

from curator._util import is_non_empty_str

RECENT_BOOKMARK_IDS_CAP = 30
INDEX_VERSION = 1

Confidence = Literal["high", "medium", "low"]
NarrativeStatus = Literal["active", "merged"]

CONFIDENCES: frozenset[str] = frozenset({"high", "medium", "low"})


# ---------------------------------------------------------------------------
# Label helpers
# ---------------------------------------------------------------------------

_PUNCT_RE = re.compile(r"[^\w\s-]")
_WS_RE = re.compile(r"\s+")


def normalize_label(label: str) -> str:
    """Dedup key: lowercase, punctuation stripped, whitespace collapsed/trimmed."""
    s = _PUNCT_RE.sub("", (label or "").lower())
    return _WS_RE.sub(" ", s).strip()


def slugify(label: str) -> str:
    s = _WS_RE.sub("-", (label or "").lower().strip())
    s = re.sub(r"[^\w-]", "", s)
    s = re.sub(r"-+", "-", s)
    return s.strip("-")


# ---------------------------------------------------------------------------
# Ring buffer
# ---------------------------------------------------------------------------

class RecentIds:
    """Fixed-capacity, newest-first, duplicate-free list of bookmark ids."""

    __slots__ = ("capacity", "_ids")

    def __init__(self, ids: Iterable[str] = (), *, capacity: int = RECENT_BOOKMARK_IDS_CAP) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._ids: list[str] = []
        # Stored order is newest-first; keep the first occurrence of each id.
        for i in ids:
            s = str(i)
            if s not in self._ids:
                self._ids.append(s)
        del self._ids[capacity:]

    def push(self, bookmark_id: str) -> None:
        """Move/insert *bookmark_id* to the front, evicting the oldest past capacity."""
        s = str(bookmark_id)
        try:
            self._ids.remove(s)
        except ValueError:
            pass
        self._ids.insert(0, s)
        del self._ids[self.capacity:]

    def to_list(self) -> list[str]:
        return list(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RecentIds):
            return self._ids == other._ids
        if isinstance(other, list):
            return self._ids == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"RecentIds({self._ids!r}, capacity={self.capacity})"


# ---------------------------------------------------------------------------
# Narrative records
# ---------------------------------------------------------------------------

@dataclass
class NarrativeRecord:
    id: str
    slug: str
    label: str
    normalized_label: str
    created_at: str
    last_updated_at: str
    aliases: list[str] = field(default_factory=list)
    status: NarrativeStatus = "active"
    merged_into: str | None = None
    bookmark_count: int = 0
    recent_bookmark_ids: RecentIds = field(default_factory=RecentIds)
    current_summary: str = ""
    last_summary_updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def add_alias(self, label: str) -> None:
        if label and label not in self.aliases:
            self.aliases.append(label)

    def record_bookmark(self, bookmark_id: str, now_iso: str) -> None:
        self.bookmark_count += 1
        self.last_updated_at = now_iso
        self.recent_bookmark_ids.push(bookmark_id)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "slug": self.slug,
            "label": self.label,
            "normalizedLabel": self.normalized_label,
            "aliases": list(self.aliases),
            "status": self.status,
            "createdAt": self.created_at,
            "lastUpdatedAt": self.last_updated_at,
            "bookmarkCount": int(self.bookmark_count),
            "recentBookmarkIds": self.recent_bookmark_ids.to_list(),
            "currentSummary": self.current_summary,
        }
        if self.merged_into is not None:
            out["mergedInto"] = self.merged_into
        if self.last_summary_updated_at is not None:
            out["lastSummaryUpdatedAt"] = self.last_summary_updated_at
        return out

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "NarrativeRecord":
        label = str(obj.get("label") or "")
        status = obj.get("status") if obj.get("status") in ("active", "merged") else "active"
        merged_into = obj.get("mergedInto")
        return cls(
            id=str(obj["id"]),
            slug=str(obj.get("slug") or slugify(label) or "narrative"),
            label=label,
            normalized_label=str(obj.get("normalizedLabel") or normalize_label(label)),
            created_at=str(obj.get("createdAt") or ""),
            last_updated_at=str(obj.get("lastUpdatedAt") or obj.get("createdAt") or ""),
            aliases=[str(a) for a in (obj.get("aliases") or [])],
            status=status,
            merged_into=str(merged_into) if is_non_empty_str(merged_into) else None,
            bookmark_count=int(obj.get("bookmarkCount") or 0),
            recent_bookmark_ids=RecentIds(obj.get("recentBookmarkIds") or []),
            current_summary=str(obj.get("currentSummary") or ""),
            last_summary_updated_at=obj.get("lastSummaryUpdatedAt"),
        )


@dataclass
class NarrativeIndex:
    narratives: dict[str, NarrativeRecord] = field(default_factory=dict)
    version: int = INDEX_VERSION

    def active(self) -> list[NarrativeRecord]:
        return [n for n in self.narratives.values() if n.is_active]

    def find_active_by_normalized(self, normalized: str) -> NarrativeRecord | None:
        if not normalized:
            return None
        for n in self.narratives.values():
            if n.is_active and n.normalized_label == normalized:
                return n
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "narratives": {nid: n.to_dict() for nid, n in self.narratives.items()},
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "NarrativeIndex":
        narratives: dict[str, NarrativeRecord] = {}
        for nid, raw in (obj.get("narratives") or {}).items():
            rec = NarrativeRecord.from_dict({**raw, "id": raw.get("id") or nid})
            narratives[str(nid)] = rec
        return cls(narratives=narratives, version=int(obj.get("version", INDEX_VERSION)))


@dataclass(frozen=True)
class UpsertResult:
    narrative_id: str
    narrative_label: str
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {"narrativeId": self.narrative_id, "narrativeLabel": self.narrative_label, "created": self.created}


# ---------------------------------------------------------------------------
# Classifier assignment (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unassigned:
    """The classifier expressed no narrative opinion."""


@dataclass(frozen=True)
class CreateNew:
    label: str


@dataclass(frozen=True)
class UseExisting:
    narrative_id: str
    label: str | None = None


NarrativeTarget = Unassigned | CreateNew | UseExisting


@dataclass(frozen=True)
class NarrativeAssignment:
    target: NarrativeTarget
    confidence: Confidence = "medium"

    @property
    def label(self) -> str | None:
        if isinstance(self.target, CreateNew):
            return self.target.label
        if isinstance(self.target, UseExisting):
            return self.target.label
        return None

    def decision_id(self) -> str | None:
        return self.target.narrative_id if isinstance(self.target, UseExisting) else None


def assignment_from_categorization(obj: dict[str, Any]) -> NarrativeAssignment:
    """Convert a raw classifier payload into a NarrativeAssignment.

    Key absent -> no opinion (unless a label is given), ``null`` -> create new,
    string -> use that id.
    """
    raw_conf = obj.get("narrativeConfidence")
    confidence = raw_conf if raw_conf in CONFIDENCES else "medium"
    label = obj.get("narrativeLabel")
    label = label.strip() if is_non_empty_str(label) else None

    if "narrativeId" in obj and is_non_empty_str(obj["narrativeId"]):
        target: NarrativeTarget = UseExisting(narrative_id=str(obj["narrativeId"]).strip(), label=label)
    elif ("narrativeId" in obj and obj["narrativeId"] is None) or label:
        target = CreateNew(label=label or "")
    else:
        target = Unassigned()
    return NarrativeAssignment(target=target, confidence=confidence)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Audit log, review queue, backfill checkpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    bookmark_id: str
    candidates_presented: list[tuple[str, str]]
    narrative_id: str | None
    narrative_confidence: Confidence
    narrative_label: str | None = None
    low_confidence_candidate_id: str | None = None
    low_confidence_candidate_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        decision: dict[str, Any] = {
            "narrativeId": self.narrative_id,
            "narrativeConfidence": self.narrative_confidence,
        }
        if self.narrative_label is not None:
            decision["narrativeLabel"] = self.narrative_label
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "bookmarkId": self.bookmark_id,
            "candidatesPresented": [{"id": i, "label": lbl} for i, lbl in self.candidates_presented],
            "decision": decision,
        }
        if self.low_confidence_candidate_id or self.low_confidence_candidate_label:
            cand: dict[str, Any] = {}
            if self.low_confidence_candidate_id:
                cand["id"] = self.low_confidence_candidate_id
            if self.low_confidence_candidate_label:
                cand["label"] = self.low_confidence_candidate_label
            out["lowConfidenceCandidate"] = cand
        return out

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "AuditEntry":
        decision = obj.get("decision") or {}
        cand = obj.get("lowConfidenceCandidate") or {}
        return cls(
            timestamp=str(obj.get("timestamp") or ""),
            bookmark_id=str(obj.get("bookmarkId") or ""),
            candidates_presented=[
                (str(c.get("id") or ""), str(c.get("label") or "")) for c in (obj.get("candidatesPresented") or [])
            ],
            narrative_id=decision.get("narrativeId"),
            narrative_confidence=decision.get("narrativeConfidence") or "medium",
            narrative_label=decision.get("narrativeLabel"),
            low_confidence_candidate_id=cand.get("id"),
            low_confidence_candidate_label=cand.get("label"),
        )


@dataclass(frozen=True)
class ReviewQueueEntry:
    bookmark_id: str
    added_at: str
    candidate_id: str | None = None
    candidate_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"bookmarkId": self.bookmark_id, "addedAt": self.added_at}
        if self.candidate_id:
            out["candidateId"] = self.candidate_id
        if self.candidate_label:
            out["candidateLabel"] = self.candidate_label
        return out

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "ReviewQueueEntry":
        return cls(
            bookmark_id=str(obj.get("bookmarkId") or ""),
            added_at=str(obj.get("addedAt") or ""),
            candidate_id=obj.get("candidateId"),
            candidate_label=obj.get("candidateLabel"),
        )


@dataclass
class BackfillState:
    started_at: str
    last_processed_id: str | None = None
    processed_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastProcessedId": self.last_processed_id,
            "processedCount": int(self.processed_count),
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "BackfillState":
        last = obj.get("lastProcessedId")
        return cls(
            started_at=str(obj.get("startedAt") or ""),
            last_processed_id=str(last) if is_non_empty_str(last) else None,
            processed_count=int(obj.get("processedCount") or 0),
        )
