"""Per-item failure records with exponential retry backoff and poison pills.

One file per (account, item): ``failed/<account>/<itemId>.json``.  Records are
replaced atomically and are not locked; only the poller for an account writes
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from curator._util import as_utc, parse_iso, safe_path_component, utc_iso
from curator.config import CuratorConfig
from curator.doc_store import atomic_write_json, load_json_document

logger = logging.getLogger(__name__)

FAILURE_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["account", "itemId", "attempts", "poisonPill"],
    "properties": {
        "account": {"type": "string"},
        "itemId": {"type": "string"},
        "errorType": {"type": "string"},
        "errorMessage": {"type": "string"},
        "firstSeen": {"type": "string"},
        "lastSeen": {"type": "string"},
        "nextRetryAt": {"type": ["string", "null"]},
        "attempts": {"type": "integer", "minimum": 1},
        "poisonPill": {"type": "boolean"},
    },
}


@dataclass
class FailureRecord:
    account: str
    item_id: str
    error_type: str
    error_message: str
    first_seen: str
    last_seen: str
    next_retry_at: str | None
    attempts: int
    poison_pill: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "itemId": self.item_id,
            "errorType": self.error_type,
            "errorMessage": self.error_message,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "nextRetryAt": self.next_retry_at,
            "attempts": int(self.attempts),
            "poisonPill": bool(self.poison_pill),
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "FailureRecord":
        return cls(
            account=str(obj["account"]),
            item_id=str(obj["itemId"]),
            error_type=str(obj.get("errorType") or ""),
            error_message=str(obj.get("errorMessage") or ""),
            first_seen=str(obj.get("firstSeen") or ""),
            last_seen=str(obj.get("lastSeen") or ""),
            next_retry_at=obj.get("nextRetryAt"),
            attempts=int(obj["attempts"]),
            poison_pill=bool(obj["poisonPill"]),
        )


@dataclass(frozen=True)
class SkipDecision:
    should_skip: bool
    reason: str | None = None
    skip_type: Literal["poison_pill", "backoff"] | None = None


class FailureTracker:
    def __init__(self, config: CuratorConfig) -> None:
        self.config = config

    def _record_path(self, account: str, item_id: str) -> Path:
        return self.config.account_failed_dir(account) / f"{safe_path_component(item_id, what='item id')}.json"

    def get_failure(self, account: str, item_id: str) -> FailureRecord | None:
        """Stored record, None if the item never failed.  Raises on a corrupt record."""
        obj = load_json_document(self._record_path(account, item_id), None, schema=FAILURE_RECORD_SCHEMA)
        return FailureRecord.from_dict(obj) if obj is not None else None

    def record_failure(
        self,
        account: str,
        item_id: str,
        error_type: str,
        error_message: str,
        *,
        now: datetime | None = None,
    ) -> FailureRecord:
        now_dt = as_utc(now)
        now_iso = utc_iso(now_dt)
        path = self._record_path(account, item_id)

        record = self.get_failure(account, item_id)
        if record is None:
            record = FailureRecord(
                account=account,
                item_id=item_id,
                error_type=error_type,
                error_message=error_message,
                first_seen=now_iso,
                last_seen=now_iso,
                next_retry_at=None,
                attempts=1,
                poison_pill=False,
            )
        else:
            record.attempts += 1
            record.error_type = error_type
            record.error_message = error_message
            record.last_seen = now_iso

        if record.attempts >= self.config.max_retries:
            record.poison_pill = True
            record.next_retry_at = None
            logger.warning(
                "Item %s/%s marked poison pill after %d attempts (%s: %s)",
                account,
                item_id,
                record.attempts,
                error_type,
                error_message,
            )
        else:
            delay = self.config.retry_delay_seconds * (2 ** (record.attempts - 1))
            record.poison_pill = False
            record.next_retry_at = utc_iso(now_dt + timedelta(seconds=delay))
            logger.info(
                "Item %s/%s failed (attempt %d/%d), retry in %.0fs",
                account,
                item_id,
                record.attempts,
                self.config.max_retries,
                delay,
            )

        atomic_write_json(path, record.to_dict())
        return record

    def should_skip_retry(self, account: str, item_id: str, *, now: datetime | None = None) -> SkipDecision:
        record = self.get_failure(account, item_id)
        if record is None:
            return SkipDecision(should_skip=False)
        if record.poison_pill:
            return SkipDecision(
                should_skip=True,
                reason=f"poison pill after {record.attempts} attempts: {record.error_type}",
                skip_type="poison_pill",
            )
        retry_at = parse_iso(record.next_retry_at)
        now_dt = as_utc(now)
        if retry_at is not None and retry_at > now_dt:
            remaining = (retry_at - now_dt).total_seconds()
            return SkipDecision(
                should_skip=True,
                reason=f"in backoff, retry in {int(remaining + 0.999)}s",
                skip_type="backoff",
            )
        return SkipDecision(should_skip=False)

    def clear_failure(self, account: str, item_id: str) -> bool:
        """Forget a failure after the item succeeded.  Returns whether a record existed."""
        try:
            self._record_path(account, item_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_failures(self, account: str) -> list[FailureRecord]:
        d = self.config.account_failed_dir(account)
        if not d.is_dir():
            return []
        out: list[FailureRecord] = []
        for path in sorted(d.glob("*.json")):
            if path.name.startswith("."):
                continue
            obj = load_json_document(path, None, schema=FAILURE_RECORD_SCHEMA)
            if obj is not None:
                out.append(FailureRecord.from_dict(obj))
        return out

    def list_accounts(self) -> list[str]:
        d = self.config.failed_dir
        if not d.is_dir():
            return []
        return sorted(p.name for p in d.iterdir() if p.is_dir())
