"""Per-account rate-limit backoff, persisted in one shared document.

All accounts live in ``rate-limit.json`` (``{"accounts": {name: state}}``), so
every read-modify-write runs under that document's lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from curator._util import as_utc, parse_iso, utc_iso
from curator.config import CuratorConfig
from curator.doc_store import atomic_write_json, default_owner, load_json_document, lock_path_for, with_lock

logger = logging.getLogger(__name__)

RATE_LIMIT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["accounts"],
    "properties": {
        "accounts": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["consecutiveRateLimits"],
                "properties": {
                    "account": {"type": "string"},
                    "nextAllowedPollAt": {"type": ["string", "null"]},
                    "consecutiveRateLimits": {"type": "integer", "minimum": 0},
                    "lastRateLimitAt": {"type": ["string", "null"]},
                },
            },
        },
    },
}


@dataclass
class RateLimitState:
    account: str
    next_allowed_poll_at: str | None
    consecutive_rate_limits: int
    last_rate_limit_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "nextAllowedPollAt": self.next_allowed_poll_at,
            "consecutiveRateLimits": int(self.consecutive_rate_limits),
            "lastRateLimitAt": self.last_rate_limit_at,
        }

    @classmethod
    def from_dict(cls, account: str, obj: dict[str, Any]) -> "RateLimitState":
        return cls(
            account=str(obj.get("account") or account),
            next_allowed_poll_at=obj.get("nextAllowedPollAt"),
            consecutive_rate_limits=int(obj.get("consecutiveRateLimits") or 0),
            last_rate_limit_at=obj.get("lastRateLimitAt"),
        )


@dataclass(frozen=True)
class RateLimitStatus:
    is_limited: bool
    remaining_ms: int = 0


class RateLimiter:
    def __init__(self, config: CuratorConfig, *, owner: str | None = None) -> None:
        self.config = config
        self.owner = owner or default_owner()

    @property
    def path(self) -> Path:
        return self.config.rate_limit_path

    def _load(self) -> dict[str, Any]:
        return load_json_document(self.path, {"accounts": {}}, schema=RATE_LIMIT_SCHEMA)

    def _locked(self, fn):
        return with_lock(lock_path_for(self.path), fn, owner=self.owner, **self.config.lock_kwargs())

    def backoff_seconds(self, consecutive: int) -> float:
        cfg = self.config
        raw = cfg.rate_limit_base_backoff_seconds * (cfg.rate_limit_backoff_multiplier ** max(0, consecutive - 1))
        return min(raw, cfg.rate_limit_max_backoff_seconds)

    def record_rate_limit(self, account: str, *, now: datetime | None = None) -> RateLimitState:
        now_dt = as_utc(now)

        def run() -> RateLimitState:
            store = self._load()
            prev = store["accounts"].get(account)
            consecutive = (int(prev.get("consecutiveRateLimits") or 0) if prev else 0) + 1
            backoff = self.backoff_seconds(consecutive)
            state = RateLimitState(
                account=account,
                next_allowed_poll_at=utc_iso(now_dt + timedelta(seconds=backoff)),
                consecutive_rate_limits=consecutive,
                last_rate_limit_at=utc_iso(now_dt),
            )
            store["accounts"][account] = state.to_dict()
            atomic_write_json(self.path, store)
            logger.warning(
                "Account %s rate limited (%d consecutive), backing off %.0fs",
                account,
                consecutive,
                backoff,
            )
            return state

        return self._locked(run)

    def clear_rate_limit(self, account: str) -> None:
        """Reset the counter after a successful poll; keeps lastRateLimitAt for history."""

        def run() -> None:
            store = self._load()
            prev = store["accounts"].get(account)
            if prev is None:
                return
            store["accounts"][account] = RateLimitState(
                account=account,
                next_allowed_poll_at=None,
                consecutive_rate_limits=0,
                last_rate_limit_at=prev.get("lastRateLimitAt"),
            ).to_dict()
            atomic_write_json(self.path, store)

        self._locked(run)

    def is_rate_limited(self, account: str, *, now: datetime | None = None) -> RateLimitStatus:
        raw = self._load()["accounts"].get(account)
        if raw is None:
            return RateLimitStatus(is_limited=False)
        next_at = parse_iso(raw.get("nextAllowedPollAt"))
        if next_at is None:
            return RateLimitStatus(is_limited=False)
        now_dt = as_utc(now)
        if next_at > now_dt:
            return RateLimitStatus(is_limited=True, remaining_ms=int((next_at - now_dt).total_seconds() * 1000))
        return RateLimitStatus(is_limited=False)

    def all_states(self) -> dict[str, RateLimitState]:
        accounts = self._load()["accounts"]
        return {name: RateLimitState.from_dict(name, raw) for name, raw in sorted(accounts.items())}
