"""Runtime configuration and on-disk layout.

Defaults can be overridden by a YAML file (``curator.yaml`` in CURATOR_HOME,
or CURATOR_CONFIG) and the data directory by CURATOR_DATA_DIR.

Example ``curator.yaml``::

    data_dir: /srv/curator/data
    failure:
      max_retries: 5
      retry_delay_seconds: 60
    rate_limit:
      base_backoff_seconds: 60
      max_backoff_seconds: 3600
      backoff_multiplier: 2
    lock:
      timeout_seconds: 10
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from curator._util import safe_path_component
from curator.doc_store import (
    DEFAULT_LOCK_RETRY_INTERVAL_SECONDS,
    DEFAULT_LOCK_STALE_AFTER_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

CURATOR_HOME = Path(os.environ.get("CURATOR_HOME") or Path(__file__).resolve().parents[1])


@dataclass(frozen=True)
class CuratorConfig:
    data_dir: Path

    # Failure tracking (per item).
    max_retries: int = 3
    retry_delay_seconds: float = 30.0

    # Rate limiting (per account).
    rate_limit_base_backoff_seconds: float = 60.0
    rate_limit_max_backoff_seconds: float = 3600.0
    rate_limit_backoff_multiplier: float = 2.0

    # Lock files.
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    lock_retry_interval_seconds: float = DEFAULT_LOCK_RETRY_INTERVAL_SECONDS
    lock_stale_after_seconds: float = DEFAULT_LOCK_STALE_AFTER_SECONDS

    # Narrative candidates fed to the classifier.
    prompt_top_recent: int = 5
    prompt_top_k: int = 10

    # --- paths -------------------------------------------------------------

    @property
    def narrative_dir(self) -> Path:
        return self.data_dir / "narratives"

    @property
    def index_path(self) -> Path:
        return self.narrative_dir / "index.json"

    @property
    def audit_path(self) -> Path:
        return self.narrative_dir / "assignments.ndjson"

    @property
    def review_queue_path(self) -> Path:
        return self.narrative_dir / "review-queue.json"

    @property
    def backfill_state_path(self) -> Path:
        return self.narrative_dir / "backfill-state.json"

    @property
    def processed_dir(self) -> Path:
        return self.data_dir / "processed"

    @property
    def failed_dir(self) -> Path:
        return self.data_dir / "failed"

    @property
    def rate_limit_path(self) -> Path:
        return self.data_dir / "rate-limit.json"

    def account_failed_dir(self, account: str) -> Path:
        return self.failed_dir / safe_path_component(account, what="account")

    def lock_kwargs(self) -> dict[str, Any]:
        return {
            "timeout_seconds": self.lock_timeout_seconds,
            "retry_interval_seconds": self.lock_retry_interval_seconds,
            "stale_after_seconds": self.lock_stale_after_seconds,
        }


# YAML section -> {yaml key: dataclass field}
_YAML_SECTIONS: dict[str, dict[str, str]] = {
    "failure": {
        "max_retries": "max_retries",
        "retry_delay_seconds": "retry_delay_seconds",
    },
    "rate_limit": {
        "base_backoff_seconds": "rate_limit_base_backoff_seconds",
        "max_backoff_seconds": "rate_limit_max_backoff_seconds",
        "backoff_multiplier": "rate_limit_backoff_multiplier",
    },
    "lock": {
        "timeout_seconds": "lock_timeout_seconds",
        "retry_interval_seconds": "lock_retry_interval_seconds",
        "stale_after_seconds": "lock_stale_after_seconds",
    },
    "prompt": {
        "top_recent": "prompt_top_recent",
        "top_k": "prompt_top_k",
    },
}

_FIELD_TYPES = {f.name: f.type for f in fields(CuratorConfig)}


def _coerce(field_name: str, value: Any) -> Any:
    kind = _FIELD_TYPES.get(field_name)
    if kind in ("int", int):
        return int(value)
    return float(value)


def _config_path() -> Path:
    env = os.environ.get("CURATOR_CONFIG")
    if isinstance(env, str) and env.strip():
        return Path(env.strip()).expanduser()
    return CURATOR_HOME / "curator.yaml"


def load_config(config_path: Path | None = None, *, data_dir: Path | None = None) -> CuratorConfig:
    """Build a CuratorConfig from defaults, YAML and environment.

    Precedence for the data directory: *data_dir* argument, CURATOR_DATA_DIR,
    ``data_dir`` in YAML, then ``$CURATOR_HOME/data``.
    """
    path = config_path if config_path is not None else _config_path()
    raw: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"config file must contain a mapping: {path}")
        raw = data
        logger.debug("Loaded config from %s", path)

    overrides: dict[str, Any] = {}
    for section, mapping in _YAML_SECTIONS.items():
        block = raw.get(section)
        if block is None:
            continue
        if not isinstance(block, dict):
            raise ValueError(f"config section {section!r} must be a mapping: {path}")
        for key, field_name in mapping.items():
            if key in block and block[key] is not None:
                overrides[field_name] = _coerce(field_name, block[key])

    if data_dir is None:
        env_dir = os.environ.get("CURATOR_DATA_DIR")
        if isinstance(env_dir, str) and env_dir.strip():
            data_dir = Path(env_dir.strip())
        elif isinstance(raw.get("data_dir"), str) and raw["data_dir"].strip():
            data_dir = Path(raw["data_dir"].strip())
        else:
            data_dir = CURATOR_HOME / "data"

    cfg = CuratorConfig(data_dir=Path(data_dir).expanduser())
    if overrides:
        cfg = replace(cfg, **overrides)
    if cfg.max_retries < 1:
        raise ValueError("failure.max_retries must be >= 1")
    return cfg
