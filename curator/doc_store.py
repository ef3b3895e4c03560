"""Crash-safe JSON documents and O_EXCL lock files.

Every document the curator persists goes through `atomic_write_json` (readers
never observe a partial file) and every read-modify-write sequence runs under
a `FileLock` scoped to that document.  The lock is advisory: it only protects
callers that take it.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal, TypeVar

import jsonschema

from curator._util import utc_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_RETRY_INTERVAL_SECONDS = 0.05
DEFAULT_LOCK_STALE_AFTER_SECONDS = 60.0


class StoreError(RuntimeError):
    pass


class CorruptDocumentError(StoreError):
    """A document exists but cannot be trusted (bad JSON, empty, wrong shape)."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"corrupt document {path}: {detail}")
        self.path = path
        self.detail = detail


class LockTimeoutError(StoreError):
    """The lock stayed held by someone else for the whole timeout.

    Callers should retry later (next poll cycle) rather than treat it as fatal.
    """

    retriable = True

    def __init__(self, lock_path: Path, timeout_seconds: float, info: "LockInfo | None") -> None:
        super().__init__(f"lock held: {lock_path} timeout={timeout_seconds}s info={info}")
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        self.info = info


@dataclass(frozen=True)
class LockInfo:
    owner: str
    pid: int
    hostname: str
    token: str
    created_at: str


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JsonRead:
    """Outcome of reading a JSON document.

    `not_found` means first run (use a default); `corrupt` must be surfaced.
    """

    status: Literal["ok", "not_found", "corrupt"]
    path: Path
    data: Any = None
    error: str | None = None


def read_json(path: Path) -> JsonRead:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return JsonRead(status="not_found", path=path)
    if not text.strip():
        return JsonRead(status="corrupt", path=path, error="empty file")
    try:
        return JsonRead(status="ok", path=path, data=json.loads(text))
    except json.JSONDecodeError as e:
        return JsonRead(status="corrupt", path=path, error=f"invalid JSON: {e}")


def load_json_document(path: Path, default: T, *, schema: dict[str, Any] | None = None) -> Any:
    """Return the parsed document, *default* if missing, or raise if corrupt."""
    res = read_json(path)
    if res.status == "not_found":
        return default
    if res.status == "corrupt":
        raise CorruptDocumentError(path, res.error or "unreadable")
    if schema is not None:
        try:
            jsonschema.validate(instance=res.data, schema=schema)
        except jsonschema.ValidationError as e:
            raise CorruptDocumentError(path, f"invalid shape: {e.message}") from None
    return res.data


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def atomic_write_json(path: Path, data: Any, *, sort_keys: bool = True) -> None:
    """Replace *path* with *data* via temp file + rename in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    payload = json.dumps(data, ensure_ascii=True, indent=2, sort_keys=sort_keys) + "\n"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


def append_jsonl(path: Path, row: dict[str, Any]) -> None:
    """Append one JSON line.  Caller must hold the file's lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(row, ensure_ascii=True) + "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
        f.flush()
        os.fsync(f.fileno())


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    try:
        f = path.open("r", encoding="utf-8")
    except FileNotFoundError:
        return out
    with f:
        for lineno, line in enumerate(f, start=1):
            s = line.strip()
            if not s:
                continue
            try:
                obj = json.loads(s)
            except json.JSONDecodeError as e:
                raise CorruptDocumentError(path, f"line {lineno}: {e}") from None
            if isinstance(obj, dict):
                out.append(obj)
    return out


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _read_lock_info(lock_path: Path) -> LockInfo | None:
    try:
        obj = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(obj, dict):
        return None
    try:
        return LockInfo(
            owner=str(obj.get("owner", "")),
            pid=int(obj.get("pid", 0)),
            hostname=str(obj.get("hostname", "")),
            token=str(obj.get("token", "")),
            created_at=str(obj.get("created_at", "")),
        )
    except (TypeError, ValueError):
        return None


def _is_lock_stale(lock_path: Path, stale_after_seconds: float) -> bool:
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False

    # Primary staleness signal: age.
    if age > stale_after_seconds:
        return True

    # Secondary: the owning process no longer exists on this host.  An
    # unparseable young lock is assumed to be mid-write by its creator.
    info = _read_lock_info(lock_path)
    if info and info.hostname and info.pid:
        try:
            if info.hostname == socket.gethostname():
                os.kill(int(info.pid), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            # Can't inspect; assume it's still alive.
            return False
        except (OverflowError, ValueError):
            return True
    return False


class FileLock:
    """O_EXCL-style lockfile with a blocking, time-bounded acquire.

    If a holder crashes the file remains; it is reclaimed once older than
    `stale_after_seconds` or as soon as its PID is gone on this host.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        owner: str | None = None,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        retry_interval_seconds: float = DEFAULT_LOCK_RETRY_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_LOCK_STALE_AFTER_SECONDS,
    ) -> None:
        self.lock_path = lock_path
        self.owner = owner or default_owner()
        self.timeout_seconds = float(timeout_seconds)
        self.retry_interval_seconds = max(0.001, float(retry_interval_seconds))
        self.stale_after_seconds = float(stale_after_seconds)
        self.acquired = False
        self._token = ""

    def _try_create(self) -> bool:
        token = uuid.uuid4().hex
        payload = {
            "owner": self.owner,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "token": token,
            "created_at": utc_iso(),
        }
        raw = (json.dumps(payload, ensure_ascii=True, sort_keys=True) + "\n").encode("utf-8")
        fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        try:
            os.write(fd, raw)
            os.fsync(fd)
        finally:
            os.close(fd)
        self._token = token
        return True

    def acquire(self) -> None:
        if self.acquired:
            raise StoreError(f"lock already acquired by this handle: {self.lock_path}")
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout_seconds

        while True:
            try:
                self._try_create()
                self.acquired = True
                return
            except FileExistsError:
                pass

            if _is_lock_stale(self.lock_path, self.stale_after_seconds):
                # Another waiter may race us here and recreate the lock after
                # the unlink; the next O_EXCL attempt settles it.
                logger.warning("Reclaiming stale lock %s info=%s", self.lock_path, _read_lock_info(self.lock_path))
                try:
                    self.lock_path.unlink()
                except FileNotFoundError:
                    pass
                if time.monotonic() < deadline:
                    continue

            if time.monotonic() >= deadline:
                raise LockTimeoutError(self.lock_path, self.timeout_seconds, _read_lock_info(self.lock_path))
            time.sleep(self.retry_interval_seconds)

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        info = _read_lock_info(self.lock_path)
        if info is None or info.token != self._token:
            # Reclaimed as stale while we held it; the file is someone else's now.
            logger.warning("Lock %s no longer ours at release; leaving it", self.lock_path)
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def with_lock(lock_path: Path, fn: Callable[[], T], **lock_kwargs: Any) -> T:
    """Run *fn* while holding *lock_path*; the lock is released on every exit path."""
    with FileLock(lock_path, **lock_kwargs):
        return fn()
