"""Apply rate limits backed by timestamp files under `{audit.path}/.ratelimit/`.

Each counter is a JSON file of recent applies. One fcntl lock on
`.ratelimit/.lock` covers both counters, so checking the limits and
reserving a slot is atomic across concurrent kubenow processes on one host.
A reservation is released again when the apply does not go through.
Counting uses a sliding window.
"""
import fcntl
import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from models import WorkloadRef, format_time, parse_time, utcnow
from normalize.durations import format_duration

logger = logging.getLogger(__name__)

RATELIMIT_DIR = ".ratelimit"
GLOBAL_FILE = "cluster.json"
LOCK_FILE = ".lock"


@dataclass
class RateLimitConfig:
    audit_path: str
    max_global: int = 0          # 0 = unlimited
    max_per_workload: int = 0    # 0 = unlimited
    window: timedelta = timedelta(hours=24)


@dataclass
class RateLimitResult:
    allowed: bool
    reason: str = ""
    token: str = ""


@contextmanager
def _locked(lock_path: str) -> Iterator[None]:
    with open(lock_path, 'a+') as lock:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)


def _read_entries(path: str) -> List[Dict[str, Any]]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            state = json.load(f)
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        logger.warning(f"Rate-limit state {path} unreadable, starting fresh: {e}")
        return []
    entries = state.get("entries") if isinstance(state, dict) else None
    return entries if isinstance(entries, list) else []


def _write_entries(path: str, entries: List[Dict[str, Any]]) -> None:
    tmp = path + ".tmp"
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump({"entries": entries}, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _in_window(entries: List[Dict[str, Any]], window: timedelta, now: datetime) -> List[Dict[str, Any]]:
    cutoff = now - window
    kept = []
    for entry in entries:
        try:
            at = parse_time(entry.get("at"))
        except (TypeError, ValueError, AttributeError):
            continue
        if at is not None and at > cutoff:
            kept.append(entry)
    return kept


class RateLimiter:
    def __init__(self, config: RateLimitConfig):
        self.config = config
        self.dir = os.path.join(config.audit_path, RATELIMIT_DIR)
        self.lock_path = os.path.join(self.dir, LOCK_FILE)

    def _paths(self, ref: WorkloadRef):
        return os.path.join(self.dir, GLOBAL_FILE), os.path.join(self.dir, f"{ref.key}.json")

    def _verdict(self, ref: WorkloadRef, now: datetime) -> RateLimitResult:
        """Limit check; caller holds the lock."""
        global_path, workload_path = self._paths(ref)
        window = format_duration(self.config.window)

        if self.config.max_global > 0:
            count = len(_in_window(_read_entries(global_path), self.config.window, now))
            if count >= self.config.max_global:
                return RateLimitResult(False, f"rate-limited: global rate limit exceeded "
                                              f"({count} applies in {window} window)")
        if self.config.max_per_workload > 0:
            count = len(_in_window(_read_entries(workload_path), self.config.window, now))
            if count >= self.config.max_per_workload:
                return RateLimitResult(False, f"rate-limited: per-workload rate limit exceeded "
                                              f"({count} applies in {window} window)")
        return RateLimitResult(True)

    def _append(self, ref: WorkloadRef, entry: Dict[str, Any], now: datetime) -> None:
        for path in self._paths(ref):
            entries = _in_window(_read_entries(path), self.config.window, now)
            entries.append(entry)
            _write_entries(path, entries)

    def check(self, ref: WorkloadRef, now: Optional[datetime] = None) -> RateLimitResult:
        """Would one more apply for `ref` stay within both limits? Reserves nothing."""
        now = now or utcnow()
        os.makedirs(self.dir, exist_ok=True)
        with _locked(self.lock_path):
            return self._verdict(ref, now)

    def reserve(self, ref: WorkloadRef, user: str = "", now: Optional[datetime] = None) -> RateLimitResult:
        """Check both limits and, when allowed, count the apply under the same lock.

        The returned `token` identifies the reservation for `release`.
        """
        now = now or utcnow()
        os.makedirs(self.dir, exist_ok=True)
        with _locked(self.lock_path):
            verdict = self._verdict(ref, now)
            if not verdict.allowed:
                return verdict
            token = uuid.uuid4().hex
            self._append(ref, {"at": format_time(now), "workload": f"{ref.namespace}/{ref}",
                               "user": user, "id": token}, now)
        return RateLimitResult(True, token=token)

    def release(self, ref: WorkloadRef, token: str) -> None:
        """Drop a reservation whose apply did not go through."""
        with _locked(self.lock_path):
            for path in self._paths(ref):
                entries = _read_entries(path)
                kept = [e for e in entries if e.get("id") != token]
                if len(kept) != len(entries):
                    _write_entries(path, kept)

    def record(self, ref: WorkloadRef, user: str = "", now: Optional[datetime] = None) -> None:
        """Count an apply against both the global and the workload counter."""
        now = now or utcnow()
        os.makedirs(self.dir, exist_ok=True)
        with _locked(self.lock_path):
            self._append(ref, {"at": format_time(now), "workload": f"{ref.namespace}/{ref}",
                               "user": user}, now)
